"""Per-operation choice between the note store and Notes.app automation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Generic, TypeVar

from notesbridge.core.config import BackendMode
from notesbridge.core.errors import NotesBridgeError, UnsupportedOperation
from notesbridge.sources.notes.base import NotesBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")
BackendFactory = Callable[[], Awaitable[NotesBackend]]


class Operation(str, Enum):
    LIST_ACCOUNTS = "list_accounts"
    LIST_FOLDERS = "list_folders"
    LIST_NOTES_INDEX = "list_notes_index"
    READ_FULL_BODY = "read_full_body"
    WRITE = "write"


class Strategy(str, Enum):
    DATABASE = "database"
    AUTOMATION = "automation"


LIST_OPERATIONS = {Operation.LIST_ACCOUNTS, Operation.LIST_FOLDERS, Operation.LIST_NOTES_INDEX}


def plan(mode: BackendMode, operation: Operation) -> list[Strategy]:
    """Ordered candidate strategies for an operation under a mode.

    Raises:
        UnsupportedOperation: Writes under database-only mode
    """
    if mode == BackendMode.AUTOMATION:
        return [Strategy.AUTOMATION]

    if mode == BackendMode.DB:
        if operation == Operation.WRITE:
            raise UnsupportedOperation(
                "Writes need the live Notes app; use --backend auto or --backend automation"
            )
        return [Strategy.DATABASE]

    if operation in LIST_OPERATIONS:
        return [Strategy.DATABASE, Strategy.AUTOMATION]
    return [Strategy.AUTOMATION]


@dataclass
class Selection(Generic[T]):
    """Result of a selected operation and the path that produced it."""

    value: T
    strategy: Strategy
    failures: list[tuple[Strategy, NotesBridgeError]] = field(default_factory=list)

    @property
    def fell_back(self) -> bool:
        return bool(self.failures)


class BackendSelector:
    """Runs an operation against the first candidate backend that succeeds.

    Backends are created lazily through their factories, so an operation that
    only needs automation never opens the database and vice versa. A later
    candidate is tried only when the previous one failed with a recoverable
    error; its result replaces, never merges with, the earlier attempt.
    """

    def __init__(
        self,
        mode: BackendMode,
        *,
        database: BackendFactory | None = None,
        automation: BackendFactory | None = None,
    ):
        self.mode = mode
        self._factories: dict[Strategy, BackendFactory | None] = {
            Strategy.DATABASE: database,
            Strategy.AUTOMATION: automation,
        }
        self._backends: dict[Strategy, NotesBackend] = {}

    def plan(self, operation: Operation) -> list[Strategy]:
        return plan(self.mode, operation)

    async def backend(self, strategy: Strategy) -> NotesBackend:
        if strategy not in self._backends:
            factory = self._factories.get(strategy)
            if factory is None:
                raise UnsupportedOperation(f"No {strategy.value} backend is configured")
            self._backends[strategy] = await factory()
        return self._backends[strategy]

    async def execute(
        self,
        operation: Operation,
        call: Callable[[NotesBackend], Awaitable[T]],
    ) -> Selection[T]:
        candidates = self.plan(operation)
        failures: list[tuple[Strategy, NotesBridgeError]] = []

        for index, strategy in enumerate(candidates):
            is_last = index == len(candidates) - 1
            try:
                backend = await self.backend(strategy)
                value = await call(backend)
            except NotesBridgeError as e:
                if not e.recoverable or is_last:
                    raise
                failures.append((strategy, e))
                logger.warning(
                    "%s via %s failed (%s); falling back to %s",
                    operation.value,
                    strategy.value,
                    e,
                    candidates[index + 1].value,
                )
                continue

            if failures:
                logger.info("%s served by %s after fallback", operation.value, strategy.value)
            else:
                logger.debug("%s served by %s", operation.value, strategy.value)
            return Selection(value=value, strategy=strategy, failures=failures)

        raise UnsupportedOperation(f"No backend available for {operation.value}")

    async def close(self) -> None:
        for backend in self._backends.values():
            await backend.close()
        self._backends.clear()
