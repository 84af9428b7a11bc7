"""Full-corpus export: every note of every account into a mirrored directory tree.

Layout::

    <out>/<Account>/<Folder>/<Subfolder>/<Note title>/metadata.json
                                                     /content.md
                                                     /content.html   (optional)

The export runs in two phases. Indexing lists accounts, folders and notes
through the selector as one ``ListNotesIndex`` operation, assigns every note
a directory and creates the whole tree. Fetching then pulls each body from
the backend that produced the index, converts it, and writes the artifacts
atomically. Body fetches are serialized for automation and run up to
``jobs`` wide for the database. With ``include_html`` a database-indexed
export asks Notes.app for each HTML body, one note at a time.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from notesbridge.core.config import BackendMode, ExportConfig
from notesbridge.core.errors import (
    BackendUnavailable,
    ExportAborted,
    InconsistentData,
    NotesBridgeError,
    NotFound,
    PermissionDenied,
    UnsupportedOperation,
)
from notesbridge.core.models import (
    ExportRecord,
    Folder,
    Note,
    NoteMetadata,
    NoteSummary,
    RenderedBody,
)
from notesbridge.core.selector import BackendSelector, Operation, Strategy
from notesbridge.sources.notes.base import NotesBackend
from notesbridge.sources.notes.extractor import Extraction, note_to_markdown
from notesbridge.utils.slugs import NameAllocator

logger = logging.getLogger(__name__)

# Type alias for progress callback
ProgressCallback = Callable[[int, str], Awaitable[None]]

METADATA_FILE = "metadata.json"
CONTENT_FILE = "content.md"
HTML_FILE = "content.html"

# Failures that mean no further note can succeed
SYSTEMIC_ERRORS = (BackendUnavailable, PermissionDenied)


class NoteState(str, Enum):
    PENDING = "pending"
    INDEXED = "indexed"
    BODY_FETCHED = "body_fetched"
    BEST_EFFORT_FETCHED = "best_effort_fetched"
    WRITTEN = "written"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class NoteOutcome:
    """Final state of one note in an export run."""

    note_id: str
    title: str
    account: str
    folder_path: tuple[str, ...]
    directory: Path | None
    state: NoteState = NoteState.PENDING
    exact: bool | None = None
    issues: tuple[str, ...] = ()
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "note_id": self.note_id,
            "title": self.title,
            "account": self.account,
            "folder_path": list(self.folder_path),
            "directory": str(self.directory) if self.directory else None,
            "state": self.state.value,
            "exact": self.exact,
            "issues": list(self.issues),
            "error": self.error,
        }


@dataclass
class ExportSummary:
    out_dir: Path
    strategy: Strategy | None = None
    outcomes: list[NoteOutcome] = field(default_factory=list)
    folder_issues: list[str] = field(default_factory=list)
    cancelled: bool = False

    def _count(self, state: NoteState) -> int:
        return sum(1 for outcome in self.outcomes if outcome.state == state)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def exact(self) -> int:
        return sum(1 for o in self.outcomes if o.state == NoteState.WRITTEN and o.exact)

    @property
    def best_effort(self) -> int:
        return sum(1 for o in self.outcomes if o.state == NoteState.WRITTEN and o.exact is False)

    @property
    def failed(self) -> int:
        return self._count(NoteState.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(NoteState.CANCELLED)

    @property
    def written(self) -> int:
        return self._count(NoteState.WRITTEN)

    def to_dict(self) -> dict[str, Any]:
        return {
            "out_dir": str(self.out_dir),
            "backend": self.strategy.value if self.strategy else None,
            "total": self.total,
            "exact": self.exact,
            "best_effort": self.best_effort,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "folder_issues": list(self.folder_issues),
            "failures": [o.to_dict() for o in self.outcomes if o.state == NoteState.FAILED],
        }


@dataclass
class ExportTask:
    summary: NoteSummary
    account: str
    folder: Folder
    outcome: NoteOutcome


@dataclass
class ExportIndex:
    tasks: list[ExportTask]
    directories: list[Path]
    folder_issues: list[str]


def atomic_write_text(path: Path, text: str) -> None:
    """Write via a temp file in the same directory, then rename into place."""
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def render_metadata(metadata: NoteMetadata) -> str:
    return json.dumps(metadata.to_dict(), indent=2, ensure_ascii=False) + "\n"


def write_record(record: ExportRecord) -> None:
    """Write a note's artifacts; metadata goes last so its presence marks completion."""
    atomic_write_text(record.directory / CONTENT_FILE, record.content)
    if record.html is not None:
        atomic_write_text(record.directory / HTML_FILE, record.html)
    atomic_write_text(record.directory / METADATA_FILE, render_metadata(record.metadata))


class ExportPipeline:
    """Export every note reachable through a selector to ``out_dir``."""

    def __init__(
        self,
        selector: BackendSelector,
        config: ExportConfig,
        *,
        out_dir: Path | None = None,
        accounts: Iterable[str] | None = None,
        progress_callback: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        target = out_dir or config.out_dir
        if target is None:
            raise ValueError("An output directory is required for export")
        self.selector = selector
        self.config = config
        self.out_dir = Path(target)
        self.account_filter = list(accounts) if accounts else None
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event or asyncio.Event()
        self._abort: NotesBridgeError | None = None
        self._completed = 0
        self._html_backend: NotesBackend | None = None
        self._html_gate = asyncio.Semaphore(1)

    def cancel(self) -> None:
        """Stop scheduling new notes; in-flight notes finish."""
        self.cancel_event.set()

    async def _progress(self, percent: int, message: str) -> None:
        if self.progress_callback:
            await self.progress_callback(percent, message)

    # Phase 1

    def _check_output_dir(self) -> None:
        try:
            self.out_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryFile(dir=self.out_dir):
                pass
        except OSError as e:
            raise ExportAborted(
                f"Output directory is not writable: {self.out_dir} ({e})",
                ExportSummary(out_dir=self.out_dir),
            ) from e

    async def _build_index(self, backend: NotesBackend) -> ExportIndex:
        accounts = await backend.list_accounts()
        if self.account_filter is not None:
            known = {account.name for account in accounts}
            missing = [name for name in self.account_filter if name not in known]
            if missing:
                raise NotFound(f"account not found: {', '.join(missing)}")
            accounts = [a for a in accounts if a.name in self.account_filter]

        tasks: list[ExportTask] = []
        directories: list[Path] = []
        folder_issues: list[str] = []
        root_names = NameAllocator()

        for account in accounts:
            account_dir = self.out_dir / root_names.allocate(account.name, account.id)
            directories.append(account_dir)

            tree = await backend.list_folders(account.name)
            folder_issues.extend(str(issue) for issue in tree.issues)

            # One allocator per parent directory, subfolders claim names before notes
            allocators: dict[Path, NameAllocator] = {account_dir: NameAllocator()}
            folder_dirs: dict[str, Path] = {}
            for folder in tree.folders:
                parent_dir = folder_dirs.get(folder.parent_id, account_dir)
                allocator = allocators.setdefault(parent_dir, NameAllocator())
                folder_dir = parent_dir / allocator.allocate(folder.name, folder.id)
                folder_dirs[folder.id] = folder_dir
                allocators.setdefault(folder_dir, NameAllocator())
                directories.append(folder_dir)

            summaries = await backend.list_notes(account.name)
            folders_by_id = tree.by_id
            summaries = sorted(summaries, key=lambda s: (s.title, s.id))
            for summary in summaries:
                folder = folders_by_id.get(summary.folder_id)
                if folder is None:
                    logger.debug("Note %s is outside the folder tree; skipping", summary.id)
                    continue
                folder_dir = folder_dirs[folder.id]
                note_dir = folder_dir / allocators[folder_dir].allocate(summary.title, summary.id)
                outcome = NoteOutcome(
                    note_id=summary.id,
                    title=summary.title,
                    account=account.name,
                    folder_path=folder.path,
                    directory=note_dir,
                    state=NoteState.INDEXED,
                )
                tasks.append(ExportTask(summary=summary, account=account.name, folder=folder, outcome=outcome))

        return ExportIndex(tasks=tasks, directories=directories, folder_issues=folder_issues)

    def _create_directories(self, index: ExportIndex, summary: ExportSummary) -> None:
        try:
            for directory in index.directories:
                directory.mkdir(parents=True, exist_ok=True)
            for task in index.tasks:
                task.outcome.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ExportAborted(f"Could not create export directories: {e}", summary) from e

    # Phase 2

    def _build_record(
        self, task: ExportTask, note: Note, extraction: Extraction, source: str, html: str | None = None
    ) -> ExportRecord:
        metadata = NoteMetadata(
            id=note.id,
            title=note.title or task.summary.title,
            account=task.account,
            folder_path=task.folder.path,
            created_at=note.created_at,
            modified_at=note.modified_at,
            source=source,
            extraction="exact" if extraction.exact else "best_effort",
            issues=extraction.issues,
        )
        content = extraction.text if extraction.text.endswith("\n") else extraction.text + "\n"
        return ExportRecord(directory=task.outcome.directory, metadata=metadata, content=content, html=html)

    async def _fetch_html(self, note: Note) -> str | None:
        if isinstance(note.body, RenderedBody):
            return note.body.html
        if self._html_backend is None:
            return None
        # Database bodies carry no HTML; Notes.app renders one note at a time
        async with self._html_gate:
            rendered = await self._html_backend.get_note(note.id)
        if not isinstance(rendered.body, RenderedBody):
            raise InconsistentData(f"{self._html_backend.name} returned no HTML for {note.id}")
        return rendered.body.html

    async def _process(self, backend: NotesBackend, task: ExportTask, fetch_gate: asyncio.Semaphore) -> None:
        outcome = task.outcome
        try:
            async with fetch_gate:
                note = await backend.get_note(task.summary.id)

            extraction = await asyncio.to_thread(note_to_markdown, note)
            outcome.exact = extraction.exact
            outcome.issues = extraction.issues
            if extraction.exact:
                outcome.state = NoteState.BODY_FETCHED
            else:
                outcome.state = NoteState.BEST_EFFORT_FETCHED
                logger.warning("%s", extraction.degradation(note.id))

            html = await self._fetch_html(note) if self.config.include_html else None
            record = self._build_record(task, note, extraction, backend.name, html)
            await asyncio.to_thread(write_record, record)
            outcome.state = NoteState.WRITTEN
        except SYSTEMIC_ERRORS as e:
            outcome.state = NoteState.FAILED
            outcome.error = str(e)
            if self._abort is None:
                self._abort = e
            self.cancel_event.set()
            logger.error(f"Export stopping: {e}")
        except (NotesBridgeError, OSError) as e:
            outcome.state = NoteState.FAILED
            outcome.error = str(e)
            logger.error(f"Failed to export note {outcome.title!r} ({outcome.note_id}): {e}")
        except Exception as e:
            # Per-note failure; only SYSTEMIC_ERRORS stop the run
            outcome.state = NoteState.FAILED
            outcome.error = f"{type(e).__name__}: {e}"
            logger.exception(f"Unexpected error exporting note {outcome.title!r} ({outcome.note_id})")

    async def _worker(
        self,
        backend: NotesBackend,
        queue: asyncio.Queue[ExportTask],
        fetch_gate: asyncio.Semaphore,
        total: int,
    ) -> None:
        while not self.cancel_event.is_set():
            try:
                task = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._process(backend, task, fetch_gate)
            # Single event loop thread; no lock needed for the counter
            self._completed += 1
            if total:
                percent = 10 + int(self._completed / total * 89)
                await self._progress(percent, f"Exported {self._completed} of {total} notes")

    async def run(self) -> ExportSummary:
        if self.config.include_html and self.selector.mode == BackendMode.DB:
            raise UnsupportedOperation(
                "content.html comes from the Notes app; use --backend auto or --backend automation"
            )
        self._check_output_dir()
        summary = ExportSummary(out_dir=self.out_dir)

        await self._progress(0, "Indexing accounts, folders and notes...")
        try:
            selection = await self.selector.execute(Operation.LIST_NOTES_INDEX, self._build_index)
        except SYSTEMIC_ERRORS as e:
            raise ExportAborted(f"No backend could index notes: {e}", summary) from e

        index = selection.value
        summary.strategy = selection.strategy
        summary.folder_issues = index.folder_issues
        summary.outcomes = [task.outcome for task in index.tasks]
        backend = await self.selector.backend(selection.strategy)
        if self.config.include_html and selection.strategy != Strategy.AUTOMATION:
            try:
                self._html_backend = await self.selector.backend(Strategy.AUTOMATION)
            except NotesBridgeError as e:
                raise ExportAborted(f"HTML export needs the Notes app: {e}", summary) from e

        self._create_directories(index, summary)
        total = len(index.tasks)
        logger.info(
            "Indexed %d notes via %s; exporting to %s with %d workers",
            total,
            selection.strategy.value,
            self.out_dir,
            self.config.jobs,
        )
        await self._progress(10, f"Indexed {total} notes")

        queue: asyncio.Queue[ExportTask] = asyncio.Queue()
        for task in index.tasks:
            queue.put_nowait(task)

        fetch_width = self.config.jobs if backend.concurrent_fetch else 1
        fetch_gate = asyncio.Semaphore(fetch_width)
        workers = [
            asyncio.create_task(self._worker(backend, queue, fetch_gate, total))
            for _ in range(min(self.config.jobs, max(total, 1)))
        ]
        await asyncio.gather(*workers)

        for task in index.tasks:
            if task.outcome.state in (NoteState.PENDING, NoteState.INDEXED):
                task.outcome.state = NoteState.CANCELLED
        summary.cancelled = self.cancel_event.is_set()

        if self._abort is not None:
            raise ExportAborted(f"Export aborted: {self._abort}", summary) from self._abort

        logger.info(
            "Export finished: %d exact, %d best-effort, %d failed, %d skipped",
            summary.exact,
            summary.best_effort,
            summary.failed,
            summary.skipped,
        )
        await self._progress(100, "Export complete")
        return summary
