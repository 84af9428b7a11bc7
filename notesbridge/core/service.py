"""High-level Notes operations routed through the backend selector."""

from __future__ import annotations

import logging
from typing import Iterable

from notesbridge.core.config import AppConfig
from notesbridge.core.errors import UnsupportedOperation
from notesbridge.core.models import Account, FolderTree, Note, NoteSummary
from notesbridge.core.selector import BackendSelector, Operation, Selection
from notesbridge.sources.notes.automation import AutomationBackend, AutomationClient
from notesbridge.sources.notes.base import NotesBackend
from notesbridge.sources.notes.database import NoteStoreReader
from notesbridge.sources.notes.extractor import Extraction, note_to_markdown

logger = logging.getLogger(__name__)


def build_selector(config: AppConfig) -> BackendSelector:
    """Selector wired to the real note store and osascript backends."""

    async def open_database() -> NotesBackend:
        reader = NoteStoreReader(config.database)
        try:
            await reader.open()
        except Exception:
            await reader.close()
            raise
        return reader

    async def open_automation() -> NotesBackend:
        return AutomationBackend(AutomationClient(config.automation))

    return BackendSelector(config.backend, database=open_database, automation=open_automation)


def _writer(backend: NotesBackend) -> AutomationBackend:
    if not isinstance(backend, AutomationBackend):
        raise UnsupportedOperation(f"The {backend.name} backend cannot write")
    return backend


class NotesService:
    """Account, folder and note operations for the CLI and the export pipeline."""

    def __init__(self, config: AppConfig, selector: BackendSelector | None = None):
        self.config = config
        self.selector = selector or build_selector(config)

    def _account(self, account: str | None) -> str:
        return account or self.config.account

    async def close(self) -> None:
        await self.selector.close()

    # Reads

    async def list_accounts(self) -> Selection[list[Account]]:
        return await self.selector.execute(
            Operation.LIST_ACCOUNTS, lambda backend: backend.list_accounts()
        )

    async def list_folders(self, account: str | None = None) -> Selection[FolderTree]:
        name = self._account(account)
        return await self.selector.execute(
            Operation.LIST_FOLDERS, lambda backend: backend.list_folders(name)
        )

    async def list_notes(
        self,
        account: str | None = None,
        folder_path: Iterable[str] | None = None,
    ) -> Selection[list[NoteSummary]]:
        name = self._account(account)
        path = tuple(folder_path) if folder_path else None

        async def call(backend: NotesBackend) -> list[NoteSummary]:
            if path is None:
                return await backend.list_notes(name)
            folder_id = await backend.resolve_folder(name, path)
            return await backend.list_notes(name, folder_id)

        return await self.selector.execute(Operation.LIST_NOTES_INDEX, call)

    async def get_note(self, note_id: str) -> Selection[Note]:
        return await self.selector.execute(
            Operation.READ_FULL_BODY, lambda backend: backend.get_note(note_id)
        )

    async def render_note(self, note_id: str) -> tuple[Note, Extraction]:
        """Fetch a note and convert its body to Markdown."""
        selection = await self.get_note(note_id)
        extraction = note_to_markdown(selection.value)
        if not extraction.exact:
            logger.warning("%s", extraction.degradation(note_id))
        return selection.value, extraction

    # Writes

    async def _write(self, call):
        selection = await self.selector.execute(
            Operation.WRITE, lambda backend: call(_writer(backend))
        )
        return selection.value

    async def create_note(
        self, folder_path: Iterable[str], title: str, body_html: str, account: str | None = None
    ) -> str:
        name, path = self._account(account), tuple(folder_path)
        return await self._write(lambda w: w.create_note(name, path, title, body_html))

    async def rename_note(self, note_id: str, title: str) -> None:
        await self._write(lambda w: w.set_note_title(note_id, title))

    async def set_note_body(self, note_id: str, body_html: str) -> None:
        await self._write(lambda w: w.set_note_body(note_id, body_html))

    async def append_note_body(self, note_id: str, body_html: str) -> None:
        await self._write(lambda w: w.append_note_body(note_id, body_html))

    async def move_note(self, note_id: str, folder_path: Iterable[str], account: str | None = None) -> None:
        name, path = self._account(account), tuple(folder_path)
        await self._write(lambda w: w.move_note(note_id, name, path))

    async def delete_note(self, note_id: str) -> None:
        await self._write(lambda w: w.delete_note(note_id))

    async def create_folder(
        self, name: str, parent_path: Iterable[str] | None = None, account: str | None = None
    ) -> str:
        account_name = self._account(account)
        parent = tuple(parent_path) if parent_path else None
        return await self._write(lambda w: w.create_folder(account_name, parent, name))

    async def rename_folder(self, folder_path: Iterable[str], name: str, account: str | None = None) -> None:
        account_name, path = self._account(account), tuple(folder_path)
        await self._write(lambda w: w.rename_folder(account_name, path, name))

    async def delete_folder(self, folder_path: Iterable[str], account: str | None = None) -> None:
        account_name, path = self._account(account), tuple(folder_path)
        await self._write(lambda w: w.delete_folder(account_name, path))
