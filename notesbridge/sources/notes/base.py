"""Base class for Notes backend implementations."""

from abc import ABC, abstractmethod
from typing import Iterable

from notesbridge.core.errors import AmbiguousFolderPath, NotFound
from notesbridge.core.models import FOLDER_PATH_SEPARATOR, Account, FolderTree, Note, NoteSummary


class NotesBackend(ABC):
    """
    Abstract base class for the ways we can read Notes data.

    Both the database reader and the automation client implement this
    interface, so the selector and the export pipeline never need to know
    which one produced a record.
    """

    #: Short label reported in diagnostics and export metadata
    name: str = "backend"

    #: Whether body fetches may run concurrently against this backend
    concurrent_fetch: bool = False

    @abstractmethod
    async def list_accounts(self) -> list[Account]:
        """Return every account, ordered by name."""
        pass

    @abstractmethod
    async def list_folders(self, account: str) -> FolderTree:
        """
        Return the folder tree of an account.

        Args:
            account: Account display name

        Raises:
            NotFound: If no account has that name
        """
        pass

    @abstractmethod
    async def list_notes(self, account: str, folder_id: str | None = None) -> list[NoteSummary]:
        """
        Return index records (no bodies) for an account or one of its folders.

        Args:
            account: Account display name
            folder_id: Restrict to notes directly inside this folder
        """
        pass

    @abstractmethod
    async def get_note(self, note_id: str) -> Note:
        """
        Return a note with its full body.

        Raises:
            NotFound: If the note does not exist
        """
        pass

    async def resolve_folder(self, account: str, folder_path: Iterable[str]) -> str:
        """Resolve ``("A", "B")`` to exactly one folder id.

        Raises:
            NotFound: If no folder has that path
            AmbiguousFolderPath: If several folders share it
        """
        path = tuple(folder_path)
        tree = await self.list_folders(account)
        matches = tree.find_by_path(path)
        joined = FOLDER_PATH_SEPARATOR.join(path)
        if not matches:
            raise NotFound(f"folder not found: {joined}")
        if len(matches) > 1:
            raise AmbiguousFolderPath(joined, len(matches))
        return matches[0].id

    async def close(self) -> None:
        """Release any resources held by the backend."""
        return None
