"""Account, folder and note types shared by both backends."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Union

from notesbridge.core.errors import InconsistentData

logger = logging.getLogger(__name__)

FOLDER_PATH_SEPARATOR = " > "


@dataclass(frozen=True)
class Account:
    """A Notes account (iCloud, On My Mac, Exchange...)."""

    id: str
    name: str


@dataclass(frozen=True)
class FolderRecord:
    """Raw folder row as a backend sees it, before the tree is resolved."""

    id: str
    name: str
    parent_id: str | None = None


@dataclass(frozen=True)
class Folder:
    """A folder with its resolved path from the account root."""

    id: str
    name: str
    account: str
    parent_id: str | None
    path: tuple[str, ...]

    def path_string(self) -> str:
        return FOLDER_PATH_SEPARATOR.join(self.path)

    @property
    def depth(self) -> int:
        return len(self.path)


@dataclass(frozen=True)
class StructuredBody:
    """Note body as stored in the database: a (usually gzipped) protobuf blob."""

    blob: bytes


@dataclass(frozen=True)
class RenderedBody:
    """Note body as Notes.app renders it over Apple Events: an HTML string."""

    html: str


NoteBody = Union[StructuredBody, RenderedBody]


@dataclass(frozen=True)
class NoteSummary:
    """Index record: the cheap, list-level view of a note (no body)."""

    id: str
    title: str
    folder_id: str
    created_at: datetime | None = None
    modified_at: datetime | None = None


@dataclass(frozen=True)
class Note:
    """A note with its full body."""

    id: str
    title: str
    folder_id: str
    created_at: datetime
    modified_at: datetime
    body: NoteBody

    @property
    def is_structured(self) -> bool:
        return isinstance(self.body, StructuredBody)


@dataclass(frozen=True)
class NoteMetadata:
    """Contents of an exported note's metadata document."""

    id: str
    title: str
    account: str
    folder_path: tuple[str, ...]
    created_at: datetime | None
    modified_at: datetime | None
    source: str
    extraction: str
    issues: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "account": self.account,
            "folder_path": list(self.folder_path),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "modified_at": self.modified_at.isoformat() if self.modified_at else None,
            "source": self.source,
            "extraction": self.extraction,
            "issues": list(self.issues),
        }


@dataclass(frozen=True)
class ExportRecord:
    """Write-once export artifact for a single note."""

    directory: Path
    metadata: NoteMetadata
    content: str
    html: str | None = None


@dataclass
class FolderTree:
    """Folders of one account with resolved paths.

    Folders whose ancestor chain contains a cycle or a dangling parent are
    left out, together with their descendants, and reported in ``issues``.
    """

    account: str
    folders: list[Folder] = field(default_factory=list)
    issues: list[InconsistentData] = field(default_factory=list)

    @classmethod
    def build(cls, account: str, records: Iterable[FolderRecord]) -> "FolderTree":
        by_id: dict[str, FolderRecord] = {}
        for record in records:
            if record.id in by_id:
                logger.warning("Duplicate folder id %s in account %s; keeping first", record.id, account)
                continue
            by_id[record.id] = record

        resolved: dict[str, tuple[str, ...] | None] = {}
        issues: list[InconsistentData] = []

        for folder_id in by_id:
            if folder_id in resolved:
                continue

            chain: list[str] = []
            on_chain: set[str] = set()
            current: str | None = folder_id
            base: tuple[str, ...] | None = ()
            problem: str | None = None

            while current is not None:
                if current in resolved:
                    base = resolved[current]
                    if base is None:
                        problem = f"ancestor {current} is inconsistent"
                    break
                if current in on_chain:
                    problem = f"folder parent cycle detected at {current}"
                    base = None
                    break
                record = by_id.get(current)
                if record is None:
                    problem = f"dangling parent reference {current}"
                    base = None
                    break
                chain.append(current)
                on_chain.add(current)
                current = record.parent_id

            if problem is not None:
                for member in chain:
                    resolved[member] = None
                    issues.append(
                        InconsistentData(
                            f"Skipping folder {by_id[member].name!r} ({member}): {problem}",
                            folder_id=member,
                        )
                    )
                continue

            path = base or ()
            for member in reversed(chain):
                path = path + (by_id[member].name,)
                resolved[member] = path

        folders = [
            Folder(
                id=record.id,
                name=record.name,
                account=account,
                parent_id=record.parent_id,
                path=resolved[record.id],
            )
            for record in by_id.values()
            if resolved.get(record.id) is not None
        ]
        folders.sort(key=lambda f: (f.path, f.id))

        for issue in issues:
            logger.warning("%s", issue)

        return cls(account=account, folders=folders, issues=issues)

    @property
    def by_id(self) -> dict[str, Folder]:
        return {folder.id: folder for folder in self.folders}

    def get(self, folder_id: str) -> Folder | None:
        return self.by_id.get(folder_id)

    def find_by_path(self, path: Iterable[str]) -> list[Folder]:
        wanted = tuple(path)
        return [folder for folder in self.folders if folder.path == wanted]

    def children(self, folder_id: str | None) -> list[Folder]:
        return [folder for folder in self.folders if folder.parent_id == folder_id]


def split_folder_path(path: str) -> tuple[str, ...]:
    """Parse ``"Personal > Archive"`` into ``("Personal", "Archive")``."""

    parts = tuple(part.strip() for part in path.split(">") if part.strip())
    if not parts:
        raise ValueError("folder path is empty")
    return parts
