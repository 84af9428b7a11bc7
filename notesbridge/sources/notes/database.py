"""Read-only access to the Notes database (NoteStore.sqlite).

The store is a Core Data SQLite file whose column names shift between macOS
releases (``ZACCOUNT8`` vs ``ZACCOUNT7``, numbered date columns...). We
detect which known layout the file uses from ``PRAGMA table_info`` and look
physical names up in ``SCHEMA_GENERATIONS``. This is an undocumented format:
an unknown layout raises ``SchemaMismatch`` so the selector can fall back to
automation instead of guessing.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite

from notesbridge.core.config import DatabaseConfig
from notesbridge.core.errors import BackendUnavailable, NotFound, SchemaMismatch
from notesbridge.core.models import (
    Account,
    FolderRecord,
    FolderTree,
    Note,
    NoteSummary,
    StructuredBody,
)
from notesbridge.sources.notes.base import NotesBackend

logger = logging.getLogger(__name__)

# Apple's Core Data epoch: 2001-01-01 00:00:00 UTC
CORE_DATA_EPOCH = 978307200

OBJECTS_TABLE = "ZICCLOUDSYNCINGOBJECT"

# Z_PRIMARYKEY entity names and the ids they usually carry
DEFAULT_ENTITY_IDS = {
    "ICNote": 12,
    "ICAccount": 14,
    "ICFolder": 15,
}

FOLDER_TYPE_TRASH = 1


@dataclass(frozen=True)
class SchemaGeneration:
    """Physical column names of one known NoteStore layout."""

    name: str
    folder_account: str
    note_folder: str
    note_title: str
    folder_parent: str = "ZPARENT"
    folder_title_columns: tuple[str, ...] = ("ZTITLE2",)
    created_columns: tuple[str, ...] = ()
    modified_columns: tuple[str, ...] = ()
    body_table: str = "ZICNOTEDATA"
    body_column: str = "ZDATA"
    body_note: str = "ZNOTE"

    @property
    def required_columns(self) -> set[str]:
        return {"Z_PK", "Z_ENT", "ZNAME", self.folder_account, self.note_folder, self.note_title, self.folder_parent}


# Ordered newest first; the first generation whose required columns all
# exist wins. Adding a layout means adding an entry here.
SCHEMA_GENERATIONS: dict[str, SchemaGeneration] = {
    "account8": SchemaGeneration(
        name="account8",
        folder_account="ZACCOUNT8",
        note_folder="ZFOLDER",
        note_title="ZTITLE1",
        created_columns=("ZCREATIONDATE3", "ZCREATIONDATE2", "ZCREATIONDATE1"),
        modified_columns=("ZMODIFICATIONDATE1", "ZMODIFICATIONDATEATIMPORT"),
    ),
    "account7": SchemaGeneration(
        name="account7",
        folder_account="ZACCOUNT7",
        note_folder="ZFOLDER",
        note_title="ZTITLE1",
        created_columns=("ZCREATIONDATE3", "ZCREATIONDATE1"),
        modified_columns=("ZMODIFICATIONDATE1",),
    ),
    "owner": SchemaGeneration(
        name="owner",
        folder_account="ZOWNER",
        note_folder="ZFOLDER",
        note_title="ZTITLE1",
        created_columns=("ZCREATIONDATE1", "ZCREATIONDATE"),
        modified_columns=("ZMODIFICATIONDATE1", "ZMODIFICATIONDATE"),
    ),
}


@dataclass(frozen=True)
class StoreLayout:
    """What we learned about an opened store."""

    generation: SchemaGeneration
    store_uuid: str
    entities: dict[str, int]
    created_expr: str
    modified_expr: str
    folder_name_expr: str
    has_deletion_flag: bool
    has_folder_type: bool


def detect_generation(object_columns: set[str], body_columns: set[str]) -> SchemaGeneration | None:
    for generation in SCHEMA_GENERATIONS.values():
        if not generation.required_columns <= object_columns:
            continue
        if not {generation.body_column, generation.body_note} <= body_columns:
            continue
        return generation
    return None


def core_data_datetime(value: float | int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(CORE_DATA_EPOCH + float(value), timezone.utc)


def body_bytes(value: Any) -> bytes:
    """ZDATA is declared BLOB, but SQLite lets rows hold TEXT or numbers."""
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    return str(value).encode("utf-8")


def parse_coredata_pk(coredata_id: str) -> int:
    """``x-coredata://<uuid>/ICNote/p123`` -> ``123``."""
    last = coredata_id.rsplit("/", 1)[-1]
    if not last.startswith("p") or not last[1:].isdigit():
        raise NotFound(f"invalid Core Data id: {coredata_id}")
    return int(last[1:])


def _coalesce(alias: str, columns: list[str]) -> str:
    if not columns:
        return "NULL"
    if len(columns) == 1:
        return f"{alias}.{columns[0]}"
    return "COALESCE(" + ", ".join(f"{alias}.{column}" for column in columns) + ")"


class NoteStoreReader(NotesBackend):
    """Read-only NoteStore.sqlite reader.

    Every query opens its own read-only connection, so concurrent readers
    never share a handle and Notes.app keeps ownership of the live file.
    """

    name = "database"
    concurrent_fetch = True

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.db_path = config.path
        self._layout: StoreLayout | None = None
        self._snapshot_path: Path | None = None
        self._open_lock = asyncio.Lock()

    # Connection handling

    async def _ensure_snapshot(self) -> Path:
        """Copy the store (and its WAL sidecars) to a temp dir and read that."""
        if self._snapshot_path and self._snapshot_path.exists():
            return self._snapshot_path

        temp_dir = Path(tempfile.mkdtemp(prefix="notesbridge_store_"))
        snapshot = temp_dir / self.db_path.name
        try:
            await asyncio.to_thread(shutil.copy2, self.db_path, snapshot)
            for suffix in ("-wal", "-shm"):
                sidecar = self.db_path.with_name(self.db_path.name + suffix)
                if sidecar.exists():
                    await asyncio.to_thread(
                        shutil.copy2, sidecar, snapshot.with_name(snapshot.name + suffix)
                    )
        except OSError as e:
            shutil.rmtree(temp_dir, ignore_errors=True)
            raise BackendUnavailable(f"Could not snapshot note store {self.db_path}: {e}") from e

        logger.debug("Copied note store to %s", snapshot)
        self._snapshot_path = snapshot
        return snapshot

    async def _source_path(self) -> Path:
        if not self.db_path.exists():
            raise BackendUnavailable(f"Note store not found: {self.db_path}")
        if self.config.snapshot:
            return await self._ensure_snapshot()
        return self.db_path

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        path = await self._source_path()
        uri = f"{path.resolve().as_uri()}?mode=ro"
        async with aiosqlite.connect(uri, uri=True, timeout=self.config.busy_timeout) as db:
            db.row_factory = aiosqlite.Row
            yield db

    async def _fetch(self, sql: str, params: tuple[Any, ...] = ()) -> list[aiosqlite.Row]:
        """Run one read-only query, retrying briefly while the store is locked."""
        attempts = self.config.open_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                async with self._connect() as db:
                    async with db.execute(sql, params) as cursor:
                        return list(await cursor.fetchall())
            except aiosqlite.OperationalError as e:
                message = str(e).lower()
                if "no such column" in message or "no such table" in message:
                    raise SchemaMismatch(f"Note store query failed: {e}") from e
                if "locked" in message or "busy" in message:
                    if attempt < attempts:
                        logger.debug(
                            "Note store locked (attempt %d/%d), retrying", attempt, attempts
                        )
                        await asyncio.sleep(self.config.retry_delay * attempt)
                        continue
                    raise BackendUnavailable(
                        f"Note store stayed locked after {attempts} attempts: {self.db_path}"
                    ) from e
                raise BackendUnavailable(f"Could not read note store {self.db_path}: {e}") from e
            except aiosqlite.DatabaseError as e:
                raise BackendUnavailable(f"Could not read note store {self.db_path}: {e}") from e
        return []

    async def _table_columns(self, table: str) -> set[str]:
        rows = await self._fetch(f"PRAGMA table_info({table})")
        # PRAGMA table_info returns: cid, name, type, notnull, dflt_value, pk
        return {row[1] for row in rows}

    async def open(self) -> StoreLayout:
        """Detect the store layout. Safe to call repeatedly."""
        async with self._open_lock:
            if self._layout is not None:
                return self._layout

            object_columns = await self._table_columns(OBJECTS_TABLE)
            if not object_columns:
                raise SchemaMismatch(f"{OBJECTS_TABLE} table not found in {self.db_path}")

            body_columns = await self._table_columns("ZICNOTEDATA")
            generation = detect_generation(object_columns, body_columns)
            if generation is None:
                raise SchemaMismatch(f"Unrecognized note store layout in {self.db_path}")

            metadata = await self._fetch("SELECT Z_UUID FROM Z_METADATA WHERE Z_VERSION = 1")
            if not metadata or not metadata[0][0]:
                raise SchemaMismatch(f"Note store has no Z_METADATA uuid: {self.db_path}")

            entities = dict(DEFAULT_ENTITY_IDS)
            if await self._table_columns("Z_PRIMARYKEY"):
                rows = await self._fetch("SELECT Z_ENT, Z_NAME FROM Z_PRIMARYKEY")
                for row in rows:
                    if row["Z_NAME"] in entities:
                        entities[row["Z_NAME"]] = row["Z_ENT"]

            folder_titles = [c for c in generation.folder_title_columns if c in object_columns]
            self._layout = StoreLayout(
                generation=generation,
                store_uuid=metadata[0][0],
                entities=entities,
                created_expr=_coalesce("n", [c for c in generation.created_columns if c in object_columns]),
                modified_expr=_coalesce("n", [c for c in generation.modified_columns if c in object_columns]),
                folder_name_expr="COALESCE(" + ", ".join(["f.ZNAME", *(f"f.{c}" for c in folder_titles), "'Untitled'"]) + ")",
                has_deletion_flag="ZMARKEDFORDELETION" in object_columns,
                has_folder_type="ZFOLDERTYPE" in object_columns,
            )
            logger.info(
                "Opened note store %s (layout %s)", self.db_path, generation.name
            )
            return self._layout

    async def close(self) -> None:
        """Clean up the temporary snapshot, if any."""
        if self._snapshot_path and self._snapshot_path.parent.exists():
            shutil.rmtree(self._snapshot_path.parent, ignore_errors=True)
        self._snapshot_path = None

    # Identifiers

    def _uri(self, layout: StoreLayout, entity: str, pk: int) -> str:
        return f"x-coredata://{layout.store_uuid}/{entity}/p{pk}"

    def _not_deleted(self, layout: StoreLayout, alias: str) -> str:
        if not layout.has_deletion_flag:
            return "1 = 1"
        return f"IFNULL({alias}.ZMARKEDFORDELETION, 0) = 0"

    async def _account_pk(self, layout: StoreLayout, account: str) -> int:
        rows = await self._fetch(
            f"SELECT Z_PK FROM {OBJECTS_TABLE} WHERE Z_ENT = ? AND ZNAME = ?",
            (layout.entities["ICAccount"], account),
        )
        if not rows:
            raise NotFound(f"account not found: {account}")
        return rows[0][0]

    # NotesBackend

    async def list_accounts(self) -> list[Account]:
        layout = await self.open()
        rows = await self._fetch(
            f"SELECT Z_PK, ZNAME FROM {OBJECTS_TABLE} WHERE Z_ENT = ? AND ZNAME IS NOT NULL ORDER BY ZNAME, Z_PK",
            (layout.entities["ICAccount"],),
        )
        return [Account(id=self._uri(layout, "ICAccount", row[0]), name=row[1]) for row in rows]

    async def list_folders(self, account: str) -> FolderTree:
        layout = await self.open()
        account_pk = await self._account_pk(layout, account)
        g = layout.generation

        trash_filter = ""
        if layout.has_folder_type:
            trash_filter = f"AND IFNULL(f.ZFOLDERTYPE, 0) != {FOLDER_TYPE_TRASH}"

        rows = await self._fetch(
            f"""
            SELECT f.Z_PK, {layout.folder_name_expr} AS name, f.{g.folder_parent} AS parent
            FROM {OBJECTS_TABLE} f
            WHERE f.Z_ENT = ?
              AND f.{g.folder_account} = ?
              AND {self._not_deleted(layout, "f")}
              {trash_filter}
            ORDER BY f.Z_PK
            """,
            (layout.entities["ICFolder"], account_pk),
        )

        records = [
            FolderRecord(
                id=self._uri(layout, "ICFolder", row["Z_PK"]),
                name=row["name"],
                parent_id=self._uri(layout, "ICFolder", row["parent"]) if row["parent"] is not None else None,
            )
            for row in rows
        ]
        tree = FolderTree.build(account, records)
        logger.debug("Read %d folders for %s from note store", len(tree.folders), account)
        return tree

    async def list_notes(self, account: str, folder_id: str | None = None) -> list[NoteSummary]:
        layout = await self.open()
        g = layout.generation

        select = f"""
            SELECT n.Z_PK, n.{g.note_title} AS title, n.{g.note_folder} AS folder,
                   {layout.created_expr} AS created, {layout.modified_expr} AS modified
            FROM {OBJECTS_TABLE} n
        """
        if folder_id is not None:
            rows = await self._fetch(
                select
                + f"""
                WHERE n.Z_ENT = ?
                  AND {self._not_deleted(layout, "n")}
                  AND n.{g.note_folder} = ?
                ORDER BY n.Z_PK
                """,
                (layout.entities["ICNote"], parse_coredata_pk(folder_id)),
            )
        else:
            # Folders dropped from the tree (trash, broken parents) hide their notes too
            tree = await self.list_folders(account)
            visible = {folder.id for folder in tree.folders}
            account_pk = await self._account_pk(layout, account)
            rows = await self._fetch(
                select
                + f"""
                JOIN {OBJECTS_TABLE} f ON f.Z_PK = n.{g.note_folder}
                WHERE n.Z_ENT = ?
                  AND {self._not_deleted(layout, "n")}
                  AND f.Z_ENT = ?
                  AND f.{g.folder_account} = ?
                ORDER BY n.Z_PK
                """,
                (layout.entities["ICNote"], layout.entities["ICFolder"], account_pk),
            )
            rows = [row for row in rows if self._uri(layout, "ICFolder", row["folder"]) in visible]

        notes = []
        for row in rows:
            created = core_data_datetime(row["created"]) or core_data_datetime(0)
            notes.append(
                NoteSummary(
                    id=self._uri(layout, "ICNote", row["Z_PK"]),
                    title=row["title"] or "Untitled",
                    folder_id=self._uri(layout, "ICFolder", row["folder"]),
                    created_at=created,
                    modified_at=core_data_datetime(row["modified"]) or created,
                )
            )
        logger.info(f"Found {len(notes)} notes in {account} via note store")
        return notes

    async def get_note(self, note_id: str) -> Note:
        layout = await self.open()
        g = layout.generation
        if f"//{layout.store_uuid}/" not in note_id:
            raise NotFound(f"note not found in this store: {note_id}")
        pk = parse_coredata_pk(note_id)

        rows = await self._fetch(
            f"""
            SELECT n.Z_PK, n.{g.note_title} AS title, n.{g.note_folder} AS folder,
                   {layout.created_expr} AS created, {layout.modified_expr} AS modified,
                   d.{g.body_column} AS body
            FROM {OBJECTS_TABLE} n
            LEFT JOIN {g.body_table} d ON d.{g.body_note} = n.Z_PK
            WHERE n.Z_PK = ? AND n.Z_ENT = ? AND {self._not_deleted(layout, "n")}
            """,
            (pk, layout.entities["ICNote"]),
        )
        if not rows:
            raise NotFound(f"note not found: {note_id}")

        row = rows[0]
        created = core_data_datetime(row["created"]) or core_data_datetime(0)
        return Note(
            id=note_id,
            title=row["title"] or "Untitled",
            folder_id=self._uri(layout, "ICFolder", row["folder"]) if row["folder"] is not None else "",
            created_at=created,
            modified_at=core_data_datetime(row["modified"]) or created,
            body=StructuredBody(body_bytes(row["body"])),
        )
