"""Pytest fixtures for notesbridge tests."""

import asyncio
import gzip
import logging
import sqlite3
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from notesbridge.core.config import BackendMode, DatabaseConfig
from notesbridge.core.errors import NotFound
from notesbridge.core.models import (
    Account,
    FolderRecord,
    FolderTree,
    Note,
    NoteSummary,
    RenderedBody,
    StructuredBody,
)
from notesbridge.core.selector import BackendSelector
from notesbridge.sources.notes.base import NotesBackend

STORE_UUID = "6F1C2E0A-TEST-STORE"


# Protobuf builders


def encode_varint(value: int) -> bytes:
    if value < 0:
        value += 1 << 64
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def varint_field(number: int, value: int) -> bytes:
    return encode_varint(number << 3) + encode_varint(value)


def bytes_field(number: int, data: bytes) -> bytes:
    return encode_varint((number << 3) | 2) + encode_varint(len(data)) + data


def make_run(
    length: int,
    *,
    style: int | None = None,
    indent: int | None = None,
    checked: bool | None = None,
    weight: int | None = None,
    strike: bool = False,
    link: str | None = None,
    uti: str | None = None,
    extra: bytes = b"",
) -> bytes:
    """Build one AttributeRun message."""
    run = varint_field(1, length)

    if style is not None or indent is not None or checked is not None:
        paragraph = b""
        if style is not None:
            paragraph += varint_field(1, style)
        if indent is not None:
            paragraph += varint_field(4, indent)
        if checked is not None:
            paragraph += bytes_field(5, bytes_field(1, b"check-uuid") + varint_field(2, int(checked)))
        run += bytes_field(2, paragraph)

    if weight is not None:
        run += varint_field(5, weight)
    if strike:
        run += varint_field(7, 1)
    if link is not None:
        run += bytes_field(9, link.encode("utf-8"))
    if uti is not None:
        run += bytes_field(12, bytes_field(1, b"attachment-1") + bytes_field(2, uti.encode("utf-8")))
    return run + extra


def make_note_blob(text: str, runs: list[bytes] | None = None, *, version: int = 1, compress: bool = True) -> bytes:
    """Build a NoteStoreProto blob the way Notes stores it in ZICNOTEDATA.ZDATA."""
    note = bytes_field(2, text.encode("utf-8"))
    for run in runs or []:
        note += bytes_field(5, run)
    document = varint_field(2, version) + bytes_field(3, note)
    proto = bytes_field(2, document)
    return gzip.compress(proto, mtime=0) if compress else proto


@pytest.fixture
def note_blob():
    """Provide the note body blob builder."""
    return make_note_blob


@pytest.fixture
def attribute_run():
    """Provide the attribute run builder."""
    return make_run


# Synthetic NoteStore.sqlite


class NoteStoreBuilder:
    """Writes a small NoteStore.sqlite with the ``ZACCOUNT8`` layout."""

    ENT_NOTE = 12
    ENT_ACCOUNT = 14
    ENT_FOLDER = 15

    def __init__(self, path: Path, *, account_column: str = "ZACCOUNT8"):
        self.path = path
        self.account_column = account_column
        self._conn = sqlite3.connect(path)
        self._conn.executescript(
            f"""
            CREATE TABLE Z_METADATA (Z_VERSION INTEGER PRIMARY KEY, Z_UUID VARCHAR, Z_PLIST BLOB);
            CREATE TABLE Z_PRIMARYKEY (Z_ENT INTEGER PRIMARY KEY, Z_NAME VARCHAR, Z_SUPER INTEGER, Z_MAX INTEGER);
            CREATE TABLE ZICCLOUDSYNCINGOBJECT (
                Z_PK INTEGER PRIMARY KEY,
                Z_ENT INTEGER,
                ZNAME VARCHAR,
                ZTITLE1 VARCHAR,
                ZTITLE2 VARCHAR,
                ZFOLDER INTEGER,
                ZPARENT INTEGER,
                {account_column} INTEGER,
                ZFOLDERTYPE INTEGER,
                ZMARKEDFORDELETION INTEGER,
                ZCREATIONDATE3 TIMESTAMP,
                ZMODIFICATIONDATE1 TIMESTAMP
            );
            CREATE TABLE ZICNOTEDATA (Z_PK INTEGER PRIMARY KEY, ZNOTE INTEGER, ZDATA BLOB);
            """
        )
        self._conn.execute("INSERT INTO Z_METADATA (Z_VERSION, Z_UUID) VALUES (1, ?)", (STORE_UUID,))
        self._conn.executemany(
            "INSERT INTO Z_PRIMARYKEY (Z_ENT, Z_NAME) VALUES (?, ?)",
            [(self.ENT_NOTE, "ICNote"), (self.ENT_ACCOUNT, "ICAccount"), (self.ENT_FOLDER, "ICFolder")],
        )
        self._conn.commit()

    def add_account(self, pk: int, name: str) -> str:
        self._conn.execute(
            "INSERT INTO ZICCLOUDSYNCINGOBJECT (Z_PK, Z_ENT, ZNAME) VALUES (?, ?, ?)",
            (pk, self.ENT_ACCOUNT, name),
        )
        self._conn.commit()
        return f"x-coredata://{STORE_UUID}/ICAccount/p{pk}"

    def add_folder(
        self,
        pk: int,
        name: str,
        account_pk: int,
        parent_pk: int | None = None,
        *,
        folder_type: int = 0,
        deleted: bool = False,
    ) -> str:
        self._conn.execute(
            f"""
            INSERT INTO ZICCLOUDSYNCINGOBJECT
                (Z_PK, Z_ENT, ZTITLE2, ZPARENT, {self.account_column}, ZFOLDERTYPE, ZMARKEDFORDELETION)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (pk, self.ENT_FOLDER, name, parent_pk, account_pk, folder_type, int(deleted)),
        )
        self._conn.commit()
        return f"x-coredata://{STORE_UUID}/ICFolder/p{pk}"

    def add_note(
        self,
        pk: int,
        title: str | None,
        folder_pk: int,
        body: bytes | None = None,
        *,
        created: float | None = 0.0,
        modified: float | None = 86400.0,
        deleted: bool = False,
    ) -> str:
        self._conn.execute(
            """
            INSERT INTO ZICCLOUDSYNCINGOBJECT
                (Z_PK, Z_ENT, ZTITLE1, ZFOLDER, ZMARKEDFORDELETION, ZCREATIONDATE3, ZMODIFICATIONDATE1)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (pk, self.ENT_NOTE, title, folder_pk, int(deleted), created, modified),
        )
        if body is not None:
            self._conn.execute("INSERT INTO ZICNOTEDATA (ZNOTE, ZDATA) VALUES (?, ?)", (pk, body))
        self._conn.commit()
        return f"x-coredata://{STORE_UUID}/ICNote/p{pk}"

    def execute(self, sql: str, params: tuple = ()) -> None:
        self._conn.execute(sql, params)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()


@pytest.fixture
def temp_dir():
    """Provide a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def restore_root_logger():
    """Put the root logger back the way pytest configured it."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def store_builder(temp_dir):
    """Provide an empty synthetic note store."""
    builder = NoteStoreBuilder(temp_dir / "NoteStore.sqlite")
    yield builder
    builder.close()


@pytest.fixture
def personal_store(store_builder):
    """Account "Personal" with Archive and Archive > 2024 and three notes.

    One note carries a paragraph style the extractor does not know.
    """
    store_builder.add_account(1, "Personal")
    store_builder.add_folder(10, "Archive", 1)
    store_builder.add_folder(11, "2024", 1, parent_pk=10)
    store_builder.add_note(
        20,
        "Groceries",
        10,
        make_note_blob("Groceries\nMilk\n", [make_run(10, style=0), make_run(5)]),
    )
    store_builder.add_note(
        21,
        "Plans",
        11,
        make_note_blob("Plans\nTravel\n", [make_run(6, style=0), make_run(7, style=100)]),
    )
    store_builder.add_note(
        22,
        "Sketch",
        10,
        make_note_blob("Sketch\nidea\n", [make_run(7, style=0), make_run(5, style=42)]),
    )
    return store_builder


@pytest.fixture
def database_config(store_builder):
    """Provide a database config pointing at the synthetic store."""
    return DatabaseConfig(path=store_builder.path, open_retries=1, retry_delay=0.01, busy_timeout=0.05)


# In-memory backend


def make_datetime(day: int = 1) -> datetime:
    return datetime(2024, 1, day, 12, 0, tzinfo=timezone.utc)


class FakeBackend(NotesBackend):
    """In-memory backend that records calls and body-fetch concurrency."""

    def __init__(
        self,
        name: str = "automation",
        *,
        concurrent_fetch: bool = False,
        accounts: list[str] | None = None,
        fetch_delay: float = 0.01,
    ):
        self.name = name
        self.concurrent_fetch = concurrent_fetch
        self.fetch_delay = fetch_delay
        self.accounts = [Account(id=f"acct-{n}", name=n) for n in (accounts or ["Personal"])]
        self.folders: dict[str, list[FolderRecord]] = {a.name: [] for a in self.accounts}
        self.notes: dict[str, tuple[str, NoteSummary, Note]] = {}
        self.calls: list[str] = []
        self.failures: dict[str, Exception] = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    def add_folder(self, account: str, folder_id: str, name: str, parent_id: str | None = None) -> None:
        self.folders[account].append(FolderRecord(id=folder_id, name=name, parent_id=parent_id))

    def add_note(self, account: str, note_id: str, title: str, folder_id: str, body=None) -> None:
        if body is None:
            body = RenderedBody(f"<div>{title}</div><div>body of {title}</div>")
        summary = NoteSummary(
            id=note_id,
            title=title,
            folder_id=folder_id,
            created_at=make_datetime(1),
            modified_at=make_datetime(2),
        )
        note = Note(
            id=note_id,
            title=title,
            folder_id=folder_id,
            created_at=make_datetime(1),
            modified_at=make_datetime(2),
            body=body,
        )
        self.notes[note_id] = (account, summary, note)

    def _check(self, call: str) -> None:
        self.calls.append(call)
        if call in self.failures:
            raise self.failures[call]

    async def list_accounts(self) -> list[Account]:
        self._check("list_accounts")
        return list(self.accounts)

    async def list_folders(self, account: str) -> FolderTree:
        self._check("list_folders")
        if account not in self.folders:
            raise NotFound(f"account not found: {account}")
        return FolderTree.build(account, self.folders[account])

    async def list_notes(self, account: str, folder_id: str | None = None) -> list[NoteSummary]:
        self._check("list_notes")
        return [
            summary
            for owner, summary, _ in self.notes.values()
            if owner == account and (folder_id is None or summary.folder_id == folder_id)
        ]

    async def get_note(self, note_id: str) -> Note:
        self.calls.append(f"get_note:{note_id}")
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.fetch_delay)
            failure = self.failures.get(f"get_note:{note_id}") or self.failures.get("get_note")
            if failure is not None:
                raise failure
            if note_id not in self.notes:
                raise NotFound(f"note not found: {note_id}")
            return self.notes[note_id][2]
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.closed = True


def make_selector(mode: BackendMode, *, database=None, automation=None) -> BackendSelector:
    """Build a selector whose factories hand out the given backends (or raise them)."""

    def factory(backend):
        if backend is None:
            return None

        async def create():
            if isinstance(backend, Exception):
                raise backend
            return backend

        return create

    return BackendSelector(mode, database=factory(database), automation=factory(automation))


@pytest.fixture
def fake_backend():
    """Provide an automation-like in-memory backend with one account."""
    return FakeBackend()
