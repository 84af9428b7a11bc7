"""Unit tests for the read-only note store reader."""

import asyncio
import sqlite3
from datetime import datetime, timezone

import pytest

from conftest import STORE_UUID, NoteStoreBuilder, make_note_blob, make_run
from notesbridge.core.config import DatabaseConfig
from notesbridge.core.errors import BackendUnavailable, NotFound, SchemaMismatch
from notesbridge.core.models import StructuredBody
from notesbridge.sources.notes.database import (
    NoteStoreReader,
    body_bytes,
    core_data_datetime,
    detect_generation,
    parse_coredata_pk,
)


def note_uri(pk: int) -> str:
    return f"x-coredata://{STORE_UUID}/ICNote/p{pk}"


def folder_uri(pk: int) -> str:
    return f"x-coredata://{STORE_UUID}/ICFolder/p{pk}"


def run(coro):
    return asyncio.run(coro)


class TestHelpers:
    """Tests for Core Data helpers."""

    def test_core_data_epoch(self):
        """Test timestamps count seconds from 2001-01-01 UTC."""
        assert core_data_datetime(0) == datetime(2001, 1, 1, tzinfo=timezone.utc)
        assert core_data_datetime(None) is None

    def test_parse_pk(self):
        """Test the primary key is read from the last id component."""
        assert parse_coredata_pk(note_uri(42)) == 42

    def test_parse_pk_invalid(self):
        """Test ids without a pNNN component are rejected."""
        with pytest.raises(NotFound):
            parse_coredata_pk("x-coredata://STORE/ICNote/abc")

    def test_detect_generation(self):
        """Test the newest matching layout wins."""
        base = {"Z_PK", "Z_ENT", "ZNAME", "ZFOLDER", "ZTITLE1", "ZPARENT"}
        body = {"ZNOTE", "ZDATA"}

        assert detect_generation(base | {"ZACCOUNT8", "ZACCOUNT7"}, body).name == "account8"
        assert detect_generation(base | {"ZACCOUNT7"}, body).name == "account7"
        assert detect_generation(base | {"ZOWNER"}, body).name == "owner"
        assert detect_generation(base, body) is None
        assert detect_generation(base | {"ZACCOUNT8"}, {"ZNOTE"}) is None


class TestOpen:
    """Tests for opening the store."""

    def test_missing_file(self, temp_dir):
        """Test a missing store is reported as unavailable."""
        reader = NoteStoreReader(DatabaseConfig(path=temp_dir / "absent.sqlite"))

        with pytest.raises(BackendUnavailable, match="not found"):
            run(reader.open())

    def test_not_a_database(self, temp_dir):
        """Test a file that is not SQLite is reported as unavailable."""
        path = temp_dir / "NoteStore.sqlite"
        path.write_bytes(b"this is not a database file at all" * 10)
        reader = NoteStoreReader(DatabaseConfig(path=path))

        with pytest.raises(BackendUnavailable):
            run(reader.open())

    def test_unknown_layout(self, temp_dir):
        """Test a store without any known account column is a schema mismatch."""
        path = temp_dir / "NoteStore.sqlite"
        conn = sqlite3.connect(path)
        conn.executescript(
            """
            CREATE TABLE ZICCLOUDSYNCINGOBJECT (Z_PK INTEGER PRIMARY KEY, Z_ENT INTEGER, ZNAME VARCHAR, ZACCOUNT99 INTEGER);
            CREATE TABLE ZICNOTEDATA (Z_PK INTEGER PRIMARY KEY, ZNOTE INTEGER, ZDATA BLOB);
            """
        )
        conn.close()
        reader = NoteStoreReader(DatabaseConfig(path=path))

        with pytest.raises(SchemaMismatch, match="Unrecognized"):
            run(reader.open())

    def test_missing_objects_table(self, temp_dir):
        """Test an unrelated SQLite file is a schema mismatch."""
        path = temp_dir / "NoteStore.sqlite"
        conn = sqlite3.connect(path)
        conn.execute("CREATE TABLE other (id INTEGER)")
        conn.close()

        with pytest.raises(SchemaMismatch):
            run(NoteStoreReader(DatabaseConfig(path=path)).open())

    def test_detects_layout(self, personal_store, database_config):
        """Test the store uuid, layout and entity ids are read."""
        layout = run(NoteStoreReader(database_config).open())

        assert layout.generation.name == "account8"
        assert layout.store_uuid == STORE_UUID
        assert layout.entities["ICNote"] == NoteStoreBuilder.ENT_NOTE
        assert layout.has_deletion_flag

    def test_older_layout(self, temp_dir):
        """Test a store using ZACCOUNT7 is read through its own field map."""
        builder = NoteStoreBuilder(temp_dir / "NoteStore.sqlite", account_column="ZACCOUNT7")
        builder.add_account(1, "On My Mac")
        builder.add_folder(2, "Notes", 1)
        builder.close()
        reader = NoteStoreReader(DatabaseConfig(path=builder.path))

        tree = run(reader.list_folders("On My Mac"))

        assert reader._layout.generation.name == "account7"
        assert [f.path for f in tree.folders] == [("Notes",)]

    def test_locked_store(self, personal_store, database_config):
        """Test a store held under an exclusive lock gives up after the retry budget."""
        personal_store.execute("PRAGMA journal_mode=DELETE")
        locker = sqlite3.connect(personal_store.path, isolation_level=None)
        locker.execute("BEGIN EXCLUSIVE")
        try:
            with pytest.raises(BackendUnavailable, match="locked"):
                run(NoteStoreReader(database_config).open())
        finally:
            locker.execute("ROLLBACK")
            locker.close()

    def test_snapshot_read_and_cleanup(self, personal_store, database_config):
        """Test snapshot mode reads a copy and removes it on close."""
        config = database_config.model_copy(update={"snapshot": True})
        reader = NoteStoreReader(config)

        async def scenario():
            accounts = await reader.list_accounts()
            snapshot = reader._snapshot_path
            assert snapshot is not None and snapshot.exists()
            assert snapshot != personal_store.path
            await reader.close()
            return accounts, snapshot

        accounts, snapshot = run(scenario())

        assert [a.name for a in accounts] == ["Personal"]
        assert not snapshot.exists()

    def test_does_not_modify_store(self, personal_store, database_config):
        """Test reading leaves the store file untouched."""
        before = personal_store.path.read_bytes()

        run(NoteStoreReader(database_config).list_notes("Personal"))

        assert personal_store.path.read_bytes() == before


class TestListing:
    """Tests for listing accounts, folders and notes."""

    def test_list_accounts(self, personal_store, database_config):
        """Test accounts carry Core Data ids."""
        personal_store.add_account(2, "Archive Account")

        accounts = run(NoteStoreReader(database_config).list_accounts())

        assert [(a.name, a.id) for a in accounts] == [
            ("Archive Account", f"x-coredata://{STORE_UUID}/ICAccount/p2"),
            ("Personal", f"x-coredata://{STORE_UUID}/ICAccount/p1"),
        ]

    def test_list_folders(self, personal_store, database_config):
        """Test folder paths are resolved through parent links."""
        tree = run(NoteStoreReader(database_config).list_folders("Personal"))

        assert [(f.id, f.path) for f in tree.folders] == [
            (folder_uri(10), ("Archive",)),
            (folder_uri(11), ("Archive", "2024")),
        ]

    def test_trash_and_deleted_folders_hidden(self, personal_store, database_config):
        """Test the trash folder and folders marked for deletion are skipped."""
        personal_store.add_folder(12, "Recently Deleted", 1, folder_type=1)
        personal_store.add_folder(13, "Old", 1, deleted=True)
        personal_store.add_note(30, "Binned", 12, make_note_blob("Binned\n", [make_run(7)]))

        reader = NoteStoreReader(database_config)
        tree = run(reader.list_folders("Personal"))
        notes = run(reader.list_notes("Personal"))

        assert [f.name for f in tree.folders] == ["Archive", "2024"]
        assert note_uri(30) not in {n.id for n in notes}

    def test_dangling_parent_reported(self, personal_store, database_config):
        """Test a folder whose parent row is missing is skipped and reported."""
        personal_store.add_folder(14, "Orphan", 1, parent_pk=999)
        personal_store.add_note(31, "Lost", 14, make_note_blob("Lost\n", [make_run(5)]))

        reader = NoteStoreReader(database_config)
        tree = run(reader.list_folders("Personal"))
        notes = run(reader.list_notes("Personal"))

        assert folder_uri(14) not in {f.id for f in tree.folders}
        assert [issue.folder_id for issue in tree.issues] == [folder_uri(14)]
        assert note_uri(31) not in {n.id for n in notes}

    def test_unknown_account(self, personal_store, database_config):
        """Test an unknown account name raises NotFound."""
        with pytest.raises(NotFound):
            run(NoteStoreReader(database_config).list_folders("Work"))

    def test_list_notes(self, personal_store, database_config):
        """Test notes are listed with titles, folders and timestamps."""
        notes = run(NoteStoreReader(database_config).list_notes("Personal"))

        assert [(n.id, n.title, n.folder_id) for n in notes] == [
            (note_uri(20), "Groceries", folder_uri(10)),
            (note_uri(21), "Plans", folder_uri(11)),
            (note_uri(22), "Sketch", folder_uri(10)),
        ]
        assert notes[0].created_at == datetime(2001, 1, 1, tzinfo=timezone.utc)
        assert notes[0].modified_at == datetime(2001, 1, 2, tzinfo=timezone.utc)

    def test_list_notes_in_folder(self, personal_store, database_config):
        """Test listing restricted to one folder."""
        notes = run(NoteStoreReader(database_config).list_notes("Personal", folder_uri(10)))

        assert [n.title for n in notes] == ["Groceries", "Sketch"]

    def test_deleted_notes_hidden(self, personal_store, database_config):
        """Test notes marked for deletion are not listed."""
        personal_store.add_note(32, "Gone", 10, deleted=True)

        notes = run(NoteStoreReader(database_config).list_notes("Personal"))

        assert note_uri(32) not in {n.id for n in notes}

    def test_missing_title_and_dates(self, personal_store, database_config):
        """Test defaults for notes without a title or timestamps."""
        personal_store.add_note(33, None, 10, created=None, modified=None)

        notes = run(NoteStoreReader(database_config).list_notes("Personal", folder_uri(10)))
        note = next(n for n in notes if n.id == note_uri(33))

        assert note.title == "Untitled"
        assert note.created_at == datetime(2001, 1, 1, tzinfo=timezone.utc)
        assert note.modified_at == note.created_at

    def test_resolve_folder(self, personal_store, database_config):
        """Test folder paths resolve to ids."""
        reader = NoteStoreReader(database_config)

        assert run(reader.resolve_folder("Personal", ("Archive", "2024"))) == folder_uri(11)
        with pytest.raises(NotFound):
            run(reader.resolve_folder("Personal", ("2024",)))


class TestGetNote:
    """Tests for fetching a note body."""

    def test_get_note(self, personal_store, database_config):
        """Test the body blob is returned undecoded."""
        note = run(NoteStoreReader(database_config).get_note(note_uri(20)))

        assert note.title == "Groceries"
        assert note.folder_id == folder_uri(10)
        assert isinstance(note.body, StructuredBody)
        assert note.body.blob == make_note_blob("Groceries\nMilk\n", [make_run(10, style=0), make_run(5)])
        assert note.is_structured

    def test_note_without_body(self, personal_store, database_config):
        """Test a note with no ZICNOTEDATA row has an empty body."""
        personal_store.add_note(34, "Empty", 10)

        note = run(NoteStoreReader(database_config).get_note(note_uri(34)))

        assert note.body.blob == b""

    def test_missing_note(self, personal_store, database_config):
        """Test an unknown primary key raises NotFound."""
        with pytest.raises(NotFound):
            run(NoteStoreReader(database_config).get_note(note_uri(999)))

    def test_note_from_other_store(self, personal_store, database_config):
        """Test an id minted by a different store is not looked up."""
        with pytest.raises(NotFound, match="not found in this store"):
            run(NoteStoreReader(database_config).get_note("x-coredata://OTHER/ICNote/p20"))

    def test_folder_id_is_not_a_note(self, personal_store, database_config):
        """Test a folder id does not resolve to a note."""
        with pytest.raises(NotFound):
            run(NoteStoreReader(database_config).get_note(note_uri(10)))

    def test_text_body_is_encoded(self, personal_store, database_config):
        """Test a ZDATA value stored as TEXT comes back as UTF-8 bytes."""
        personal_store.add_note(35, "Typed", 10, "plain text body")

        note = run(NoteStoreReader(database_config).get_note(note_uri(35)))

        assert note.body.blob == b"plain text body"

    def test_body_bytes(self):
        """Test stored values of any SQLite type become bytes."""
        assert body_bytes(None) == b""
        assert body_bytes(b"\x1f\x8b") == b"\x1f\x8b"
        assert body_bytes(memoryview(b"ab")) == b"ab"
        assert body_bytes("café") == "café".encode("utf-8")
        assert body_bytes(12) == b"12"
