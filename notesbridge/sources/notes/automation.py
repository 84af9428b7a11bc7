"""osascript-based access to the live Notes.app.

Reads go through JXA (JavaScript for Automation) because it returns JSON we
can parse reliably. Writes go through AppleScript because JXA's ``make``
is unreliable for some shapes of note and folder creation.

No caller-provided value is ever interpolated into script text. JXA reads
receive a single JSON document as ``argv[0]``; AppleScript writes receive
plain ``on run argv`` arguments, with note bodies handed over in a
temporary file.
"""

import asyncio
import json
import logging
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from notesbridge.core.config import AutomationConfig
from notesbridge.core.errors import AutomationFailure, NotFound, PermissionDenied
from notesbridge.core.models import (
    FOLDER_PATH_SEPARATOR,
    Account,
    FolderRecord,
    FolderTree,
    Note,
    NoteSummary,
    RenderedBody,
)
from notesbridge.sources.notes.base import NotesBackend
from notesbridge.utils.logging import log_process_output

logger = logging.getLogger(__name__)

LOG_CATEGORY = "osascript"

# errAEEventNotPermitted / errAEEventWouldRequireUserConsent
PERMISSION_ERROR_NUMBERS = {-1743, -1744}
# App not running, connection invalid, Apple Event timed out
TRANSIENT_ERROR_NUMBERS = {-600, -609, -1712}
ERROR_NUMBER_RE = re.compile(r"\((-?\d+)\)\s*$")

IGNORED_FOLDER_NAMES = {"Recently Deleted"}


JXA_READ_SCRIPT = """
function run(argv) {
    const input = JSON.parse(argv[0]);
    const Notes = Application("Notes");

    function accountNamed(name) {
        const matches = Notes.accounts.whose({name: name})();
        if (matches.length === 0) {
            throw new Error("account not found: " + name);
        }
        return matches[0];
    }

    function containerId(item) {
        try {
            const c = item.container();
            return c ? c.id() : null;
        } catch (e) {
            return null;
        }
    }

    function iso(d) {
        return d ? d.toISOString() : null;
    }

    function uniqueFolders(acct) {
        const seen = {};
        const out = [];
        acct.folders().forEach(f => {
            const id = f.id();
            if (!seen[id]) {
                seen[id] = true;
                out.push(f);
            }
        });
        return out;
    }

    function notesOf(folder) {
        const ids = folder.notes.id();
        const names = folder.notes.name();
        const created = folder.notes.creationDate();
        const modified = folder.notes.modificationDate();
        const folderId = folder.id();
        return ids.map((id, i) => ({
            id: id,
            title: names[i],
            folder_id: folderId,
            created_at: iso(created[i]),
            modified_at: iso(modified[i]),
        }));
    }

    function main() {
        switch (input.action) {
            case "accounts.list":
                return Notes.accounts().map(a => ({id: a.id(), name: a.name()}));
            case "folders.list": {
                const acct = accountNamed(input.account);
                const accountId = acct.id();
                return uniqueFolders(acct).map(f => {
                    const parent = containerId(f);
                    return {
                        id: f.id(),
                        name: f.name(),
                        parent_id: parent === accountId ? null : parent,
                    };
                });
            }
            case "notes.list": {
                if (input.folder_id) {
                    return notesOf(Notes.folders.byId(input.folder_id));
                }
                const acct = accountNamed(input.account);
                return [].concat.apply([], uniqueFolders(acct).map(notesOf));
            }
            case "notes.get": {
                const n = Notes.notes.byId(input.id);
                if (!n.exists()) {
                    return null;
                }
                return {
                    id: n.id(),
                    title: n.name(),
                    folder_id: containerId(n),
                    created_at: iso(n.creationDate()),
                    modified_at: iso(n.modificationDate()),
                    body_html: String(n.body()),
                };
            }
            default:
                throw new Error("unknown action: " + input.action);
        }
    }

    return JSON.stringify(main());
}
"""


# AppleScript write handlers. Every value arrives through argv.
WRITE_SCRIPTS: dict[str, str] = {
    "note.create": """
on run argv
    set {folder_id, note_title, body_file} to {item 1, item 2, item 3} of argv
    set html_content to read POSIX file body_file as «class utf8»
    tell application "Notes"
        set targetFolder to folder id folder_id
        set theNote to make new note at targetFolder with properties {name:note_title, body:html_content}
        return id of theNote as text
    end tell
end run
""",
    "note.set_title": """
on run argv
    set {note_id, note_title} to {item 1, item 2} of argv
    tell application "Notes"
        set name of note id note_id to note_title
    end tell
    return ""
end run
""",
    "note.set_body": """
on run argv
    set {note_id, body_file} to {item 1, item 2} of argv
    set html_content to read POSIX file body_file as «class utf8»
    tell application "Notes"
        set body of note id note_id to html_content
    end tell
    return ""
end run
""",
    "note.append_body": """
on run argv
    set {note_id, body_file} to {item 1, item 2} of argv
    set html_content to read POSIX file body_file as «class utf8»
    tell application "Notes"
        set theNote to note id note_id
        set body of theNote to (body of theNote as text) & html_content
    end tell
    return ""
end run
""",
    "note.delete": """
on run argv
    set note_id to item 1 of argv
    tell application "Notes"
        delete note id note_id
    end tell
    return ""
end run
""",
    "note.move": """
on run argv
    set {note_id, folder_id} to {item 1, item 2} of argv
    tell application "Notes"
        move note id note_id to folder id folder_id
    end tell
    return ""
end run
""",
    "folder.create": """
on run argv
    set {parent_id, folder_name} to {item 1, item 2} of argv
    tell application "Notes"
        set newFolder to make new folder at folder id parent_id with properties {name:folder_name}
        return id of newFolder as text
    end tell
end run
""",
    "folder.create_root": """
on run argv
    set {account_name, folder_name} to {item 1, item 2} of argv
    tell application "Notes"
        set newFolder to make new folder at account account_name with properties {name:folder_name}
        return id of newFolder as text
    end tell
end run
""",
    "folder.rename": """
on run argv
    set {folder_id, folder_name} to {item 1, item 2} of argv
    tell application "Notes"
        set name of folder id folder_id to folder_name
    end tell
    return ""
end run
""",
    "folder.delete": """
on run argv
    set folder_id to item 1 of argv
    tell application "Notes"
        delete folder id folder_id
    end tell
    return ""
end run
""",
}


@dataclass(frozen=True)
class ReadQuery:
    """A structured read answered by the JXA script."""

    action: str
    params: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> str:
        return json.dumps({"action": self.action, **self.params}, ensure_ascii=False)


@dataclass(frozen=True)
class WriteCommand:
    """A mutation carried out by one of the AppleScript handlers."""

    action: str
    args: tuple[str, ...] = ()
    # Appended to args as the path of a temporary UTF-8 file
    body_html: str | None = None


@dataclass(frozen=True)
class ScriptResult:
    returncode: int
    stdout: str
    stderr: str


class OsascriptHost:
    """Runs a script through the ``osascript`` binary."""

    def __init__(self, config: AutomationConfig):
        self.config = config

    async def run(self, script: str, args: list[str], *, language: str = "AppleScript") -> ScriptResult:
        cmd = [self.config.osascript_bin, "-l", language, "-e", script, *args]

        if self.config.debug_scripts:
            logger.debug(
                "osascript (%s) script:\n%s\nargs: %r",
                language,
                script,
                args,
                extra={"log_category": LOG_CATEGORY},
            )

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise AutomationFailure(
                f"Could not start {self.config.osascript_bin}: {e}"
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.config.timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise AutomationFailure(
                f"osascript timed out after {self.config.timeout:.0f}s",
                transient=True,
            ) from e

        result = ScriptResult(
            returncode=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if self.config.debug_scripts and result.stderr:
            log_process_output(result.stderr, logger, category=LOG_CATEGORY)
        return result


def classify_failure(result: ScriptResult) -> Exception:
    """Map a failed osascript run onto the error kinds callers handle."""

    message = result.stderr.strip() or result.stdout.strip() or f"exit status {result.returncode}"
    match = ERROR_NUMBER_RE.search(message)
    error_number = int(match.group(1)) if match else None

    if error_number in PERMISSION_ERROR_NUMBERS or "Not authorized to send Apple events" in message:
        return PermissionDenied(f"Notes automation was refused: {message}")

    return AutomationFailure(
        f"osascript failed: {message}",
        transient=error_number in TRANSIENT_ERROR_NUMBERS,
        error_number=error_number,
    )


class AutomationClient:
    """The ``read(query)`` / ``write(command)`` capability over osascript.

    At most one osascript process runs at a time per client; Notes.app
    does not cope well with concurrent Apple Event sessions.
    """

    def __init__(self, config: AutomationConfig, host: OsascriptHost | None = None):
        self.config = config
        self.host = host or OsascriptHost(config)
        self._lock = asyncio.Lock()

    async def read(self, query: ReadQuery) -> Any:
        output = await self._invoke(JXA_READ_SCRIPT, [query.payload()], language="JavaScript")
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise AutomationFailure(
                f"Unparseable output from {query.action}: {output[:200]!r}"
            ) from e

    async def write(self, command: WriteCommand) -> str:
        script = WRITE_SCRIPTS.get(command.action)
        if script is None:
            raise ValueError(f"Unknown write action: {command.action}")

        if command.body_html is None:
            return await self._invoke(script, list(command.args))

        # Bodies go through a file so size and content never touch argv parsing
        with tempfile.NamedTemporaryFile(
            mode="w", suffix=".html", delete=False, encoding="utf-8"
        ) as temp_file:
            temp_file.write(command.body_html)
            temp_path = temp_file.name

        try:
            return await self._invoke(script, [*command.args, temp_path])
        finally:
            Path(temp_path).unlink(missing_ok=True)

    async def _invoke(self, script: str, args: list[str], *, language: str = "AppleScript") -> str:
        attempts = self.config.max_retries + 1
        async with self._lock:
            for attempt in range(1, attempts + 1):
                try:
                    result = await self.host.run(script, args, language=language)
                    if result.returncode != 0:
                        raise classify_failure(result)
                    return result.stdout.strip()
                except AutomationFailure as e:
                    if not e.transient or attempt == attempts:
                        logger.error(f"osascript failed: {e}", extra={"log_category": LOG_CATEGORY})
                        raise
                    delay = self.config.retry_delay * attempt
                    logger.warning(
                        "Transient osascript failure (attempt %d/%d), retrying in %.1fs: %s",
                        attempt,
                        attempts,
                        delay,
                        e,
                        extra={"log_category": LOG_CATEGORY},
                    )
                    await asyncio.sleep(delay)

        raise AssertionError("unreachable")


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class AutomationBackend(NotesBackend):
    """Reads and writes the live Notes.app through an ``AutomationClient``."""

    name = "automation"
    concurrent_fetch = False

    def __init__(self, client: AutomationClient):
        self.client = client

    @staticmethod
    def is_ignored_folder(folder_name: str) -> bool:
        return folder_name.strip() in IGNORED_FOLDER_NAMES

    async def list_accounts(self) -> list[Account]:
        rows = await self.client.read(ReadQuery("accounts.list"))
        accounts = [Account(id=str(row.get("id") or row["name"]), name=row["name"]) for row in rows]
        accounts.sort(key=lambda a: (a.name, a.id))
        logger.debug("Found %d accounts via automation", len(accounts))
        return accounts

    async def list_folders(self, account: str) -> FolderTree:
        rows = await self._read_for_account(ReadQuery("folders.list", {"account": account}), account)
        records = []
        for row in rows:
            if self.is_ignored_folder(row["name"]):
                logger.debug("Skipping ignored folder: %s", row["name"])
                continue
            records.append(FolderRecord(id=row["id"], name=row["name"], parent_id=row.get("parent_id")))
        return FolderTree.build(account, records)

    async def list_notes(self, account: str, folder_id: str | None = None) -> list[NoteSummary]:
        if folder_id is not None:
            rows = await self.client.read(ReadQuery("notes.list", {"account": account, "folder_id": folder_id}))
        else:
            tree = await self.list_folders(account)
            rows = await self._read_for_account(ReadQuery("notes.list", {"account": account}), account)
            visible = {folder.id for folder in tree.folders}
            rows = [row for row in rows if row.get("folder_id") in visible]

        notes = [
            NoteSummary(
                id=row["id"],
                title=row.get("title") or "",
                folder_id=row["folder_id"],
                created_at=_parse_timestamp(row.get("created_at")),
                modified_at=_parse_timestamp(row.get("modified_at")),
            )
            for row in rows
        ]
        logger.info(f"Found {len(notes)} notes in {account} via automation")
        return notes

    async def get_note(self, note_id: str) -> Note:
        row = await self.client.read(ReadQuery("notes.get", {"id": note_id}))
        if not row:
            raise NotFound(f"note not found: {note_id}")

        created = _parse_timestamp(row.get("created_at")) or datetime.fromtimestamp(0, timezone.utc)
        modified = _parse_timestamp(row.get("modified_at")) or created
        return Note(
            id=row["id"],
            title=row.get("title") or "",
            folder_id=row.get("folder_id") or "",
            created_at=created,
            modified_at=modified,
            body=RenderedBody(row.get("body_html") or ""),
        )

    async def _read_for_account(self, query: ReadQuery, account: str) -> Any:
        try:
            return await self.client.read(query)
        except AutomationFailure as e:
            if "account not found" in str(e):
                raise NotFound(f"account not found: {account}") from e
            raise

    # Writes

    async def create_note(self, account: str, folder_path: tuple[str, ...], title: str, body_html: str) -> str:
        folder_id = await self.resolve_folder(account, folder_path)
        note_id = await self.client.write(
            WriteCommand("note.create", (folder_id, title), body_html=body_html)
        )
        logger.info(f"Created note: {title} in {FOLDER_PATH_SEPARATOR.join(folder_path)} ({note_id})")
        return note_id

    async def set_note_title(self, note_id: str, title: str) -> None:
        await self.client.write(WriteCommand("note.set_title", (note_id, title)))
        logger.info(f"Renamed note {note_id} to {title}")

    async def set_note_body(self, note_id: str, body_html: str) -> None:
        await self.client.write(WriteCommand("note.set_body", (note_id,), body_html=body_html))
        logger.info(f"Replaced body of note {note_id}")

    async def append_note_body(self, note_id: str, body_html: str) -> None:
        await self.client.write(WriteCommand("note.append_body", (note_id,), body_html=body_html))
        logger.info(f"Appended to note {note_id}")

    async def delete_note(self, note_id: str) -> None:
        await self.client.write(WriteCommand("note.delete", (note_id,)))
        logger.info(f"Deleted note {note_id}")

    async def move_note(self, note_id: str, account: str, folder_path: tuple[str, ...]) -> None:
        folder_id = await self.resolve_folder(account, folder_path)
        await self.client.write(WriteCommand("note.move", (note_id, folder_id)))
        logger.info(f"Moved note {note_id} to {FOLDER_PATH_SEPARATOR.join(folder_path)}")

    async def create_folder(self, account: str, parent_path: tuple[str, ...] | None, name: str) -> str:
        if parent_path:
            parent_id = await self.resolve_folder(account, parent_path)
            folder_id = await self.client.write(WriteCommand("folder.create", (parent_id, name)))
        else:
            folder_id = await self.client.write(WriteCommand("folder.create_root", (account, name)))
        logger.info(f"Created folder {name} ({folder_id})")
        return folder_id

    async def rename_folder(self, account: str, folder_path: tuple[str, ...], name: str) -> None:
        folder_id = await self.resolve_folder(account, folder_path)
        await self.client.write(WriteCommand("folder.rename", (folder_id, name)))
        logger.info(f"Renamed folder {FOLDER_PATH_SEPARATOR.join(folder_path)} to {name}")

    async def delete_folder(self, account: str, folder_path: tuple[str, ...]) -> None:
        folder_id = await self.resolve_folder(account, folder_path)
        await self.client.write(WriteCommand("folder.delete", (folder_id,)))
        logger.info(f"Deleted folder {FOLDER_PATH_SEPARATOR.join(folder_path)}")
