"""Error kinds raised by the backends, the selector and the export pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from notesbridge.core.export import ExportSummary


class NotesBridgeError(Exception):
    """Base class for every error raised by notesbridge.

    ``recoverable`` tells the backend selector whether the next candidate
    backend may be tried after this error.
    """

    recoverable: bool = False


class BackendUnavailable(NotesBridgeError):
    """The note store could not be reached (missing, locked, permission denied)."""

    recoverable = True


class SchemaMismatch(NotesBridgeError):
    """The note store uses a schema generation we do not know how to read."""

    recoverable = True


class InconsistentData(NotesBridgeError):
    """Folder references form a cycle or point at a folder that does not exist."""

    def __init__(self, message: str, *, folder_id: str | None = None) -> None:
        super().__init__(message)
        self.folder_id = folder_id


class AutomationFailure(NotesBridgeError):
    """The scripting host exited non-zero or returned output we could not parse."""

    def __init__(self, message: str, *, transient: bool = False, error_number: int | None = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.error_number = error_number


class PermissionDenied(NotesBridgeError):
    """macOS refused to let us send Apple Events to Notes."""

    GUIDANCE = (
        "Allow your terminal (or the notesbridge app) to control Notes in "
        "System Settings > Privacy & Security > Automation, then try again."
    )

    def __init__(self, message: str) -> None:
        super().__init__(f"{message}. {self.GUIDANCE}")


class UnsupportedOperation(NotesBridgeError):
    """The requested operation cannot run under the selected backend mode."""


class NotFound(NotesBridgeError):
    """An account, folder or note named by the caller does not exist."""


class AmbiguousFolderPath(NotesBridgeError):
    """A folder path matched more than one folder."""

    def __init__(self, path: str, matches: int) -> None:
        super().__init__(f"folder path is ambiguous ({matches} matches): {path}")
        self.path = path
        self.matches = matches


class ExtractionDegraded(NotesBridgeError):
    """A note body was recovered imperfectly. Never fatal."""

    def __init__(self, note_id: str | None, issues: list[str] | tuple[str, ...]) -> None:
        self.note_id = note_id
        self.issues = tuple(issues)
        detail = "; ".join(self.issues) or "unknown content"
        super().__init__(f"best-effort extraction for {note_id or 'note'}: {detail}")


class ExportAborted(NotesBridgeError):
    """A systemic failure stopped the export. Carries whatever was completed."""

    def __init__(self, message: str, summary: ExportSummary) -> None:
        super().__init__(message)
        self.summary = summary
