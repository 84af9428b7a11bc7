"""Best-effort conversion of stored note bodies into Markdown.

The database keeps each note body as a gzipped protobuf document
(``NoteStoreProto -> Document -> Note``, see ``notestore.proto``) holding the
plain text plus a list of attribute runs that style consecutive slices of
it. We recognise the structural elements listed in ``STRUCTURE_TABLES`` and
degrade everything else to plain text, recording what was lost so the
caller can tell exact extractions from best-effort ones.

Output depends only on the input bytes: no locale, clock or global state.
"""

from __future__ import annotations

import gzip
import logging
import re
import zlib
from dataclasses import dataclass, field
from typing import Mapping

from google.protobuf import unknown_fields
from google.protobuf.message import DecodeError

from notesbridge.core.errors import ExtractionDegraded
from notesbridge.core.models import Note, NoteBody, RenderedBody, StructuredBody
from notesbridge.sources.notes import notestore_pb2
from notesbridge.utils.converters import ensure_title_heading, html_to_markdown

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
ATTACHMENT_CHAR = "￼"
MIN_BEST_EFFORT_SCORE = 20

# AttributeRun fields turned into Markdown
RENDERED_RUN_FIELDS = frozenset(
    {"length", "paragraph_style", "font_weight", "strikethrough", "link", "attachment_info"}
)


@dataclass(frozen=True)
class StructureTable:
    """Structural elements we know how to render for one document version."""

    version: int
    paragraph_styles: Mapping[int, str]
    font_weights: Mapping[int, str]
    attachments: Mapping[str, str]
    # AttributeRun fields we understand but cannot express in Markdown
    ignored_run_fields: frozenset[str] = frozenset()


_BASE_TABLE = StructureTable(
    version=1,
    paragraph_styles={
        -1: "body",
        0: "title",
        1: "heading",
        2: "subheading",
        4: "monospaced",
        100: "dotted_list",
        101: "dashed_list",
        102: "numbered_list",
        103: "checklist",
    },
    font_weights={
        0: "",
        1: "**",
        2: "*",
        3: "***",
    },
    attachments={
        "public.jpeg": "Image",
        "public.png": "Image",
        "public.heic": "Image",
        "public.tiff": "Image",
        "com.compuserve.gif": "Image",
        "com.adobe.pdf": "PDF",
        "public.url": "Link",
        "public.vcard": "Contact",
        "public.mpeg-4": "Video",
        "com.apple.quicktime-movie": "Video",
        "public.mpeg-4-audio": "Audio",
        "com.apple.m4a-audio": "Audio",
        "com.apple.drawing": "Drawing",
        "com.apple.drawing.2": "Drawing",
        "com.apple.paper": "Drawing",
        "com.apple.paper.doc.scan": "Scanned document",
        "com.apple.notes.gallery": "Scanned document",
    },
    ignored_run_fields=frozenset(
        {"font", "underlined", "superscript", "color"}
    ),
)

# Keyed by Document.version. Add an entry when a new version changes meaning.
STRUCTURE_TABLES: dict[int, StructureTable] = {
    0: _BASE_TABLE,
    1: _BASE_TABLE,
}


def structure_table_for(document_version: int | None) -> StructureTable:
    if document_version in STRUCTURE_TABLES:
        return STRUCTURE_TABLES[document_version]
    latest = STRUCTURE_TABLES[max(STRUCTURE_TABLES)]
    logger.debug(
        "Unknown note document version %s; using structure table v%d",
        document_version,
        latest.version,
    )
    return latest


@dataclass(frozen=True)
class Extraction:
    """Result of turning a note body into Markdown."""

    text: str
    exact: bool
    issues: tuple[str, ...] = ()

    def degradation(self, note_id: str | None = None) -> ExtractionDegraded | None:
        if self.exact:
            return None
        return ExtractionDegraded(note_id, self.issues)


@dataclass
class _Run:
    text: str
    style: str = "body"
    indent: int = 0
    checked: bool = False
    emphasis: str = ""
    strikethrough: bool = False
    link: str | None = None
    attachment: str | None = None


@dataclass
class _IssueLog:
    issues: list[str] = field(default_factory=list)

    def add(self, message: str) -> None:
        if message not in self.issues:
            self.issues.append(message)


def _gunzip(blob: bytes) -> bytes:
    if blob.startswith(GZIP_MAGIC):
        return gzip.decompress(blob)
    return blob


def extract_markdown(blob: bytes | None) -> Extraction:
    """Convert a stored note body blob into Markdown. Never raises."""

    if not blob:
        return Extraction("", exact=False, issues=("note has no stored body",))

    try:
        data = _gunzip(blob)
    except (OSError, EOFError, zlib.error) as e:
        logger.debug("Note body is not valid gzip: %s", e)
        text = _best_effort_text(blob)
        return Extraction(text, exact=False, issues=(f"corrupt gzip stream: {e}",))

    try:
        return _extract_document(data)
    except (DecodeError, UnicodeDecodeError) as e:
        logger.debug("Note body is not a protobuf document: %s", e)

    plain = _decode_plain_text(data)
    if plain is not None:
        return Extraction(plain, exact=True)

    text = _best_effort_text(data)
    return Extraction(text, exact=False, issues=("unrecognized note body encoding",))


def body_to_markdown(body: NoteBody) -> Extraction:
    """Single seam that turns either body representation into Markdown."""

    if isinstance(body, StructuredBody):
        return extract_markdown(body.blob)
    if isinstance(body, RenderedBody):
        return Extraction(html_to_markdown(body.html), exact=True)
    raise TypeError(f"Unsupported note body: {type(body).__name__}")


def note_to_markdown(note: Note) -> Extraction:
    """Render a full note (title heading + body) as Markdown."""

    extraction = body_to_markdown(note.body)
    text = ensure_title_heading(extraction.text, note.title)
    return Extraction(text, exact=extraction.exact, issues=extraction.issues)


def _extract_document(data: bytes) -> Extraction:
    root = notestore_pb2.NoteStoreProto()
    root.ParseFromString(data)
    if not root.HasField("document"):
        raise DecodeError("missing document")
    document = root.document
    table = structure_table_for(document.version if document.HasField("version") else None)

    if not document.HasField("note"):
        raise DecodeError("missing note")
    note = document.note
    if not note.HasField("note_text"):
        raise DecodeError("missing note text")

    log = _IssueLog()
    runs = _split_runs(note.note_text, note.attribute_run, table, log)
    markdown = _render(runs)
    return Extraction(markdown, exact=not log.issues, issues=tuple(log.issues))


def _split_runs(text: str, attribute_runs, table: StructureTable, log: _IssueLog) -> list[_Run]:
    # Run lengths count UTF-16 code units, as NSString does
    units = text.encode("utf-16-le")
    total = len(units) // 2
    pos = 0
    runs: list[_Run] = []

    for attrs in attribute_runs:
        length = attrs.length
        if length <= 0:
            continue
        if pos + length > total:
            log.add("attribute runs overrun note text")
            length = total - pos
            if length <= 0:
                break

        chunk = units[pos * 2:(pos + length) * 2].decode("utf-16-le", errors="replace")
        pos += length
        runs.append(_decode_run(chunk, attrs, table, log))

    if pos < total:
        if attribute_runs:
            log.add("attribute runs do not cover note text")
        runs.append(_Run(units[pos * 2:].decode("utf-16-le", errors="replace")))

    return runs


def _check_run_fields(attrs, table: StructureTable, log: _IssueLog) -> None:
    """Record run attributes that neither render nor are knowingly dropped."""
    handled = RENDERED_RUN_FIELDS | table.ignored_run_fields
    for descriptor, _ in attrs.ListFields():
        if descriptor.name not in handled:
            log.add(f"unhandled attribute run field {descriptor.name}")
    for unknown in unknown_fields.UnknownFieldSet(attrs):
        log.add(f"unknown attribute run field {unknown.field_number}")


def _decode_run(chunk: str, attrs, table: StructureTable, log: _IssueLog) -> _Run:
    run = _Run(chunk)

    try:
        if attrs.HasField("paragraph_style"):
            style = attrs.paragraph_style
            style_type = style.style_type if style.HasField("style_type") else -1
            kind = table.paragraph_styles.get(style_type)
            if kind is None:
                log.add(f"unknown paragraph style {style_type}")
                kind = "body"
            run.style = kind
            run.indent = max(0, style.indent_amount)
            if style.HasField("checklist"):
                run.checked = bool(style.checklist.done)

        if attrs.HasField("font_weight"):
            marker = table.font_weights.get(attrs.font_weight)
            if marker is None:
                log.add(f"unknown font weight {attrs.font_weight}")
                marker = ""
            run.emphasis = marker

        run.strikethrough = bool(attrs.strikethrough)

        if attrs.HasField("link"):
            run.link = attrs.link

        if attrs.HasField("attachment_info"):
            uti = attrs.attachment_info.type_uti
            label = table.attachments.get(uti)
            if label is None:
                log.add(f"unsupported attachment type {uti or 'unknown'}")
                label = "Attachment"
            run.attachment = f"[{label}]"

        _check_run_fields(attrs, table, log)
    except UnicodeDecodeError as e:
        log.add(f"malformed run attributes: {e}")

    return run


def _inline(run: _Run, text: str) -> str:
    if run.attachment is not None:
        text = text.replace(ATTACHMENT_CHAR, run.attachment)
    else:
        text = text.replace(ATTACHMENT_CHAR, "")

    stripped = text.strip()
    if not stripped:
        return text

    body = stripped
    if run.style != "monospaced":
        if run.strikethrough:
            body = f"~~{body}~~"
        if run.emphasis:
            body = f"{run.emphasis}{body}{run.emphasis}"
        if run.link:
            body = f"[{body}]({run.link})"

    lead = text[: len(text) - len(text.lstrip())]
    trail = text[len(text.rstrip()):]
    return f"{lead}{body}{trail}"


def _paragraphs(runs: list[_Run]) -> list[tuple[_Run, str]]:
    """Group runs into paragraphs, each tagged with its styling run."""
    paragraphs: list[tuple[_Run, str]] = []
    pieces: list[str] = []
    style_run: _Run | None = None

    for run in runs:
        parts = run.text.split("\n")
        for idx, part in enumerate(parts):
            if part:
                pieces.append(_inline(run, part))
                if style_run is None:
                    style_run = run
            if idx < len(parts) - 1:
                paragraphs.append((style_run or run, "".join(pieces)))
                pieces = []
                style_run = None

    if pieces:
        paragraphs.append((style_run or runs[-1], "".join(pieces)))
    return paragraphs


def _render(runs: list[_Run]) -> str:
    if not runs:
        return ""

    lines: list[str] = []
    in_code = False
    numbering: dict[int, int] = {}

    for run, text in _paragraphs(runs):
        if run.style == "monospaced":
            if not in_code:
                lines.append("```")
                in_code = True
            lines.append(text)
            continue
        if in_code:
            lines.append("```")
            in_code = False

        if run.style != "numbered_list":
            numbering.clear()

        content = text.strip()
        indent = "  " * run.indent

        if run.style == "title":
            lines.append(f"# {content}" if content else "")
        elif run.style == "heading":
            lines.append(f"## {content}" if content else "")
        elif run.style == "subheading":
            lines.append(f"### {content}" if content else "")
        elif run.style in ("dotted_list", "dashed_list"):
            lines.append(f"{indent}- {content}")
        elif run.style == "numbered_list":
            for deeper in [level for level in numbering if level > run.indent]:
                del numbering[deeper]
            numbering[run.indent] = numbering.get(run.indent, 0) + 1
            lines.append(f"{indent}{numbering[run.indent]}. {content}")
        elif run.style == "checklist":
            mark = "x" if run.checked else " "
            lines.append(f"{indent}- [{mark}] {content}")
        else:
            lines.append(text.rstrip())

    if in_code:
        lines.append("```")

    markdown = "\n".join(lines)
    markdown = re.sub(r"\n{3,}", "\n\n", markdown)
    return markdown.strip("\n")


def _normalize_text(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _is_noise(ch: str) -> bool:
    return ch == "�" or (ch < " " and ch not in "\n\r\t") or ch == "\x7f"


def _decode_plain_text(data: bytes) -> str | None:
    """Return the blob as text when it is plainly human-readable UTF-8."""
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return None

    text = text.strip("\0").strip()
    if not text:
        return None

    sample = text[:2048]
    weird = sum(1 for ch in sample if _is_noise(ch))
    printable = len(sample) - weird
    if printable > 0 and weird * 20 < printable:
        return _normalize_text(text)
    return None


def _score_block(block: str) -> int:
    alnum = sum(1 for ch in block if ch.isalnum())
    spaces = sum(1 for ch in block if ch.isspace())
    dense = max(0, alnum - len(block) // 4)
    return dense + min(spaces, 200)


def _best_effort_text(data: bytes) -> str:
    """Pick the most text-like run of characters out of an opaque blob."""
    decoded = data.decode("utf-8", errors="replace")

    blocks: list[str] = []
    current: list[str] = []
    for ch in decoded:
        if _is_noise(ch):
            block = "".join(current).strip()
            if block:
                blocks.append(block)
            current = []
            continue
        current.append(ch)
    block = "".join(current).strip()
    if block:
        blocks.append(block)

    # Stable sort keeps the earliest block on ties
    blocks.sort(key=_score_block, reverse=True)
    for candidate in blocks:
        if _score_block(candidate) > MIN_BEST_EFFORT_SCORE:
            return _normalize_text(candidate)
    return ""
