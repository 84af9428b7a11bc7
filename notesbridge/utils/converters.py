"""Body conversions between Notes HTML, Markdown and plain text."""

from __future__ import annotations

import re
from html import escape, unescape

from html_to_markdown import convert_to_markdown
from markdown_it import MarkdownIt

# Notes.app tags checklist items with a "checked" or "unchecked" class
_CHECKLIST_ITEM = re.compile(r'<li\s+class="([^"]*)"[^>]*>(.*?)</li>', re.DOTALL)
_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")
_BLANK_LINES = re.compile(r"\n{3,}")
_PARAGRAPH_GAP = re.compile(r"</p>\s*<p>")
_PATH_SEPARATORS = re.compile(r"[/\\]")
_RESERVED_CHARS = re.compile(r'[<>:"|?*\x00-\x1f]')
_SPACING = re.compile(r"[\s_]+")
_HEADING_MARKUP = re.compile(r"^[#>*\s]+|[*_`~]")

_markdown = MarkdownIt("commonmark", {"breaks": True})


def _checklist_item(match: re.Match[str]) -> str:
    done = "checked" in match.group(1).split()
    text = _WHITESPACE.sub(" ", unescape(_TAG.sub(" ", match.group(2)))).strip()
    return f"<li>{'[x]' if done else '[ ]'} {text}</li>"


def normalize_checklists_html(html: str) -> str:
    """Rewrite checklist ``<li>`` items as ``[x]``/``[ ]`` task text."""
    return _CHECKLIST_ITEM.sub(_checklist_item, html)


def html_to_markdown(html: str) -> str:
    """Convert the HTML body Notes.app hands out into Markdown."""
    if not (html and html.strip()):
        return ""

    markdown = convert_to_markdown(
        normalize_checklists_html(html),
        heading_style="atx",
        newline_style="spaces",
        code_language="",
        wrap_width=0,
        bullets="-*+",
        escape_misc=False,
    )
    return _BLANK_LINES.sub("\n\n", markdown).strip()


def markdown_to_html(markdown: str, note_title: str = "") -> str:
    """Render Markdown into the HTML dialect Notes.app accepts for a body."""
    if not (markdown and markdown.strip()):
        return f"<h1>{escape(note_title)}</h1>" if note_title else ""

    # Notes collapses paragraph spacing unless there is an explicit break
    return _PARAGRAPH_GAP.sub("</p><br><p>", _markdown.render(markdown)).strip()


def text_to_html(text: str) -> str:
    """Plain text to Notes HTML: one escaped ``<div>`` per line."""
    if not text:
        return ""

    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    return "".join(f"<div>{escape(line)}</div>" if line else "<div><br></div>" for line in lines)


def sanitize_filename(name: str, max_length: int = 255) -> str:
    """Turn a title into a single path component, ``untitled`` when nothing is left."""
    cleaned = _RESERVED_CHARS.sub("", _PATH_SEPARATORS.sub("-", name or ""))
    cleaned = _SPACING.sub(" ", cleaned).strip().strip(".")
    return cleaned[:max_length].rstrip(" .") or "untitled"


def _heading_key(text: str) -> str:
    return _WHITESPACE.sub(" ", _HEADING_MARKUP.sub("", text.strip())).strip().casefold()


def ensure_title_heading(markdown: str, note_title: str | None) -> str:
    """Make sure the document opens with ``# <title>``.

    Notes uses the first line of a note as its title, so when that line
    matches the title it is promoted to a heading instead of duplicated.
    """
    if not note_title:
        return markdown

    heading = f"# {note_title}"
    lines = markdown.splitlines()
    first = next((i for i, line in enumerate(lines) if line.strip()), None)
    if first is None:
        return heading
    if _heading_key(lines[first]) != _heading_key(note_title):
        return f"{heading}\n\n{markdown.strip()}"

    if not lines[first].lstrip().startswith("# "):
        rest = lines[first + 1:]
        if rest and rest[0].strip():
            rest.insert(0, "")
        lines = lines[:first] + [heading] + rest
    return "\n".join(lines).strip()
