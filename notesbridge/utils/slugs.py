"""Helpers for generating stable, filesystem-safe names."""

from __future__ import annotations

import hashlib
import re

from notesbridge.utils.converters import sanitize_filename

NOTE_NAME_MAX_LENGTH = 80


def short_id(note_id: str) -> str:
    """Last component of a note id (``p123`` for a CoreData URI)."""

    tail = note_id.rstrip("/").rsplit("/", 1)[-1]
    tail = re.sub(r"[^A-Za-z0-9]+", "", tail)
    return tail or id_digest(note_id)


def id_digest(note_id: str, length: int = 8) -> str:
    return hashlib.sha1(note_id.encode("utf-8")).hexdigest()[:length]


class NameAllocator:
    """Hand out collision-free directory names within one parent directory.

    Names are compared case-insensitively (APFS and HFS+ defaults). The
    result depends only on the order of ``allocate`` calls, so callers that
    feed notes in a stable order get the same names on every run.
    """

    def __init__(self, max_length: int = NOTE_NAME_MAX_LENGTH):
        self.max_length = max_length
        self._taken: set[str] = set()

    def reserve(self, name: str) -> None:
        self._taken.add(name.casefold())

    def allocate(self, title: str, note_id: str) -> str:
        base = sanitize_filename(title or "", max_length=self.max_length)
        for candidate in (
            base,
            f"{base}-{short_id(note_id)}",
            f"{base}-{id_digest(note_id)}",
            f"{base}-{id_digest(note_id, 40)}",
        ):
            if candidate.casefold() not in self._taken:
                self._taken.add(candidate.casefold())
                return candidate

        # Only reachable when distinct notes share a full sha1 of their ids
        index = 2
        while f"{base}-{id_digest(note_id, 40)}-{index}".casefold() in self._taken:
            index += 1
        candidate = f"{base}-{id_digest(note_id, 40)}-{index}"
        self._taken.add(candidate.casefold())
        return candidate
