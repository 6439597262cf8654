"""Extraction of memory directives embedded in response text."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

MEMORY_MARKER_RE = re.compile(r"\[MEMORY:(\w+)=([^\]]+)\]")
MEMORY_MARKER_LINE_RE = re.compile(r"\[MEMORY:\w+=[^\]]+\]\n?")
COMPACT_MARKER_RE = re.compile(r"\[MEMORY_COMPACT:\s*(\{.*?\})\s*\]", re.DOTALL)
COMPACT_MARKER_LINE_RE = re.compile(r"\[MEMORY_COMPACT:\s*\{.*?\}\s*\]\n?", re.DOTALL)


@dataclass(frozen=True)
class MemoryUpdate:
    key: str
    value: str


class DirectiveExtractor(Protocol):
    """Scans a final response for memory directives."""

    def extract(self, text: str) -> list[MemoryUpdate]: ...

    def extract_compaction(self, text: str) -> str | None: ...

    def strip(self, text: str) -> str: ...


class MarkerExtractor:
    """Bracketed `[MEMORY:key=value]` and `[MEMORY_COMPACT:{...}]` markers."""

    def extract(self, text: str) -> list[MemoryUpdate]:
        return [
            MemoryUpdate(key=match.group(1), value=match.group(2).strip())
            for match in MEMORY_MARKER_RE.finditer(text)
        ]

    def extract_compaction(self, text: str) -> str | None:
        match = COMPACT_MARKER_RE.search(text)
        if match is None:
            return None
        return match.group(1).strip()

    def strip(self, text: str) -> str:
        cleaned = COMPACT_MARKER_LINE_RE.sub("", text)
        return MEMORY_MARKER_LINE_RE.sub("", cleaned).strip()
