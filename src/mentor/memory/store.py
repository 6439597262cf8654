"""Persistent key-value memory about the learner.

Values stay a plain string until a second distinct value arrives for the same
key, then the key holds a list. The whole document is rewritten on every
change; it is small and only touched from background tasks of one broker.
"""

from __future__ import annotations

import json
import re
import threading
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from mentor.memory.directives import MemoryUpdate

CURRENT_VERSION = 2
COMPACTION_KEY_THRESHOLD = 20
COMPACTION_VALUE_THRESHOLD = 50
JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

MemoryValue = str | list[str]

EMPTY_CONTEXT = "Nothing is known about the student yet. Learn about them naturally as you talk."
COMPACTION_REQUEST = (
    "\nMemory needs tidying: some keys above overlap or repeat.\n"
    "At the very end of this reply, print the tidied memory in this form:\n"
    '[MEMORY_COMPACT:{"name":"value","grade":"value","hobby":["value1","value2"]}]\n'
    "- merge keys that mean the same thing (name, student_name -> name)\n"
    "- drop duplicate values\n"
    "- JSON only, no explanation"
)


def _now() -> str:
    return datetime.now(UTC).isoformat()


class MemoryDocument(BaseModel):
    created_at: str = Field(default_factory=_now)
    updated_at: str = Field(default_factory=_now)
    version: int = CURRENT_VERSION
    data: dict[str, MemoryValue] = Field(default_factory=dict)


class MemoryStats(BaseModel):
    key_count: int
    value_count: int
    needs_compaction: bool


class MemoryStore:
    """JSON-file backed learner memory."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._document = self._load()

    @property
    def data(self) -> dict[str, MemoryValue]:
        return self._snapshot()

    def _snapshot(self) -> dict[str, MemoryValue]:
        with self._lock:
            return {key: list(value) if isinstance(value, list) else value for key, value in self._document.data.items()}

    def _load(self) -> MemoryDocument:
        if not self.path.exists():
            logger.info("memory.load.empty path={}", self.path)
            return MemoryDocument()
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("memory.load.corrupt path={} action=reset", self.path)
            return MemoryDocument()

        if isinstance(payload, dict) and payload.get("version") != CURRENT_VERSION:
            logger.info("memory.migrate from_version={}", payload.get("version"))
            document = _migrate_v1(payload)
            self._write(document)
            return document
        try:
            return MemoryDocument.model_validate(payload)
        except ValidationError:
            logger.warning("memory.load.invalid path={} action=reset", self.path)
            return MemoryDocument()

    def _write(self, document: MemoryDocument) -> None:
        document.updated_at = _now()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(f"{self.path.suffix}.tmp")
        tmp_path.write_text(document.model_dump_json(indent=2), encoding="utf-8")
        tmp_path.replace(self.path)

    def apply_updates(self, updates: Iterable[MemoryUpdate]) -> int:
        """Merge updates into memory. Returns how many values were added."""
        added = 0
        with self._lock:
            data = self._document.data
            for update in updates:
                existing = data.get(update.key)
                if existing is None:
                    data[update.key] = update.value
                elif isinstance(existing, str):
                    if existing == update.value:
                        logger.debug("memory.skip.duplicate key={}", update.key)
                        continue
                    data[update.key] = [existing, update.value]
                elif update.value in existing:
                    logger.debug("memory.skip.duplicate key={}", update.key)
                    continue
                else:
                    existing.append(update.value)
                added += 1
                logger.info("memory.saved key={} value={}", update.key, update.value)
            if added:
                self._write(self._document)
        return added

    def value_count(self) -> int:
        return _value_count(self._snapshot())

    def needs_compaction(self) -> bool:
        return _needs_compaction(self._snapshot())

    def stats(self) -> MemoryStats:
        data = self._snapshot()
        return MemoryStats(
            key_count=len(data),
            value_count=_value_count(data),
            needs_compaction=_needs_compaction(data),
        )

    def context_section(self) -> str:
        """Render memory for injection into new-session instructions."""
        data = self._snapshot()
        if not data:
            return EMPTY_CONTEXT

        lines = ["What you already know about the student:"]
        for key, value in data.items():
            display = ", ".join(value) if isinstance(value, list) else value
            lines.append(f"- {key}: {display}")
        lines.append("\nWeave this into your examples naturally.")
        lines.append("(Do not explain how you know it; act as if you always knew.)")
        if _needs_compaction(data):
            lines.append(COMPACTION_REQUEST)
        return "\n".join(lines)

    def compaction_prompt(self) -> str:
        memory_json = json.dumps(self._snapshot(), ensure_ascii=False, indent=2)
        return (
            "Below is what is remembered about a student. Tidy up duplicate or similar entries.\n\n"
            f"Current memory:\n{memory_json}\n\n"
            "Rules:\n"
            "1. Merge keys with the same meaning into one (e.g. name, student_name -> name)\n"
            "2. Remove duplicate values\n"
            "3. Keep only the essential facts\n"
            "4. Output only JSON in this shape:\n\n"
            '{"name": "value", "grade": "value", "hobby": ["value1", "value2"], ...}\n\n'
            "Print the JSON alone, with no explanation."
        )

    def apply_compacted(self, raw: str) -> bool:
        """Replace memory with a compacted JSON object found in `raw`."""
        match = JSON_OBJECT_RE.search(raw)
        if match is None:
            logger.warning("memory.compact.no_json")
            return False
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError:
            logger.warning("memory.compact.invalid_json")
            return False
        compacted = _normalize_data(payload)
        if not compacted:
            logger.warning("memory.compact.empty action=keep")
            return False
        with self._lock:
            self._document.data = compacted
            self._write(self._document)
        logger.info("memory.compact.applied keys={}", len(compacted))
        return True

    def clear(self) -> None:
        with self._lock:
            self._document = MemoryDocument()
            self._write(self._document)
        logger.info("memory.cleared")

    def update(self, values: Mapping[str, MemoryValue | None]) -> None:
        """Set keys directly; a `None` value deletes the key."""
        with self._lock:
            for key, value in values.items():
                if value is None:
                    self._document.data.pop(key, None)
                else:
                    self._document.data[key] = value
            self._write(self._document)
        logger.info("memory.updated keys={}", sorted(values))

    def delete_key(self, key: str) -> None:
        with self._lock:
            self._document.data.pop(key, None)
            self._write(self._document)
        logger.info("memory.deleted key={}", key)


def _normalize_data(payload: Any) -> dict[str, MemoryValue]:
    if not isinstance(payload, dict):
        return {}
    data: dict[str, MemoryValue] = {}
    for key, value in payload.items():
        if isinstance(value, list):
            items = [str(item) for item in value if item is not None]
            if items:
                data[str(key)] = items
        elif value is not None:
            data[str(key)] = str(value)
    return data


def _migrate_v1(payload: dict[str, Any]) -> MemoryDocument:
    document = MemoryDocument()
    profile = payload.get("profile") or {}
    interests = payload.get("interests") or {}
    learning = payload.get("learning") or {}
    if isinstance(profile, dict):
        if profile.get("name"):
            document.data["name"] = str(profile["name"])
        if profile.get("grade"):
            document.data["grade"] = str(profile["grade"])
    if isinstance(interests, dict) and interests.get("hobbies"):
        document.data["hobby"] = [str(item) for item in interests["hobbies"]]
    if isinstance(learning, dict):
        if learning.get("strengths"):
            document.data["strength"] = [str(item) for item in learning["strengths"]]
        if learning.get("struggles"):
            document.data["struggle"] = [str(item) for item in learning["struggles"]]
    return document


def _value_count(data: Mapping[str, MemoryValue]) -> int:
    return sum(len(value) if isinstance(value, list) else 1 for value in data.values())


def _needs_compaction(data: Mapping[str, MemoryValue]) -> bool:
    return len(data) > COMPACTION_KEY_THRESHOLD or _value_count(data) > COMPACTION_VALUE_THRESHOLD
