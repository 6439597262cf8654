"""Conversation transcript persistence."""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal, Protocol
from urllib.parse import quote

from loguru import logger
from pydantic import BaseModel, TypeAdapter, ValidationError

TRANSCRIPT_SUFFIX = ".jsonl"
SESSION_INDEX_FILE = "sessions.json"

Role = Literal["user", "assistant"]


class Transcript(Protocol):
    """What the application needs from conversation persistence."""

    def has_session(self, session_id: str) -> bool: ...

    def start_session(self, session_id: str, topic: str) -> None: ...

    def append_message(self, session_id: str, role: Role, text: str) -> None: ...


class SessionInfo(BaseModel):
    session_id: str
    topic: str
    created_at: str
    message_count: int = 0


_SESSION_LIST = TypeAdapter(list[SessionInfo])


class JsonlTranscript:
    """One append-only JSONL file per session plus a JSON session index."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self._index_path = root / SESSION_INDEX_FILE
        self._lock = threading.Lock()
        self._sessions = self._load_index()

    def _load_index(self) -> dict[str, SessionInfo]:
        if not self._index_path.exists():
            return {}
        try:
            sessions = _SESSION_LIST.validate_json(self._index_path.read_bytes())
        except (OSError, ValidationError):
            logger.warning("transcript.index.invalid path={} action=reset", self._index_path)
            return {}
        return {session.session_id: session for session in sessions}

    def _save_index(self) -> None:
        payload = _SESSION_LIST.dump_json(list(self._sessions.values()), indent=2)
        self._index_path.write_bytes(payload)

    def session_path(self, session_id: str) -> Path:
        return self.root / f"{quote(session_id, safe='')}{TRANSCRIPT_SUFFIX}"

    def sessions(self) -> list[SessionInfo]:
        return list(self._sessions.values())

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def start_session(self, session_id: str, topic: str) -> None:
        with self._lock:
            self._sessions[session_id] = SessionInfo(
                session_id=session_id,
                topic=topic,
                created_at=datetime.now(UTC).isoformat(),
            )
            self._save_index()
        logger.info("transcript.session.start session_id={} topic={}", session_id, topic)

    def append_message(self, session_id: str, role: Role, text: str) -> None:
        entry = {"timestamp": datetime.now(UTC).isoformat(), "role": role, "content": text}
        with self._lock:
            with self.session_path(session_id).open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, ensure_ascii=False) + "\n")
            info = self._sessions.get(session_id)
            if info is not None:
                info.message_count += 1
                self._save_index()

    def read(self, session_id: str) -> list[dict[str, str]]:
        path = self.session_path(session_id)
        if not path.exists():
            return []
        entries: list[dict[str, str]] = []
        with path.open("r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(payload, dict):
                    entries.append(payload)
        return entries
