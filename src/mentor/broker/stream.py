"""Decoding of the backend's stream-json transcript."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, TypeAlias

from loguru import logger

LOG_PREVIEW_CHARS = 200


@dataclass(frozen=True)
class InitRecord:
    """`system/init` record announcing the backend session id."""

    session_id: str


@dataclass(frozen=True)
class AssistantRecord:
    """One assistant message; only text content items are kept."""

    fragments: tuple[str, ...]
    has_content: bool = True

    @property
    def text(self) -> str:
        return "\n".join(self.fragments)


@dataclass(frozen=True)
class ResultRecord:
    """Final record of one backend run."""

    text: str
    is_error: bool = False


StreamRecord: TypeAlias = InitRecord | AssistantRecord | ResultRecord


@dataclass(frozen=True)
class StreamOutput:
    """Accumulated outcome of one parsed transcript."""

    text: str
    session_id: str | None
    result_error: bool = False


def decode_record(line: str) -> StreamRecord | None:
    """Decode one NDJSON line; anything unrecognised is noise and yields ``None``."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None

    kind = payload.get("type")
    if kind == "system":
        return _decode_init(payload)
    if kind == "assistant":
        return _decode_assistant(payload)
    if kind == "result":
        return _decode_result(payload)
    return None


def _decode_init(payload: dict[str, Any]) -> InitRecord | None:
    if payload.get("subtype") != "init":
        return None
    session_id = payload.get("session_id")
    if not isinstance(session_id, str) or not session_id:
        return None
    return InitRecord(session_id=session_id)


def _decode_assistant(payload: dict[str, Any]) -> AssistantRecord | None:
    message = payload.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if not isinstance(content, list):
        return None
    fragments = tuple(
        item["text"]
        for item in content
        if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str)
    )
    return AssistantRecord(fragments=fragments, has_content=bool(content))


def _decode_result(payload: dict[str, Any]) -> ResultRecord:
    result = payload.get("result")
    return ResultRecord(
        text=result if isinstance(result, str) else "",
        is_error=bool(payload.get("is_error", False)),
    )


def parse_stream(stdout: str) -> StreamOutput:
    """Fold a complete transcript into response text and session id.

    The latest assistant record replaces earlier text. A result record is only
    a fallback for when no assistant text was seen, and its error flag is
    reported but never raised.
    """
    text = ""
    session_id: str | None = None
    result_error = False

    for line in stdout.splitlines():
        record = decode_record(line)
        match record:
            case InitRecord(session_id=new_session_id):
                session_id = new_session_id
                logger.debug("stream.init session_id={}", session_id)
            case AssistantRecord(has_content=True):
                text = record.text
            case ResultRecord(text=result_text, is_error=is_error):
                if not text and result_text:
                    text = result_text
                if is_error:
                    result_error = True
                    logger.error("stream.result.error result={}", result_text[:LOG_PREVIEW_CHARS])
            case _:
                continue

    logger.debug("stream.parsed text={!r}", text[:LOG_PREVIEW_CHARS])
    return StreamOutput(text=text, session_id=session_id, result_error=result_error)
