"""Application context wiring the broker to its collaborators."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger

from mentor.broker import BackendExecutor, Broker, ChatResponse, CircuitBreaker, RetryPolicy, SessionTracker
from mentor.config import Settings
from mentor.memory import MarkerExtractor, MemoryStore
from mentor.prompts import PromptStore
from mentor.transcript import JsonlTranscript, Transcript


@dataclass
class AppContext:
    """Everything one process needs, built once and passed explicitly."""

    settings: Settings
    prompts: PromptStore
    memory: MemoryStore
    transcript: Transcript
    broker: Broker

    async def __aenter__(self) -> AppContext:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.broker.aclose()

    async def converse(
        self,
        message: str,
        session_id: str | None = None,
        topic: str | None = None,
    ) -> ChatResponse:
        """Run one chat turn and record it in the transcript."""
        effective_topic = topic or self.settings.default_topic
        response = await self.broker.chat(message, session_id, effective_topic)
        if response.is_error or not response.session_id:
            return response

        is_new_session = response.session_id != session_id
        if is_new_session or not self.transcript.has_session(response.session_id):
            self.transcript.start_session(response.session_id, effective_topic)
        self.transcript.append_message(response.session_id, "user", message)
        self.transcript.append_message(response.session_id, "assistant", response.text)
        logger.info("app.turn session_id={} chars={}", response.session_id, len(response.text))
        return response

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "circuit": self.broker.circuit_state.value,
            "session_id": self.broker.session_id,
            "topic": self.broker.topic,
            "pending": self.broker.pending,
        }


def build_broker(settings: Settings, *, prompts: PromptStore, memory: MemoryStore) -> Broker:
    executor = BackendExecutor(
        settings.backend_command,
        model=settings.model,
        timeout=settings.timeout_seconds,
        kill_grace=settings.kill_grace_seconds,
    )
    return Broker(
        executor,
        instructions=prompts,
        memory=memory,
        directives=MarkerExtractor(),
        breaker=CircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout=settings.circuit_reset_seconds,
        ),
        retry=RetryPolicy(max_retries=settings.max_retries, delay=settings.retry_delay_seconds),
        tracker=SessionTracker(settings.default_topic),
        degraded_text=settings.degraded_text,
        resume_hint=settings.resume_hint,
        max_queue_depth=settings.max_queue_depth,
        compaction_timeout=settings.compaction_timeout_seconds,
    )


def build_context(settings: Settings) -> AppContext:
    prompts = PromptStore(settings.resolve_prompts_path())
    memory = MemoryStore(settings.memory_file)
    transcript = JsonlTranscript(settings.transcript_root)
    broker = build_broker(settings, prompts=prompts, memory=memory)
    return AppContext(settings=settings, prompts=prompts, memory=memory, transcript=transcript, broker=broker)
