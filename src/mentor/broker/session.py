"""Tracking of the single live backend conversation."""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger


@dataclass(frozen=True)
class SessionPlan:
    """How the next invocation should talk to the backend."""

    topic: str
    resume_session_id: str | None

    @property
    def is_new_session(self) -> bool:
        return self.resume_session_id is None


class SessionTracker:
    """Holds the current backend session id and its topic."""

    def __init__(self, default_topic: str) -> None:
        self.session_id: str | None = None
        self.topic = default_topic

    def prepare(self, *, resume_session_id: str | None, topic: str | None) -> SessionPlan:
        """Decide between a fresh session and resuming the tracked one.

        A caller without a resume id, or one switching topic, starts over.
        The caller's id is only a signal: resumption always uses the tracked id.
        """
        effective_topic = topic or self.topic
        topic_changed = topic is not None and topic != self.topic
        if resume_session_id is None or topic_changed:
            if self.session_id is not None:
                logger.info(
                    "session.clear session_id={} topic={} next_topic={}",
                    self.session_id,
                    self.topic,
                    effective_topic,
                )
            self.topic = effective_topic
            self.session_id = None
        return SessionPlan(topic=self.topic, resume_session_id=self.session_id)

    def record(self, session_id: str | None) -> None:
        if session_id and session_id != self.session_id:
            logger.info("session.start session_id={} topic={}", session_id, self.topic)
            self.session_id = session_id

    def reset(self) -> None:
        self.session_id = None
        logger.info("session.reset")
