"""Configuration management for Mentor."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mentor.errors import ConfigurationError

DEFAULT_DEGRADED_TEXT = "Something went wrong on my side. Shall we try again in a little while?"
DEFAULT_RESUME_HINT = (
    "(Hint: if asked how you know something about the student, just say you remembered it. "
    "Record any new fact at the end of your reply as [MEMORY:key=value].)"
)


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="MENTOR_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Backend
    backend_command: list[str] = Field(default_factory=lambda: ["claude"], description="Backend executable and leading args")
    model: str = Field(default="haiku", description="Model passed to the backend")
    timeout_seconds: float = Field(default=60.0, gt=0, description="Deadline for one backend invocation")
    kill_grace_seconds: float = Field(default=5.0, gt=0, description="Wait between SIGTERM and SIGKILL")
    compaction_timeout_seconds: float = Field(default=30.0, gt=0, description="Deadline for memory compaction")

    # Failure handling
    max_retries: int = Field(default=2, ge=0, description="Retries after the first attempt")
    retry_delay_seconds: float = Field(default=1.0, ge=0, description="Fixed delay between retries")
    circuit_failure_threshold: int = Field(default=3, ge=1, description="Failures before the circuit opens")
    circuit_reset_seconds: float = Field(default=30.0, ge=0, description="Cooldown before a half-open probe")
    max_queue_depth: int | None = Field(default=None, ge=1, description="Reject submissions past this depth")

    # Conversation
    default_topic: str = Field(default="math", description="Topic used when a request names none")
    degraded_text: str = Field(default=DEFAULT_DEGRADED_TEXT, description="Reply sent while the circuit is open")
    resume_hint: str = Field(default=DEFAULT_RESUME_HINT, description="Appended to messages on resumed sessions")

    # Storage
    home: Path = Field(default_factory=lambda: Path.home() / ".mentor", description="Data directory")
    prompts_path: Path | None = Field(default=None, description="Prompt directory, defaults to <home>/prompts")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")

    @field_validator("backend_command")
    @classmethod
    def _require_command(cls, value: list[str]) -> list[str]:
        if not value or not value[0].strip():
            raise ValueError("backend_command must name an executable")
        return value

    def resolve_home(self) -> Path:
        home = self.home.expanduser()
        try:
            home.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigurationError(f"cannot create data directory {home}: {exc}") from exc
        return home

    def resolve_prompts_path(self) -> Path:
        if self.prompts_path is not None:
            return self.prompts_path.expanduser()
        return self.resolve_home() / "prompts"

    @property
    def memory_file(self) -> Path:
        return self.resolve_home() / "user-memory.json"

    @property
    def transcript_root(self) -> Path:
        return self.resolve_home() / "history"


def get_settings(**overrides: object) -> Settings:
    """Load settings from the environment and `.env`, applying explicit overrides."""
    return Settings(**overrides)  # type: ignore[arg-type]
