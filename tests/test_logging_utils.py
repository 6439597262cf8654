from typing import Any

import pytest

from mentor import logging_utils


class RecordingLogger:
    def __init__(self) -> None:
        self.removed = 0
        self.levels: list[str] = []

    def remove(self) -> None:
        self.removed += 1

    def add(self, _sink: Any, **kwargs: Any) -> int:
        self.levels.append(kwargs["level"])
        return len(self.levels)


@pytest.fixture
def recording(monkeypatch: pytest.MonkeyPatch) -> RecordingLogger:
    recorder = RecordingLogger()
    monkeypatch.setattr(logging_utils, "logger", recorder)
    monkeypatch.setattr(logging_utils, "_active", None)
    monkeypatch.delenv("MENTOR_LOG_LEVEL", raising=False)
    return recorder


def test_same_setup_is_installed_once(recording: RecordingLogger) -> None:
    logging_utils.configure_logging(level="info")
    logging_utils.configure_logging(level="INFO")

    assert recording.levels == ["INFO"]


def test_level_change_reconfigures(recording: RecordingLogger) -> None:
    logging_utils.configure_logging(profile="cli", level="info")
    logging_utils.configure_logging(profile="cli", level="debug")

    assert recording.levels == ["INFO", "DEBUG"]
    assert recording.removed == 2


def test_environment_level_used_without_explicit_level(
    recording: RecordingLogger, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("MENTOR_LOG_LEVEL", "warning")

    logging_utils.configure_logging()

    assert recording.levels == ["WARNING"]
    assert logging_utils.resolve_level("error") == "ERROR"
