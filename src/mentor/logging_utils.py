"""Runtime logging helpers."""

from __future__ import annotations

import os
import sys
from typing import Literal

from loguru import logger
from rich.console import Console
from rich.logging import RichHandler

LogProfile = Literal["default", "cli"]

_DEFAULT_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<7} | {name}:{function}:{line} | {message}"
_active: tuple[LogProfile, str] | None = None


def resolve_level(level: str | None = None) -> str:
    """Explicit level first, then `MENTOR_LOG_LEVEL`, then INFO."""
    return (level or os.getenv("MENTOR_LOG_LEVEL") or "INFO").upper()


def configure_logging(*, profile: LogProfile = "default", level: str | None = None) -> None:
    """Install one loguru sink for `profile`; repeat calls with the same setup are no-ops."""
    global _active
    wanted = (profile, resolve_level(level))
    if wanted == _active:
        return

    logger.remove()
    if profile == "cli":
        sink = RichHandler(console=Console(stderr=True), show_time=False, show_path=False, markup=False)
        logger.add(sink, level=wanted[1], format="{message}", backtrace=False, diagnose=False)
    else:
        logger.add(sys.stderr, level=wanted[1], format=_DEFAULT_FORMAT, backtrace=False, diagnose=False)
    _active = wanted
