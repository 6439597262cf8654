"""Mentor - one tutor conversation at a time."""

from mentor.broker import Broker, ChatResponse, CircuitState

__version__ = "0.1.0"

__all__ = ["Broker", "ChatResponse", "CircuitState"]
