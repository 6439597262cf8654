"""Derived learner memory."""

from mentor.memory.directives import DirectiveExtractor, MarkerExtractor, MemoryUpdate
from mentor.memory.store import MemoryStats, MemoryStore

__all__ = ["DirectiveExtractor", "MarkerExtractor", "MemoryStats", "MemoryStore", "MemoryUpdate"]
