"""Prompt files and new-session instruction assembly."""

from __future__ import annotations

from pathlib import Path

from loguru import logger

BASE_PROMPT_FILE = "base.md"
MEMORY_INSTRUCTIONS_FILE = "memory-instructions.md"
TOPICS_DIR = "topics"
TOPIC_SUFFIX = ".md"
MEMORY_HEADING = "## What you remember about the student"


class PromptStore:
    """Read-once prompt texts rooted at one directory.

    Layout: `base.md`, `memory-instructions.md` and `topics/<topic>.md`.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self._base = _read_prompt(root / BASE_PROMPT_FILE)
        self._memory_instructions = _read_prompt(root / MEMORY_INSTRUCTIONS_FILE)
        self._topics: dict[str, str] = {}
        topics_dir = root / TOPICS_DIR
        if topics_dir.is_dir():
            for path in sorted(topics_dir.glob(f"*{TOPIC_SUFFIX}")):
                self._topics[path.stem.casefold()] = _read_prompt(path)
        logger.info("prompts.loaded root={} topics={}", root, sorted(self._topics))

    def topics(self) -> list[str]:
        return sorted(self._topics)

    def topic_prompt(self, topic: str) -> str:
        prompt = self._topics.get(topic.casefold())
        if prompt is None:
            logger.warning("prompts.topic.missing topic={}", topic)
            return ""
        return prompt

    def compose(self, topic: str, memory_context: str) -> str:
        """Instruction text for a new backend session on `topic`."""
        blocks = [
            self._base,
            f"{MEMORY_HEADING}\n{memory_context}" if memory_context.strip() else "",
            self._memory_instructions,
            self.topic_prompt(topic),
        ]
        return "\n\n".join(block for block in blocks if block.strip())


def _read_prompt(path: Path) -> str:
    if not path.is_file():
        logger.warning("prompts.file.missing path={}", path)
        return ""
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError:
        logger.opt(exception=True).warning("prompts.file.unreadable path={}", path)
        return ""
