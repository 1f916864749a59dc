"""Core memory writers - append promoted patterns to instruction files.

A writer receives a target id and an already formatted plain-text entry.
Writers must tolerate being called again with the same content; the
hierarchy only guarantees at-least-once delivery.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Protocol

logger = logging.getLogger(__name__)

DEFAULT_CORE_TARGETS: dict[str, Path] = {
    "claude_md": Path.home() / ".claude" / "CLAUDE.md",
    "agents_md": Path.home() / "AGENTS.md",
}


class CoreMemoryWriter(Protocol):
    """Anything that can append an entry for a target, raising on failure."""

    def append(self, target_id: str, text: str) -> None: ...


class MarkdownFileWriter:
    """Appends entries to a markdown file such as CLAUDE.md or AGENTS.md."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> str:
        """Current file content, or "" if the file does not exist."""
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")

    def append(self, target_id: str, text: str) -> None:
        """Append ``text``, separated from existing content by a blank line.

        Creates the file and its parent directories if needed. OSError
        propagates to the caller.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        existing = self.read()
        if not existing:
            separator = ""
        elif existing.endswith("\n"):
            separator = "\n"
        else:
            separator = "\n\n"

        with self.path.open("a", encoding="utf-8") as f:
            f.write(separator + text)
        logger.debug(f"Appended {len(text)} chars to {self.path} for {target_id}")


def build_writers(targets: Mapping[str, Path]) -> dict[str, MarkdownFileWriter]:
    """One file writer per configured target id."""
    return {target_id: MarkdownFileWriter(path) for target_id, path in targets.items()}
