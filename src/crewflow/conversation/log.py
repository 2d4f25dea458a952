"""Append-only conversation log shared by the agents of one task."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from crewflow.schemas.status import ConversationEntry

logger = logging.getLogger("crewflow.conversation.log")

ORCHESTRATOR = "orchestrator"
USER = "user"


class ConversationLog:
    """Ordered record of agent messages for one task.

    Entries are only ever appended; insertion order is the only ordering
    guarantee. When a path is given, every entry is also appended to a JSONL
    file so the log survives the process.
    """

    def __init__(self, task_id: str, path: str | Path | None = None):
        """Initialize an empty log.

        Args:
            task_id: Task the conversation belongs to
            path: Optional JSONL file to append entries to
        """
        self.task_id = task_id
        self.path = Path(path) if path else None
        self._entries: list[ConversationEntry] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def append(
        self,
        speaker_role: str,
        text: str,
        subtask_id: str | None = None,
        is_dialogue: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> ConversationEntry:
        """Append a message and persist it.

        Args:
            speaker_role: Role value of the speaker, or 'orchestrator'
            text: Message text
            subtask_id: Subtask the message belongs to
            is_dialogue: Whether it was produced in a direct dialogue
            metadata: Usage, duration and similar extras

        Returns:
            The stored entry
        """
        entry = ConversationEntry(
            task_id=self.task_id,
            subtask_id=subtask_id,
            speaker_role=str(getattr(speaker_role, "value", speaker_role)),
            text=text,
            is_dialogue=is_dialogue,
            metadata=metadata or {},
        )

        with self._lock:
            self._entries.append(entry)
            if self.path is not None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a") as f:
                    f.write(entry.model_dump_json() + "\n")

        return entry

    def add_orchestrator_note(self, text: str, subtask_id: str | None = None) -> ConversationEntry:
        """Record an orchestrator message (phase changes, decisions)."""
        return self.append(ORCHESTRATOR, text, subtask_id=subtask_id)

    def entries(self) -> list[ConversationEntry]:
        """Snapshot of all entries in insertion order."""
        with self._lock:
            return list(self._entries)

    def recent(self, n: int) -> list[ConversationEntry]:
        """Last ``n`` entries, oldest first."""
        if n <= 0:
            return []
        with self._lock:
            return list(self._entries[-n:])

    def by_role(self, role: str) -> list[ConversationEntry]:
        """All entries from one speaker role."""
        role = str(getattr(role, "value", role))
        return [e for e in self.entries() if e.speaker_role == role]

    def for_subtask(self, subtask_id: str) -> list[ConversationEntry]:
        """All entries belonging to one subtask."""
        return [e for e in self.entries() if e.subtask_id == subtask_id]

    def render_context(
        self,
        max_entries: int = 20,
        subtask_id: str | None = None,
        max_chars: int = 500,
    ) -> str:
        """Format recent history for inclusion in an agent prompt.

        Args:
            max_entries: How many recent entries to include
            subtask_id: Restrict to one subtask's entries
            max_chars: Per-entry truncation limit

        Returns:
            Markdown-ish history, empty string if there is none
        """
        entries = self.for_subtask(subtask_id) if subtask_id else self.entries()
        entries = entries[-max_entries:] if max_entries > 0 else []

        lines: list[str] = []
        for entry in entries:
            text = _truncate(entry.text, max_chars)
            if entry.speaker_role == ORCHESTRATOR:
                lines.append(f"*[orchestrator]: {text}*")
            else:
                lines.append(f"**{entry.speaker_role}**: {text}")

        return "\n".join(lines)

    def to_markdown(self, title: str | None = None) -> str:
        """Render the whole conversation as a markdown document."""
        lines = [f"# Conversation: {title or self.task_id}", ""]

        for entry in self.entries():
            if entry.speaker_role == ORCHESTRATOR:
                lines.append(f"*[{entry.timestamp}] {entry.text}*")
            else:
                tag = " (dialogue)" if entry.is_dialogue else ""
                lines.append(f"### {entry.speaker_role}{tag} ({entry.timestamp})")
                lines.append(entry.text)
            lines.append("")

        return "\n".join(lines)

    @classmethod
    def load(cls, path: str | Path) -> "ConversationLog":
        """Rebuild a log from its JSONL file.

        Args:
            path: JSONL file written by a previous log

        Returns:
            ConversationLog bound to the same file
        """
        path = Path(path)
        entries: list[ConversationEntry] = []

        with open(path) as f:
            for line in f:
                line = line.strip()
                if line:
                    entries.append(ConversationEntry.model_validate(json.loads(line)))

        task_id = entries[0].task_id if entries else path.stem
        log = cls(task_id, path)
        log._entries = entries
        return log


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."
