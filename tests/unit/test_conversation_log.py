"""Tests for the append-only conversation log."""

import threading
from pathlib import Path

from crewflow.conversation.log import ORCHESTRATOR, ConversationLog
from crewflow.schemas.tasks import Role


class TestAppend:
    """Tests for ConversationLog.append."""

    def test_append_keeps_insertion_order(self) -> None:
        """Entries come back in the order they were appended."""
        log = ConversationLog("task-1")
        log.append(Role.ARCHITECT, "Plan")
        log.append(Role.CODER, "Code")
        log.add_orchestrator_note("Round 1/3")

        assert [e.speaker_role for e in log.entries()] == ["architect", "coder", ORCHESTRATOR]
        assert len(log) == 3

    def test_roles_and_strings_are_equivalent(self) -> None:
        """A Role and its value produce the same speaker."""
        log = ConversationLog("task-1")
        log.append(Role.REVIEWER, "a")
        log.append("reviewer", "b")

        assert len(log.by_role(Role.REVIEWER)) == 2

    def test_entries_is_a_snapshot(self) -> None:
        """Mutating the returned list does not touch the log."""
        log = ConversationLog("task-1")
        log.append(Role.CODER, "x")
        log.entries().clear()

        assert len(log) == 1

    def test_concurrent_appends(self) -> None:
        """Appends from many threads are all kept."""
        log = ConversationLog("task-1")

        def worker(n: int) -> None:
            for i in range(50):
                log.append(Role.CODER, f"{n}-{i}", subtask_id=f"task-1-part{n}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(log) == 200
        # Each writer's own entries stay in order
        texts = [e.text for e in log.for_subtask("task-1-part2")]
        assert texts == [f"2-{i}" for i in range(50)]


class TestQueries:
    """Tests for recent, by_role and for_subtask."""

    def test_recent(self) -> None:
        """recent(n) returns the last n entries, oldest first."""
        log = ConversationLog("task-1")
        for i in range(5):
            log.append(Role.CODER, str(i))

        assert [e.text for e in log.recent(2)] == ["3", "4"]
        assert log.recent(0) == []

    def test_for_subtask(self) -> None:
        """Entries can be filtered by subtask."""
        log = ConversationLog("task-1")
        log.append(Role.CODER, "a", subtask_id="task-1-part1")
        log.append(Role.CODER, "b", subtask_id="task-1-part2")

        assert [e.text for e in log.for_subtask("task-1-part2")] == ["b"]


class TestRenderContext:
    """Tests for render_context."""

    def test_formats_speakers(self) -> None:
        """Agents are bold, orchestrator notes italic."""
        log = ConversationLog("task-1")
        log.add_orchestrator_note("Round 1/3")
        log.append(Role.ARCHITECT, "Use JWT")

        assert log.render_context() == "*[orchestrator]: Round 1/3*\n**architect**: Use JWT"

    def test_truncates_long_messages(self) -> None:
        """Long entries are cut with an ellipsis."""
        log = ConversationLog("task-1")
        log.append(Role.CODER, "x" * 100)

        rendered = log.render_context(max_chars=20)
        assert rendered == "**coder**: " + "x" * 17 + "..."

    def test_limits_entries_and_subtask(self) -> None:
        """Only the latest entries of the requested subtask are rendered."""
        log = ConversationLog("task-1")
        log.append(Role.CODER, "other", subtask_id="task-1-part2")
        for i in range(3):
            log.append(Role.CODER, f"m{i}", subtask_id="task-1-part1")

        rendered = log.render_context(max_entries=2, subtask_id="task-1-part1")
        assert "other" not in rendered
        assert "m0" not in rendered
        assert "m2" in rendered

    def test_empty(self) -> None:
        """No history renders as an empty string."""
        assert ConversationLog("task-1").render_context() == ""


class TestPersistence:
    """Tests for the JSONL file and markdown export."""

    def test_jsonl_round_trip(self, tmp_path: Path) -> None:
        """A log written to disk loads back with identical entries."""
        path = tmp_path / "conversations" / "task-1.jsonl"
        log = ConversationLog("task-1", path)
        log.append(Role.CODER, "Implemented", metadata={"usage": {"cost_usd": 0.01}})
        log.append(Role.REVIEWER, "Approved", is_dialogue=True)

        assert len(path.read_text().splitlines()) == 2

        loaded = ConversationLog.load(path)
        assert loaded.task_id == "task-1"
        assert loaded.entries() == log.entries()

    def test_loaded_log_keeps_appending(self, tmp_path: Path) -> None:
        """A reloaded log appends to the same file."""
        path = tmp_path / "task-1.jsonl"
        ConversationLog("task-1", path).append(Role.CODER, "one")

        loaded = ConversationLog.load(path)
        loaded.append(Role.CODER, "two")

        assert [e.text for e in ConversationLog.load(path).entries()] == ["one", "two"]

    def test_markdown(self) -> None:
        """Markdown export has a title and marks dialogue turns."""
        log = ConversationLog("task-1")
        log.append(Role.CODER, "Why?", is_dialogue=True)
        log.add_orchestrator_note("Done")

        markdown = log.to_markdown()
        assert markdown.startswith("# Conversation: task-1")
        assert "### coder (dialogue)" in markdown
        assert "Why?" in markdown
        assert "Done*" in markdown
