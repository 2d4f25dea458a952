"""Tests for the default prompt builder and cost accumulator."""

from crewflow.adapters.costs import InMemoryCostAccumulator
from crewflow.adapters.prompts import DefaultPromptBuilder
from crewflow.schemas.tasks import Plan, Role, SubtaskSpec, build_subtasks


def make_subtask(files: list[str] | None = None):
    plan = Plan(subtasks=[SubtaskSpec(description="Add rate limiting", files=files or [])])
    return build_subtasks("task-1", plan, "crewflow")[0]


class TestDefaultPromptBuilder:
    """Tests for DefaultPromptBuilder.build."""

    def test_sections_in_order(self) -> None:
        """Brief, tools, history, task and protocol appear in that order."""
        prompt = DefaultPromptBuilder().build(
            Role.CODER, make_subtask(["limits.py"]), "**architect**: Use a token bucket"
        )

        order = [
            prompt.index("You are the coder"),
            prompt.index("Allowed tools: Read, Write"),
            prompt.index("## Prior Conversation"),
            prompt.index("## Your Task\nAdd rate limiting"),
            prompt.index("- limits.py"),
            prompt.index("## Communication Protocol"),
        ]
        assert order == sorted(order)

    def test_no_history_section_when_empty(self) -> None:
        """The first step of a task has no prior conversation."""
        prompt = DefaultPromptBuilder().build(Role.ARCHITECT, make_subtask(), "")

        assert "Prior Conversation" not in prompt
        assert "Files in scope" not in prompt

    def test_dialogue_section(self) -> None:
        """A dialogue turn names who is being answered."""
        prompt = DefaultPromptBuilder().build(
            Role.ARCHITECT, make_subtask(), "", reply_to=Role.CODER
        )

        assert "You (architect) are responding to coder" in prompt

    def test_brief_override(self) -> None:
        """Briefs can be replaced per template id."""
        builder = DefaultPromptBuilder(briefs={"reviewer.review": "Be strict."})

        prompt = builder.build(Role.REVIEWER, make_subtask(), "")

        assert prompt.startswith("Be strict.")


class TestInMemoryCostAccumulator:
    """Tests for InMemoryCostAccumulator."""

    def test_totals_per_task_and_role(self) -> None:
        """Numeric fields are summed; other fields are ignored."""
        costs = InMemoryCostAccumulator()
        costs.record("task-1", Role.CODER, {"cost_usd": 0.5, "num_turns": 2, "session_id": "s"})
        costs.record("task-1", Role.REVIEWER, {"cost_usd": 0.25, "cached": True})
        costs.record("task-2", Role.CODER, {"cost_usd": 9.0})

        assert costs.total("task-1") == {"cost_usd": 0.75, "num_turns": 2, "calls": 2}
        assert costs.by_role("task-1") == {
            "coder": {"cost_usd": 0.5, "num_turns": 2},
            "reviewer": {"cost_usd": 0.25},
        }

    def test_unknown_task(self) -> None:
        """A task without calls has empty totals."""
        assert InMemoryCostAccumulator().total("task-9") == {}
