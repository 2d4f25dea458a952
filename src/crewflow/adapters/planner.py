"""Planners: turn a task description into subtasks and an execution mode."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import ValidationError

from crewflow.adapters.base import RepositorySnapshot
from crewflow.core.exceptions import PlanningError
from crewflow.schemas.tasks import DEFAULT_ROLE_SEQUENCE, ExecutionMode, Plan, Role, SubtaskSpec


def load_plan(path: str | Path) -> Plan:
    """Load and validate a YAML plan file.

    Args:
        path: Plan file

    Returns:
        Validated Plan

    Raises:
        PlanningError: If the file is missing, not YAML, or not a valid plan
    """
    path = Path(path)
    if not path.exists():
        raise PlanningError(f"Plan file not found: {path}")

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise PlanningError(f"Invalid YAML in {path}: {e}") from e

    try:
        return Plan.model_validate(data)
    except ValidationError as e:
        raise PlanningError(f"Invalid plan in {path}: {e}") from e


class SingleTaskPlanner:
    """One subtask running the full role sequence, sequential mode."""

    def __init__(self, roles: list[Role] | None = None):
        self.roles = list(roles or DEFAULT_ROLE_SEQUENCE)

    def plan(self, description: str, snapshot: RepositorySnapshot) -> Plan:
        if not description.strip():
            raise PlanningError("Task description is empty")
        return Plan(
            subtasks=[SubtaskSpec(description=description, roles=list(self.roles))],
            mode=ExecutionMode.SEQUENTIAL,
            complexity=1,
            rationale="Single unit of work",
        )


class YamlPlanner:
    """Reads the decomposition from a plan file written ahead of time.

    When the file does not fix a mode and ``parallel_threshold`` is set, the
    plan's complexity estimate picks it: at or above the threshold with more
    than one subtask runs in parallel, anything else sequentially.
    """

    def __init__(self, path: str | Path, parallel_threshold: int | None = None):
        self.path = Path(path)
        self.parallel_threshold = parallel_threshold

    def plan(self, description: str, snapshot: RepositorySnapshot) -> Plan:
        plan = load_plan(self.path)

        if plan.mode is None and self.parallel_threshold is not None:
            parallel = (
                len(plan.subtasks) > 1
                and plan.complexity is not None
                and plan.complexity >= self.parallel_threshold
            )
            mode = ExecutionMode.PARALLEL if parallel else ExecutionMode.SEQUENTIAL
            plan = plan.model_copy(update={"mode": mode})

        return plan
