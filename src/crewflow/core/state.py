"""Task lifecycle state machine and durable task records."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable

from crewflow.core.exceptions import InvalidTransition
from crewflow.schemas.status import TERMINAL_STATES, Task, TaskState, TransitionRecord
from crewflow.schemas.tasks import ExecutionMode

logger = logging.getLogger("crewflow.core.state")

_NON_TERMINAL_EXITS = {TaskState.FAILED, TaskState.CANCELLED}

# Valid state transitions
VALID_TRANSITIONS: dict[TaskState, set[TaskState]] = {
    TaskState.CREATED: {TaskState.PLANNING} | _NON_TERMINAL_EXITS,
    TaskState.PLANNING: {TaskState.PROVISIONING} | _NON_TERMINAL_EXITS,
    TaskState.PROVISIONING: {TaskState.EXECUTING} | _NON_TERMINAL_EXITS,
    TaskState.EXECUTING: {TaskState.REVIEWING} | _NON_TERMINAL_EXITS,
    TaskState.REVIEWING: {TaskState.EXECUTING, TaskState.MERGING, TaskState.COMPLETED}
    | _NON_TERMINAL_EXITS,
    TaskState.MERGING: {TaskState.COMPLETED} | _NON_TERMINAL_EXITS,
    TaskState.COMPLETED: set(),  # Terminal states
    TaskState.FAILED: set(),
    TaskState.CANCELLED: set(),
}

DEFAULT_REASONS: dict[TaskState, str] = {
    TaskState.COMPLETED: "Task completed",
    TaskState.FAILED: "Task failed",
    TaskState.CANCELLED: "Task cancelled",
}


def allowed_transitions(state: TaskState, mode: ExecutionMode | None = None) -> set[TaskState]:
    """Edges out of ``state``; merging is only reachable in parallel mode."""
    allowed = set(VALID_TRANSITIONS.get(state, set()))
    if mode != ExecutionMode.PARALLEL:
        allowed.discard(TaskState.MERGING)
    if mode == ExecutionMode.PARALLEL and state == TaskState.REVIEWING:
        allowed.discard(TaskState.COMPLETED)
    return allowed


def is_valid_walk(
    states: Iterable[TaskState],
    mode: ExecutionMode | None = None,
) -> bool:
    """Check that a recorded state sequence follows the graph.

    Args:
        states: States in the order they were entered, starting at created
        mode: Execution mode of the task, if it got that far

    Returns:
        True if every consecutive pair is a valid edge
    """
    sequence = list(states)
    if not sequence or sequence[0] != TaskState.CREATED:
        return False

    for current, following in zip(sequence, sequence[1:]):
        if following not in allowed_transitions(current, mode):
            return False
    return True


class TaskStateMachine:
    """State machine for a task's lifecycle.

    Mutates ``task.status`` and appends a timestamped TransitionRecord for
    every change. An optional ``on_transition`` callback runs after each
    change (the orchestrator uses it to persist the task).
    """

    def __init__(self, task: Task, on_transition=None):
        """Initialize state machine for a task.

        Args:
            task: Task whose status is managed
            on_transition: Called with the task after every transition
        """
        self.task = task
        self._on_transition = on_transition
        if not task.transitions:
            task.transitions.append(
                TransitionRecord(
                    from_state=None,
                    to_state=task.status,
                    at=task.created_at,
                    reason="Task created",
                )
            )

    @property
    def state(self) -> TaskState:
        """Get current state."""
        return self.task.status

    @property
    def history(self) -> list[TransitionRecord]:
        """Get state transition history."""
        return list(self.task.transitions)

    def states(self) -> list[TaskState]:
        """States entered so far, in order."""
        return [record.to_state for record in self.task.transitions]

    def set_mode(self, mode: ExecutionMode) -> None:
        """Record the planner's execution mode (decides whether merging is reachable)."""
        self.task.mode = mode

    def can_transition_to(self, new_state: TaskState) -> bool:
        """Check if transition to new state is valid.

        Args:
            new_state: Target state

        Returns:
            True if transition is valid
        """
        return new_state in allowed_transitions(self.state, self.task.mode)

    def transition_to(self, new_state: TaskState, reason: str | None = None) -> TransitionRecord:
        """Transition to a new state.

        Args:
            new_state: Target state
            reason: Why; terminal states always carry one

        Returns:
            The recorded transition

        Raises:
            InvalidTransition: If the edge is not in the graph
        """
        if not self.can_transition_to(new_state):
            raise InvalidTransition(self.task.id, self.state.value, new_state.value)

        if new_state in TERMINAL_STATES and not reason:
            reason = DEFAULT_REASONS[new_state]

        now = datetime.now().isoformat()
        record = TransitionRecord(from_state=self.state, to_state=new_state, at=now, reason=reason)

        self.task.status = new_state
        self.task.transitions.append(record)
        if new_state in TERMINAL_STATES:
            self.task.completed_at = now
            self.task.reason = reason

        logger.debug(
            "Task %s: %s -> %s%s",
            self.task.id,
            record.from_state.value if record.from_state else "-",
            new_state.value,
            f" ({reason})" if reason else "",
        )

        if self._on_transition is not None:
            self._on_transition(self.task)

        return record

    def fail(self, reason: str) -> TransitionRecord | None:
        """Move to failed unless already terminal."""
        if self.is_terminal():
            return None
        return self.transition_to(TaskState.FAILED, reason)

    def cancel(self, reason: str = "Cancelled by request") -> TransitionRecord | None:
        """Move to cancelled unless already terminal."""
        if self.is_terminal():
            return None
        return self.transition_to(TaskState.CANCELLED, reason)

    def is_terminal(self) -> bool:
        """Check if current state is terminal."""
        return self.state in TERMINAL_STATES

    def is_active(self) -> bool:
        """Check if task is actively being worked on."""
        return self.state in (TaskState.EXECUTING, TaskState.REVIEWING, TaskState.MERGING)


@dataclass
class TaskStore:
    """Durable JSON record per task under ``<state_dir>/tasks``."""

    state_dir: Path = field(default_factory=lambda: Path(".crewflow"))

    def __post_init__(self):
        self.state_dir = Path(self.state_dir)

    @property
    def tasks_dir(self) -> Path:
        return self.state_dir / "tasks"

    @property
    def conversations_dir(self) -> Path:
        return self.state_dir / "conversations"

    def task_path(self, task_id: str) -> Path:
        return self.tasks_dir / f"{task_id}.json"

    def conversation_path(self, task_id: str) -> Path:
        return self.conversations_dir / f"{task_id}.jsonl"

    def save(self, task: Task) -> None:
        """Save a task record.

        Written to a temporary file and renamed, so a crash mid-write never
        leaves a truncated record.

        Args:
            task: Task to save
        """
        self.tasks_dir.mkdir(parents=True, exist_ok=True)

        path = self.task_path(task.id)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w") as f:
            json.dump(task.model_dump(mode="json"), f, indent=2)
        tmp.replace(path)

    def load(self, task_id: str) -> Task | None:
        """Load a task record.

        Returns:
            Task if the record exists and is valid, None otherwise
        """
        path = self.task_path(task_id)
        if not path.exists():
            return None

        try:
            with open(path) as f:
                data = json.load(f)
            return Task.model_validate(data)
        except (OSError, ValueError) as e:
            logger.warning("Unreadable task record %s: %s", path, e)
            return None

    def list_tasks(self, include_archived: bool = True) -> list[Task]:
        """All stored tasks, oldest first."""
        if not self.tasks_dir.exists():
            return []

        tasks: list[Task] = []
        for path in sorted(self.tasks_dir.glob("*.json")):
            task = self.load(path.stem)
            if task is not None and (include_archived or not task.archived):
                tasks.append(task)

        return sorted(tasks, key=lambda t: t.created_at)

    def archive(self, task: Task) -> None:
        """Flag a terminal task as archived and persist it."""
        task.archived = True
        self.save(task)

    def exists(self, task_id: str) -> bool:
        """Check if a task record exists."""
        return self.task_path(task_id).exists()

    def delete(self, task_id: str) -> None:
        """Delete a task record and its conversation log."""
        for path in (self.task_path(task_id), self.conversation_path(task_id)):
            if path.exists():
                path.unlink()
