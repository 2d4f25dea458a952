"""Pydantic models for task status, resource handles, conversation and merges."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from crewflow.schemas.tasks import ExecutionMode, Subtask


class TaskState(str, Enum):
    """Task lifecycle states."""

    CREATED = "created"
    PLANNING = "planning"
    PROVISIONING = "provisioning"
    EXECUTING = "executing"
    REVIEWING = "reviewing"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES: frozenset[TaskState] = frozenset(
    {TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED}
)


class TransitionRecord(BaseModel):
    """One audited status change."""

    from_state: TaskState | None = Field(..., description="State before (None for creation)")
    to_state: TaskState = Field(..., description="State after")
    at: str = Field(..., description="ISO timestamp of the transition")
    reason: str | None = Field(default=None, description="Why the transition happened")


class HandleState(str, Enum):
    """Resource handle lifecycle."""

    ACTIVE = "active"
    RELEASED = "released"


class ResourceHandle(BaseModel):
    """One execution environment paired with one branch."""

    id: str = Field(..., description="Handle identifier")
    owner_task_id: str = Field(..., description="Task that owns the handle")
    subtask_id: str | None = Field(default=None, description="In-flight subtask using it")
    environment_ref: str = Field(..., description="Provider reference (container/worktree name)")
    branch_name: str = Field(..., description="Branch bound to the environment")
    created_at: str = Field(
        default_factory=lambda: datetime.now().isoformat(), description="ISO timestamp"
    )
    state: HandleState = Field(default=HandleState.ACTIVE)
    released_at: str | None = Field(default=None)

    @property
    def is_active(self) -> bool:
        return self.state == HandleState.ACTIVE


class ConversationEntry(BaseModel):
    """A single message in a task's conversation log."""

    task_id: str
    subtask_id: str | None = None
    speaker_role: str = Field(..., description="Role value, 'orchestrator' or 'user'")
    text: str
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())
    is_dialogue: bool = Field(default=False, description="Part of a direct dialogue exchange")
    metadata: dict[str, Any] = Field(default_factory=dict)


class MergeStatus(str, Enum):
    """Outcome of folding subtask branches together."""

    CLEAN = "clean"
    CONFLICTED = "conflicted"


class MergeResult(BaseModel):
    """Result of integrating parallel subtask branches. Immutable."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    base_branch: str
    merged_branches: list[str] = Field(default_factory=list, description="Folded cleanly, in order")
    status: MergeStatus
    conflicted_files: list[str] = Field(default_factory=list)
    merged_branch_name: str | None = Field(
        default=None, description="Integration branch when clean, else None"
    )
    integration_branch: str | None = Field(
        default=None, description="Branch holding the (possibly partial) integration"
    )
    conflicting_branch: str | None = Field(default=None, description="Branch whose fold conflicted")
    unmerged_branches: list[str] = Field(
        default_factory=list, description="Conflicting branch plus the unfolded remainder"
    )

    @model_validator(mode="after")
    def check_conflict_consistency(self) -> "MergeResult":
        """A merge is conflicted exactly when it names conflicted files."""
        conflicted = self.status == MergeStatus.CONFLICTED
        if conflicted != bool(self.conflicted_files):
            raise ValueError(
                "status 'conflicted' requires non-empty conflicted_files and vice versa"
            )
        if conflicted and self.merged_branch_name is not None:
            raise ValueError("a conflicted merge has no merged branch")
        return self


class Task(BaseModel):
    """Durable record of one orchestrated task."""

    id: str = Field(..., description="Task identifier")
    description: str = Field(..., description="Original request")
    repository: str = Field(..., description="Path to the repository checkout")
    base_branch: str = Field(default="main")
    status: TaskState = Field(default=TaskState.CREATED)
    created_at: str = Field(default_factory=lambda: datetime.now().isoformat())
    completed_at: str | None = Field(default=None)
    mode: ExecutionMode | None = Field(default=None, description="Chosen by the planner")
    subtasks: list[Subtask] = Field(default_factory=list)
    resource_handle_ids: list[str] = Field(default_factory=list)
    cost_accumulator_ref: str | None = Field(default=None)
    rounds: int = Field(default=0, description="Collaboration rounds run")
    reason: str | None = Field(default=None, description="Human-readable outcome")
    transitions: list[TransitionRecord] = Field(default_factory=list)
    merge_result: MergeResult | None = Field(default=None)
    archived: bool = Field(default=False)

    def is_terminal(self) -> bool:
        """Check if the task has finished (in any way)."""
        return self.status in TERMINAL_STATES

    def get_subtask(self, subtask_id: str) -> Subtask | None:
        """Look up a subtask by id."""
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None
