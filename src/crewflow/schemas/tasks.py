"""Pydantic models for agent roles, plans and subtasks."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class Role(str, Enum):
    """Agent roles. Closed set; capabilities are looked up, never dispatched."""

    ARCHITECT = "architect"
    CODER = "coder"
    REVIEWER = "reviewer"
    TESTER = "tester"
    SPECIALIST = "specialist"


class RoleCapability(BaseModel):
    """What a role is allowed to do and how it is prompted."""

    allowed_tools: list[str] = Field(default_factory=list, description="Tools the agent may use")
    prompt_template_id: str = Field(..., description="Prompt template identifier")
    timeout_s: float = Field(default=300.0, description="Hard wall-clock limit per call")
    writes_code: bool = Field(default=False, description="Whether the role edits the checkout")


ROLE_CAPABILITIES: dict[Role, RoleCapability] = {
    Role.ARCHITECT: RoleCapability(
        allowed_tools=["Read", "Glob", "Grep"],
        prompt_template_id="architect.brief",
        timeout_s=300.0,
    ),
    Role.CODER: RoleCapability(
        allowed_tools=["Read", "Write", "Edit", "Glob", "Grep", "Bash"],
        prompt_template_id="coder.implement",
        timeout_s=600.0,
        writes_code=True,
    ),
    Role.REVIEWER: RoleCapability(
        allowed_tools=["Read", "Glob", "Grep"],
        prompt_template_id="reviewer.review",
        timeout_s=300.0,
    ),
    Role.TESTER: RoleCapability(
        allowed_tools=["Read", "Write", "Edit", "Bash"],
        prompt_template_id="tester.verify",
        timeout_s=600.0,
        writes_code=True,
    ),
    Role.SPECIALIST: RoleCapability(
        allowed_tools=["Read", "Write", "Edit", "Glob", "Grep", "Bash"],
        prompt_template_id="specialist.implement",
        timeout_s=600.0,
        writes_code=True,
    ),
}

DEFAULT_ROLE_SEQUENCE: list[Role] = [Role.ARCHITECT, Role.CODER, Role.REVIEWER]


def get_capability(role: Role) -> RoleCapability:
    """Return the capability descriptor for a role."""
    return ROLE_CAPABILITIES[role]


class ExecutionMode(str, Enum):
    """How a task's subtasks are run."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class SubtaskSpec(BaseModel):
    """A unit of work as proposed by the planner."""

    description: str = Field(..., description="What this subtask should achieve")
    roles: list[Role] = Field(
        default_factory=lambda: list(DEFAULT_ROLE_SEQUENCE),
        description="Roles to run, in order",
    )
    files: list[str] = Field(default_factory=list, description="Files the subtask expects to touch")

    @field_validator("roles")
    @classmethod
    def ensure_roles_not_empty(cls, v: list[Role]) -> list[Role]:
        """Every subtask needs at least one role to run."""
        if not v:
            raise ValueError("A subtask must name at least one role")
        return v


class Plan(BaseModel):
    """Planner output: ordered subtasks plus the chosen execution mode."""

    subtasks: list[SubtaskSpec] = Field(..., min_length=1, description="Ordered subtasks")
    mode: ExecutionMode | None = Field(
        default=None, description="Execution mode; derived from subtask count when unset"
    )
    complexity: int | None = Field(
        default=None, description="Planner's complexity estimate (informational)"
    )
    rationale: str | None = Field(default=None, description="Why the planner split the task")

    def resolved_mode(self) -> ExecutionMode:
        """Mode to run with: explicit choice, else parallel for more than one subtask."""
        if self.mode is not None:
            return self.mode
        return ExecutionMode.PARALLEL if len(self.subtasks) > 1 else ExecutionMode.SEQUENTIAL


class Subtask(BaseModel):
    """A planned subtask bound to its own branch.

    Immutable except for ``resource_handle_id``, which is filled in once an
    environment has been acquired for it.
    """

    id: str = Field(..., description="Subtask identifier")
    parent_task_id: str = Field(..., description="Owning task")
    index: int = Field(..., description="Planner-assigned position (1-based)")
    description: str = Field(..., description="What this subtask should achieve")
    roles: list[Role] = Field(..., description="Role sequence, executed strictly in order")
    branch_name: str = Field(..., description="Branch this subtask commits to")
    files: list[str] = Field(default_factory=list)
    resource_handle_id: str | None = Field(default=None, description="Resolved handle")


def subtask_branch_name(prefix: str, task_id: str, index: int) -> str:
    """Branch naming convention for a subtask."""
    return f"{prefix}/{task_id}/part-{index}"


def build_subtasks(task_id: str, plan: Plan, branch_prefix: str) -> list[Subtask]:
    """Bind planner specs to ids and branches, preserving planner order.

    Args:
        task_id: Owning task identifier
        plan: Planner output
        branch_prefix: Prefix for subtask branch names

    Returns:
        Subtasks in planner order
    """
    return [
        Subtask(
            id=f"{task_id}-part{index}",
            parent_task_id=task_id,
            index=index,
            description=spec.description,
            roles=list(spec.roles),
            branch_name=subtask_branch_name(branch_prefix, task_id, index),
            files=list(spec.files),
        )
        for index, spec in enumerate(plan.subtasks, start=1)
    ]
