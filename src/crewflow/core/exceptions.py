"""Exception hierarchy for crewflow.

All exceptions inherit from CrewflowError so callers can catch broadly
or narrowly as needed. Merge conflicts are deliberately absent: a
conflicted merge is a MergeResult value, not an error.
"""

from __future__ import annotations

from enum import Enum


class CrewflowError(Exception):
    """Base exception for all crewflow errors."""


# ---------------------------------------------------------------------------
# Task lifecycle
# ---------------------------------------------------------------------------

class InvalidTransition(CrewflowError):
    """Requested task status change is not an edge of the state machine."""

    def __init__(self, task_id: str, current: str, requested: str):
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Invalid transition: {current} -> {requested} for task {task_id}"
        )


class PlanningError(CrewflowError):
    """Planner returned no usable decomposition."""


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

class AgentErrorKind(str, Enum):
    """Whether an agent failure is worth retrying."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class AgentError(CrewflowError):
    """Agent call failed."""

    def __init__(self, message: str, kind: AgentErrorKind = AgentErrorKind.PERMANENT):
        self.kind = kind
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        return self.kind == AgentErrorKind.TRANSIENT


class AgentTimeout(AgentError):
    """Agent call exceeded its wall-clock limit and was terminated."""

    def __init__(self, role: str, timeout_s: float):
        self.role = role
        self.timeout_s = timeout_s
        super().__init__(
            f"Agent '{role}' timed out after {timeout_s:g}s",
            kind=AgentErrorKind.PERMANENT,
        )


class AgentCancelled(AgentError):
    """Agent call was stopped because its task was cancelled."""

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"Agent '{role}' cancelled", kind=AgentErrorKind.PERMANENT)


# ---------------------------------------------------------------------------
# Environments and resources
# ---------------------------------------------------------------------------

class ProvisioningError(CrewflowError):
    """Failed to create, inspect or tear down an execution environment."""


class EnvironmentNotRunning(ProvisioningError):
    """Environment is already stopped or removed (an expected teardown race)."""


class DuplicateHandleError(CrewflowError):
    """A resource handle with the same id is already registered."""

    def __init__(self, handle_id: str):
        self.handle_id = handle_id
        super().__init__(f"Resource handle already registered: {handle_id}")


class CleanupFailure(CrewflowError):
    """Teardown of a resource failed. Collected and logged, never raised."""

    def __init__(self, handle_id: str, environment_ref: str, message: str):
        self.handle_id = handle_id
        self.environment_ref = environment_ref
        super().__init__(f"Cleanup of {environment_ref} ({handle_id}) failed: {message}")


# ---------------------------------------------------------------------------
# Version control
# ---------------------------------------------------------------------------

class VersionControlError(CrewflowError):
    """A git operation failed for a reason other than a merge conflict."""

    def __init__(self, message: str, stderr: str = ""):
        self.stderr = stderr
        super().__init__(f"{message}: {stderr.strip()}" if stderr.strip() else message)
