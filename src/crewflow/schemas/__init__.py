"""Pydantic schemas for tasks, status, and configuration."""

from crewflow.schemas.config import CrewflowConfig
from crewflow.schemas.status import MergeResult, ResourceHandle, Task, TaskState
from crewflow.schemas.tasks import Plan, Role, Subtask

__all__ = [
    "CrewflowConfig",
    "MergeResult",
    "Plan",
    "ResourceHandle",
    "Role",
    "Subtask",
    "Task",
    "TaskState",
]
