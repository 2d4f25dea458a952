"""Collaborator protocols: agent calls, environments, planning, prompts, costs."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from crewflow.schemas.tasks import Plan, Role, Subtask
from crewflow.utils.git import CommandResult


@dataclass
class AgentResponse:
    """What an agent call returns."""

    text: str
    usage: dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0


@dataclass
class PromptContext:
    """Everything an agent client needs to run one role step.

    The prompt is fully rendered; clients never look at the conversation.
    """

    role: Role
    prompt: str
    task_id: str
    subtask_id: str | None = None
    workdir: Path | None = None
    environment_ref: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    cancel_event: threading.Event | None = None


@runtime_checkable
class AgentClient(Protocol):
    """Calls a language-model agent for one role step.

    Transient failures are retried inside the client; what surfaces is either
    a response or an AgentError (AgentTimeout when the hard limit expired).
    """

    def invoke(self, role: Role, context: PromptContext, timeout_s: float) -> AgentResponse:
        """Run the agent and return its reply.

        Args:
            role: Role being played
            context: Rendered prompt and working directory
            timeout_s: Hard wall-clock limit for the call

        Returns:
            AgentResponse with text, usage and duration
        """
        ...


@dataclass
class EnvironmentSpec:
    """Request for one disposable execution environment."""

    name: str
    repository: Path
    branch_name: str
    base_branch: str = "main"
    owner_task_id: str | None = None


@dataclass
class EnvironmentInfo:
    """An environment as seen by the provider (tracked or not)."""

    ref: str
    created_at: datetime | None = None
    status: str = ""


@runtime_checkable
class EnvironmentProvider(Protocol):
    """Creates and destroys isolated environments bound to a branch."""

    def provision(self, spec: EnvironmentSpec) -> str:
        """Create the environment and check out its branch.

        Returns:
            Environment reference used for every later call

        Raises:
            ProvisioningError: If the environment could not be created
        """
        ...

    def teardown(self, environment_ref: str) -> None:
        """Destroy an environment. Safe to call twice.

        Raises:
            EnvironmentNotRunning: When it is already gone
            ProvisioningError: On any other failure
        """
        ...

    def exec_in_environment(self, environment_ref: str, command: str | list[str]) -> CommandResult:
        """Run a command inside the environment."""
        ...

    def list_environments(self, prefix: str) -> list[EnvironmentInfo]:
        """List environments whose reference starts with ``prefix``."""
        ...

    def workdir(self, environment_ref: str) -> Path | None:
        """Host path of the environment's checkout, if it has one."""
        ...


@dataclass
class RepositorySnapshot:
    """Read-only view of the repository handed to the planner."""

    path: Path
    base_branch: str
    head_commit: str | None = None
    files: list[str] = field(default_factory=list)


@runtime_checkable
class Planner(Protocol):
    """Decomposes a task into subtasks and picks the execution mode."""

    def plan(self, description: str, snapshot: RepositorySnapshot) -> Plan:
        ...


@runtime_checkable
class PromptBuilder(Protocol):
    """Renders the prompt for one role step."""

    def build(
        self,
        role: Role,
        subtask: Subtask,
        history: str,
        reply_to: Role | None = None,
    ) -> str:
        ...


@runtime_checkable
class CostAccumulator(Protocol):
    """Accumulates agent usage per task."""

    def record(self, task_id: str, role: Role, usage: dict[str, Any]) -> None:
        ...

    def total(self, task_id: str) -> dict[str, float]:
        ...
