"""Execution unit: one role step (or one subtask's role sequence) in its own environment."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from crewflow.adapters.base import (
    AgentClient,
    CostAccumulator,
    EnvironmentProvider,
    EnvironmentSpec,
    PromptBuilder,
    PromptContext,
)
from crewflow.adapters.prompts import DefaultPromptBuilder
from crewflow.conversation.log import ConversationLog
from crewflow.core.exceptions import AgentCancelled, AgentError, AgentTimeout, ProvisioningError
from crewflow.core.lifecycle import LifecycleRegistry, new_handle_id
from crewflow.schemas.config import CrewflowConfig
from crewflow.schemas.status import ConversationEntry, ResourceHandle
from crewflow.schemas.tasks import Role, Subtask, get_capability
from crewflow.utils.git import commit_all

logger = logging.getLogger("crewflow.execution.unit")


class OutcomeStatus(str, Enum):
    """How a step or subtask ended."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class StepOutcome:
    """Result of one role step."""

    role: Role
    status: OutcomeStatus
    entry: ConversationEntry | None = None
    error: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


@dataclass
class SubtaskOutcome:
    """Result of running one subtask's role sequence."""

    subtask_id: str
    status: OutcomeStatus
    branch_name: str
    error: str | None = None
    steps: list[StepOutcome] = field(default_factory=list)
    usage: dict[str, float] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


def _sum_usage(steps: list[StepOutcome]) -> dict[str, float]:
    totals: dict[str, float] = {}
    for step in steps:
        for key, value in step.usage.items():
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                totals[key] = totals.get(key, 0) + value
    return totals


class ExecutionUnit:
    """Runs role steps for one task.

    Each subtask gets its own environment: acquired through the provider,
    registered with the lifecycle registry, and released through it. Every
    reply is appended to the conversation log and any changes the agent left
    in the checkout are committed to the subtask's branch.
    """

    def __init__(
        self,
        task_id: str,
        repository: Path,
        registry: LifecycleRegistry,
        provider: EnvironmentProvider,
        agent: AgentClient,
        log: ConversationLog,
        config: CrewflowConfig | None = None,
        prompts: PromptBuilder | None = None,
        costs: CostAccumulator | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.task_id = task_id
        self.repository = Path(repository)
        self.registry = registry
        self.provider = provider
        self.agent = agent
        self.log = log
        self.config = config or CrewflowConfig()
        self.prompts = prompts or DefaultPromptBuilder()
        self.costs = costs
        self.cancel_event = cancel_event or threading.Event()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def environment_name(self, subtask: Subtask) -> str:
        return f"{self.config.orchestration.environment_prefix}{subtask.id}"

    def acquire(self, subtask: Subtask, base_branch: str) -> ResourceHandle:
        """Provision an environment on the subtask's branch and register it.

        Args:
            subtask: Subtask that will own the handle
            base_branch: Branch to start the subtask branch from

        Returns:
            Registered, active ResourceHandle

        Raises:
            ProvisioningError: If the environment could not be created
        """
        spec = EnvironmentSpec(
            name=self.environment_name(subtask),
            repository=self.repository,
            branch_name=subtask.branch_name,
            base_branch=base_branch,
            owner_task_id=self.task_id,
        )
        ref = self.provider.provision(spec)

        handle = ResourceHandle(
            id=new_handle_id(),
            owner_task_id=self.task_id,
            subtask_id=subtask.id,
            environment_ref=ref,
            branch_name=subtask.branch_name,
        )
        self.registry.register(handle)
        subtask.resource_handle_id = handle.id
        return handle

    def release(self, handle: ResourceHandle) -> bool:
        return self.registry.release(handle.id)

    def run_step(
        self,
        subtask: Subtask,
        role: Role,
        handle: ResourceHandle,
        reply_to: Role | None = None,
        is_dialogue: bool = False,
    ) -> StepOutcome:
        """Run one role against the subtask's environment.

        Args:
            subtask: Subtask being worked on
            role: Role to run
            handle: Environment acquired for the subtask
            reply_to: Role being answered in a direct dialogue
            is_dialogue: Mark the log entry as dialogue

        Returns:
            StepOutcome; agent errors become failure/timeout/cancelled outcomes
        """
        if self.cancelled:
            return StepOutcome(role=role, status=OutcomeStatus.CANCELLED, error="Task cancelled")

        capability = get_capability(role)
        history = self.log.render_context(subtask_id=subtask.id)
        workdir = self.provider.workdir(handle.environment_ref)

        context = PromptContext(
            role=role,
            prompt=self.prompts.build(role, subtask, history, reply_to),
            task_id=self.task_id,
            subtask_id=subtask.id,
            workdir=workdir,
            environment_ref=handle.environment_ref,
            allowed_tools=list(capability.allowed_tools),
            cancel_event=self.cancel_event,
        )
        timeout_s = self.config.agents.timeout_for(role, capability.timeout_s)

        logger.info("[%s] %s step%s", subtask.id, role.value, " (dialogue)" if is_dialogue else "")
        start = time.monotonic()

        try:
            response = self.agent.invoke(role, context, timeout_s)
        except AgentCancelled as e:
            return StepOutcome(role=role, status=OutcomeStatus.CANCELLED, error=str(e))
        except AgentTimeout as e:
            logger.warning("[%s] %s", subtask.id, e)
            self.log.add_orchestrator_note(
                f"{role.value} timed out after {timeout_s:g}s", subtask.id
            )
            return StepOutcome(
                role=role,
                status=OutcomeStatus.TIMEOUT,
                error=str(e),
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        except AgentError as e:
            logger.warning("[%s] %s failed: %s", subtask.id, role.value, e)
            self.log.add_orchestrator_note(f"{role.value} failed: {e}", subtask.id)
            return StepOutcome(
                role=role,
                status=OutcomeStatus.FAILURE,
                error=str(e),
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        entry = self.log.append(
            role,
            response.text,
            subtask_id=subtask.id,
            is_dialogue=is_dialogue,
            metadata={"usage": response.usage, "duration_ms": response.duration_ms},
        )
        if self.costs is not None:
            self.costs.record(self.task_id, role, response.usage)

        if workdir is not None:
            result = commit_all(workdir, f"crewflow({role.value}): {subtask.description[:60]}")
            if result is not None and not result.ok:
                message = f"Commit on {subtask.branch_name} failed: {result.stderr.strip()}"
                logger.error("[%s] %s", subtask.id, message)
                return StepOutcome(
                    role=role,
                    status=OutcomeStatus.FAILURE,
                    entry=entry,
                    error=message,
                    usage=response.usage,
                    duration_ms=response.duration_ms,
                )

        status = OutcomeStatus.CANCELLED if self.cancelled else OutcomeStatus.SUCCESS
        return StepOutcome(
            role=role,
            status=status,
            entry=entry,
            usage=response.usage,
            duration_ms=response.duration_ms,
        )

    def run_sequence(self, subtask: Subtask, base_branch: str) -> SubtaskOutcome:
        """Acquire an environment, run every role in order, release it.

        Stops at the first step that does not succeed. The environment is
        released whatever happens; the branch keeps the committed work.

        Args:
            subtask: Subtask to run
            base_branch: Branch the subtask branch starts from

        Returns:
            SubtaskOutcome
        """
        start = time.monotonic()

        def finish(status: OutcomeStatus, steps: list[StepOutcome], error: str | None = None):
            return SubtaskOutcome(
                subtask_id=subtask.id,
                status=status,
                branch_name=subtask.branch_name,
                error=error,
                steps=steps,
                usage=_sum_usage(steps),
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        if self.cancelled:
            return finish(OutcomeStatus.CANCELLED, [], "Task cancelled")

        try:
            handle = self.acquire(subtask, base_branch)
        except ProvisioningError as e:
            logger.error("[%s] provisioning failed: %s", subtask.id, e)
            return finish(OutcomeStatus.FAILURE, [], str(e))

        steps: list[StepOutcome] = []
        try:
            for role in subtask.roles:
                step = self.run_step(subtask, role, handle)
                steps.append(step)
                if not step.ok:
                    return finish(step.status, steps, step.error)
        finally:
            self.release(handle)

        return finish(OutcomeStatus.SUCCESS, steps)
