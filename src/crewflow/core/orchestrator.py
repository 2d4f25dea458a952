"""Orchestrator: plan, provision, run rounds or fan out, merge, clean up."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from crewflow.adapters.base import (
    AgentClient,
    CostAccumulator,
    EnvironmentProvider,
    Planner,
    PromptBuilder,
    RepositorySnapshot,
)
from crewflow.adapters.costs import InMemoryCostAccumulator
from crewflow.conversation.consensus import (
    Decision,
    DialogueRequest,
    needs_direct_dialogue,
    should_continue_collaboration,
)
from crewflow.conversation.log import ConversationLog
from crewflow.core.exceptions import (
    CrewflowError,
    PlanningError,
    ProvisioningError,
    VersionControlError,
)
from crewflow.core.lifecycle import LifecycleRegistry, ReleaseReport
from crewflow.core.retry import bounded_retry
from crewflow.core.state import TaskStateMachine, TaskStore
from crewflow.execution.parallel import ParallelExecutionEngine, ParallelResult
from crewflow.execution.unit import ExecutionUnit, OutcomeStatus, StepOutcome
from crewflow.integrator.merge import BranchMerger
from crewflow.schemas.config import CrewflowConfig
from crewflow.schemas.status import (
    ConversationEntry,
    MergeResult,
    MergeStatus,
    ResourceHandle,
    Task,
    TaskState,
)
from crewflow.schemas.tasks import ExecutionMode, Role, Subtask, build_subtasks
from crewflow.utils.git import get_current_commit, list_tracked_files, sync_branch

logger = logging.getLogger("crewflow.core.orchestrator")


def new_task_id() -> str:
    """Generate a task id (also used in branch and environment names)."""
    return f"task-{uuid.uuid4().hex[:8]}"


@dataclass
class DialogueOutcome:
    """How a direct dialogue sub-exchange ended."""

    subtask_id: str
    agent_a: Role
    agent_b: Role
    rounds: int
    max_rounds: int
    consensus: bool
    reason: str


@dataclass
class TaskRunResult:
    """Everything a caller may want after a task finished."""

    task: Task
    parallel: ParallelResult | None = None
    merge_result: MergeResult | None = None
    dialogues: list[DialogueOutcome] = field(default_factory=list)
    cleanup: ReleaseReport = field(default_factory=ReleaseReport)
    costs: dict[str, float] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.task.status == TaskState.COMPLETED


@dataclass
class _Verdict:
    state: TaskState | None
    reason: str


class _TaskRun:
    """Per-task working set: the task, its state machine, log and unit."""

    def __init__(
        self,
        task: Task,
        machine: TaskStateMachine,
        log: ConversationLog,
        unit: ExecutionUnit,
    ):
        self.task = task
        self.machine = machine
        self.log = log
        self.unit = unit
        self.result = TaskRunResult(task=task)


class Orchestrator:
    """Runs tasks end to end.

    The registry is injected, never global: the same instance should be
    passed to :func:`crewflow.core.lifecycle.install_signal_handlers` so that
    interrupts release what this orchestrator acquired.
    """

    def __init__(
        self,
        repository: Path,
        registry: LifecycleRegistry,
        provider: EnvironmentProvider,
        agent: AgentClient,
        planner: Planner,
        config: CrewflowConfig | None = None,
        store: TaskStore | None = None,
        prompts: PromptBuilder | None = None,
        costs: CostAccumulator | None = None,
        merger: BranchMerger | None = None,
    ):
        self.repository = Path(repository)
        self.registry = registry
        self.provider = provider
        self.agent = agent
        self.planner = planner
        self.config = config or CrewflowConfig()
        self.store = store
        self.prompts = prompts
        self.costs = costs or InMemoryCostAccumulator()
        settings = self.config.orchestration
        self.merger = merger or BranchMerger(
            self.repository,
            branch_prefix=settings.branch_prefix,
            worktree_dir=settings.worktree_dir,
        )
        self._cancel_events: dict[str, threading.Event] = {}
        # Re-entrant: cancel_all runs from signal handlers on the main thread
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(
        self,
        description: str,
        base_branch: str | None = None,
        task_id: str | None = None,
    ) -> Task:
        """Create and persist a task without running it."""
        task_id = task_id or new_task_id()
        task = Task(
            id=task_id,
            description=description,
            repository=str(self.repository),
            base_branch=base_branch or self.config.orchestration.base_branch,
            cost_accumulator_ref=task_id,
        )
        if self.store is not None:
            self.store.save(task)
        with self._lock:
            self._cancel_events[task.id] = threading.Event()
        logger.info("Submitted %s: %s", task.id, description)
        return task

    def run(
        self,
        description: str,
        base_branch: str | None = None,
        task_id: str | None = None,
    ) -> TaskRunResult:
        """Submit and execute a task."""
        return self.execute(self.submit(description, base_branch, task_id))

    def cancel(self, task_id: str) -> bool:
        """Signal every worker of a task to stop at its next suspension point.

        Returns:
            True if the task is known to this orchestrator
        """
        with self._lock:
            event = self._cancel_events.get(task_id)
        if event is None:
            return False
        logger.info("Cancelling %s", task_id)
        event.set()
        return True

    def cancel_all(self) -> int:
        """Cancel every task this orchestrator is running.

        Returns:
            Number of tasks signalled
        """
        with self._lock:
            events = list(self._cancel_events.items())
        for task_id, event in events:
            logger.info("Cancelling %s", task_id)
            event.set()
        return len(events)

    def execute(self, task: Task) -> TaskRunResult:
        """Drive a created task to a terminal state.

        Whatever happens, every handle the task acquired is released and the
        task ends in a terminal state with a reason. Crewflow errors fail the
        task; anything else also fails it and is re-raised.

        Args:
            task: Task in the created state

        Returns:
            TaskRunResult
        """
        with self._lock:
            cancel_event = self._cancel_events.setdefault(task.id, threading.Event())

        machine = TaskStateMachine(task, on_transition=self._persist)
        log_path = self.store.conversation_path(task.id) if self.store is not None else None
        log = ConversationLog(task.id, log_path)
        unit = ExecutionUnit(
            task_id=task.id,
            repository=self.repository,
            registry=self.registry,
            provider=self.provider,
            agent=self.agent,
            log=log,
            config=self.config,
            prompts=self.prompts,
            costs=self.costs,
            cancel_event=cancel_event,
        )
        run = _TaskRun(task, machine, log, unit)

        try:
            self._execute(run, cancel_event)
        except (KeyboardInterrupt, SystemExit):
            machine.cancel("Interrupted")
            raise
        except CrewflowError as e:
            logger.error("Task %s failed: %s", task.id, e)
            machine.fail(str(e))
        except Exception as e:
            logger.exception("Task %s crashed", task.id)
            machine.fail(f"Unexpected error: {type(e).__name__}: {e}")
            raise
        finally:
            run.result.cleanup = self.registry.release_owner(task.id)
            self._sync_handles(task)
            run.result.costs = self.costs.total(task.id)
            if self.store is not None and machine.is_terminal():
                self.store.archive(task)
            with self._lock:
                self._cancel_events.pop(task.id, None)
            if task.reason:
                log.add_orchestrator_note(f"{task.status.value}: {task.reason}")

        logger.info("Task %s %s: %s", task.id, task.status.value, task.reason)
        return run.result

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _execute(self, run: _TaskRun, cancel_event: threading.Event) -> None:
        task, machine = run.task, run.machine

        machine.transition_to(TaskState.PLANNING)
        if self.config.orchestration.sync_base:
            self._sync_base(task.base_branch)
        try:
            plan = self.planner.plan(task.description, self._snapshot(task))
        except PlanningError as e:
            machine.fail(f"Planning failed: {e}")
            return

        mode = plan.resolved_mode()
        machine.set_mode(mode)
        task.subtasks = build_subtasks(task.id, plan, self.config.orchestration.branch_prefix)
        run.log.add_orchestrator_note(
            f"Planned {len(task.subtasks)} subtask(s) in {mode.value} mode"
            + (f": {plan.rationale}" if plan.rationale else "")
        )

        if cancel_event.is_set():
            machine.cancel("Cancelled before provisioning")
            return

        machine.transition_to(TaskState.PROVISIONING, f"{mode.value} mode")

        if mode == ExecutionMode.PARALLEL:
            self._run_parallel(run, cancel_event)
        else:
            self._run_sequential(run, cancel_event)

    def _sync_base(self, base_branch: str) -> None:
        remote = self.config.orchestration.remote
        result = sync_branch(self.repository, base_branch, remote)
        if not result.ok:
            raise VersionControlError(
                f"Could not update {base_branch} from {remote}", result.output
            )
        logger.info("Updated %s from %s", base_branch, remote)

    def _run_sequential(self, run: _TaskRun, cancel_event: threading.Event) -> None:
        """Round loop per subtask; each subtask builds on the previous branch."""
        task, machine = run.task, run.machine
        base = task.base_branch
        reasons: list[str] = []

        for position, subtask in enumerate(task.subtasks):
            if position > 0:
                machine.transition_to(TaskState.EXECUTING, f"Starting {subtask.id}")

            try:
                handle = run.unit.acquire(subtask, base)
            except ProvisioningError as e:
                machine.fail(f"Provisioning failed for {subtask.id}: {e}")
                return
            self._sync_handles(task)

            if position == 0:
                machine.transition_to(
                    TaskState.EXECUTING, f"Environment {handle.environment_ref} ready"
                )

            try:
                verdict = self._round_loop(run, subtask, handle)
            finally:
                run.unit.release(handle)

            if verdict.state == TaskState.CANCELLED or cancel_event.is_set():
                machine.cancel(verdict.reason if verdict.state else "Task cancelled")
                return
            if verdict.state == TaskState.FAILED:
                machine.fail(verdict.reason)
                return

            reasons.append(verdict.reason)
            base = subtask.branch_name

        machine.transition_to(TaskState.COMPLETED, f"{reasons[-1]}; result on {base}")

    def _round_loop(self, run: _TaskRun, subtask: Subtask, handle: ResourceHandle) -> _Verdict:
        """Run collaboration rounds until consensus or the round limit."""
        task, machine, log = run.task, run.machine, run.log
        max_rounds = self.config.orchestration.max_rounds
        gated = _is_gated(subtask.roles)
        decision = Decision(True, "No rounds run")

        for number in range(1, max_rounds + 1):
            if number > 1:
                machine.transition_to(TaskState.EXECUTING, f"Round {number} for {subtask.id}")
            task.rounds += 1
            round_start = len(log)
            log.add_orchestrator_note(f"Round {number}/{max_rounds}", subtask.id)

            for role in _roles_for_round(subtask.roles, number):
                if role == Role.REVIEWER and machine.state == TaskState.EXECUTING:
                    machine.transition_to(TaskState.REVIEWING, f"Review round {number}")

                step = run.unit.run_step(subtask, role, handle)
                verdict = self._step_verdict(step, number)
                if verdict is not None:
                    return verdict

                failed = self._maybe_dialogue(run, subtask, handle, round_start)
                if failed is not None:
                    verdict = self._step_verdict(failed, number)
                    if verdict is not None:
                        return verdict

            if machine.state == TaskState.EXECUTING:
                machine.transition_to(TaskState.REVIEWING, f"Round {number} complete")

            if not gated:
                return _Verdict(None, f"{subtask.id} finished (no review gate)")

            decision = should_continue_collaboration(
                self._round_entries(log, round_start, subtask.id), self.config.consensus
            )
            log.add_orchestrator_note(decision.reason, subtask.id)
            if not decision.should_continue:
                return _Verdict(None, f"Consensus after {number} round(s): {decision.reason}")

        return _Verdict(
            TaskState.FAILED, f"No consensus after {max_rounds} round(s): {decision.reason}"
        )

    def _step_verdict(self, step: StepOutcome, number: int) -> _Verdict | None:
        if step.ok:
            return None
        if step.status == OutcomeStatus.CANCELLED:
            return _Verdict(TaskState.CANCELLED, "Task cancelled")
        return _Verdict(
            TaskState.FAILED,
            f"{step.role.value} {step.status.value} in round {number}: {step.error}",
        )

    def _maybe_dialogue(
        self,
        run: _TaskRun,
        subtask: Subtask,
        handle: ResourceHandle,
        round_start: int,
    ) -> StepOutcome | None:
        """Open a bounded direct dialogue if a question is pending.

        Returns:
            The failed step if a dialogue turn failed, else None
        """
        settings = self.config.orchestration
        log = run.log
        request = needs_direct_dialogue(
            self._round_entries(log, round_start, subtask.id),
            lookback=settings.consensus_lookback,
            phrases=self.config.consensus,
        )
        if request is None:
            return None

        log.add_orchestrator_note(
            f"Direct dialogue {request.agent_a.value} <-> {request.agent_b.value}: "
            f"{request.reason}",
            subtask.id,
        )
        failed: list[StepOutcome] = []

        def exchange(number: int) -> Decision:
            decision = Decision(True, "Dialogue turn incomplete")
            for speaker, listener in _dialogue_turns(request):
                step = run.unit.run_step(
                    subtask, speaker, handle, reply_to=listener, is_dialogue=True
                )
                if not step.ok:
                    failed.append(step)
                    return Decision(False, f"{speaker.value} {step.status.value}")
                decision = should_continue_collaboration(
                    self._round_entries(log, round_start, subtask.id), self.config.consensus
                )
                if not decision.should_continue:
                    return decision
            return decision

        outcome = bounded_retry(
            exchange,
            until=lambda decision: not decision.should_continue,
            max_attempts=settings.max_dialogue_rounds,
            cancel_event=run.unit.cancel_event,
        )

        consensus = outcome.satisfied and not failed
        reason = outcome.value.reason if outcome.value is not None else "Cancelled"
        run.result.dialogues.append(
            DialogueOutcome(
                subtask_id=subtask.id,
                agent_a=request.agent_a,
                agent_b=request.agent_b,
                rounds=outcome.attempts,
                max_rounds=settings.max_dialogue_rounds,
                consensus=consensus,
                reason=reason,
            )
        )
        log.add_orchestrator_note(
            f"Dialogue ended after {outcome.attempts} of {settings.max_dialogue_rounds} "
            f"round(s): {reason}",
            subtask.id,
        )

        return failed[0] if failed else None

    def _run_parallel(self, run: _TaskRun, cancel_event: threading.Event) -> None:
        """Fan out every subtask, then merge the successful branches in planner order."""
        task, machine = run.task, run.machine
        settings = self.config.orchestration

        machine.transition_to(
            TaskState.EXECUTING, f"Running {len(task.subtasks)} subtask(s) in parallel"
        )
        engine = ParallelExecutionEngine(max_concurrency=settings.max_concurrency)
        result = engine.run(
            task.subtasks,
            lambda subtask: run.unit.run_sequence(subtask, task.base_branch),
            cancel_event=cancel_event,
        )
        run.result.parallel = result
        task.rounds = 1
        self._sync_handles(task)

        if cancel_event.is_set():
            machine.cancel("Task cancelled during parallel execution")
            return

        counts = result.summary().items()
        summary = ", ".join(f"{count} {status}" for status, count in counts if count)
        machine.transition_to(TaskState.REVIEWING, summary)

        branches = [o.branch_name for o in result.outcomes if o.ok]
        problems = [f"{o.subtask_id} {o.status.value}: {o.error}" for o in result.unsuccessful]
        if not branches:
            machine.fail("No subtask succeeded: " + "; ".join(problems))
            return

        machine.transition_to(TaskState.MERGING, f"Merging {len(branches)} branch(es)")
        merge = self.merger.merge(task.id, task.base_branch, branches)
        task.merge_result = merge
        run.result.merge_result = merge

        if merge.status == MergeStatus.CONFLICTED:
            machine.fail(
                f"Merge conflict in {', '.join(merge.conflicted_files)} while merging "
                f"{merge.conflicting_branch}; "
                f"unmerged branches: {', '.join(merge.unmerged_branches)}"
            )
            return

        if problems:
            machine.fail(
                f"{len(problems)} of {len(result.outcomes)} subtask(s) did not succeed "
                f"({'; '.join(problems)}); successful work integrated on {merge.merged_branch_name}"
            )
            return

        if settings.cleanup_branches_after_merge:
            self.merger.cleanup_branches(branches)

        machine.transition_to(
            TaskState.COMPLETED,
            f"Merged {len(branches)} branch(es) into {merge.merged_branch_name}",
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _snapshot(self, task: Task) -> RepositorySnapshot:
        return RepositorySnapshot(
            path=self.repository,
            base_branch=task.base_branch,
            head_commit=get_current_commit(self.repository, task.base_branch),
            files=list_tracked_files(self.repository),
        )

    def _round_entries(
        self, log: ConversationLog, start: int, subtask_id: str
    ) -> list[ConversationEntry]:
        return [e for e in log.entries()[start:] if e.subtask_id == subtask_id]

    def _sync_handles(self, task: Task) -> None:
        for subtask in task.subtasks:
            handle_id = subtask.resource_handle_id
            if handle_id and handle_id not in task.resource_handle_ids:
                task.resource_handle_ids.append(handle_id)

    def _persist(self, task: Task) -> None:
        self._sync_handles(task)
        if self.store is not None:
            self.store.save(task)


def _is_gated(roles: list[Role]) -> bool:
    """Whether consensus can judge this role sequence at all."""
    return Role.REVIEWER in roles or (Role.ARCHITECT in roles and Role.CODER in roles)


def _roles_for_round(roles: list[Role], number: int) -> list[Role]:
    """The architect's plan stands after round one when a reviewer drives revisions."""
    if number == 1 or Role.REVIEWER not in roles:
        return list(roles)
    return [role for role in roles if role != Role.ARCHITECT]


def _dialogue_turns(request: DialogueRequest) -> list[tuple[Role, Role]]:
    """Addressee answers first, then the asker responds."""
    return [(request.agent_b, request.agent_a), (request.agent_a, request.agent_b)]
