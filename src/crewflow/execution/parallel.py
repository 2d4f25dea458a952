"""Parallel execution engine: bounded fan-out of subtasks, no fail-fast."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

from crewflow.execution.unit import OutcomeStatus, SubtaskOutcome
from crewflow.schemas.tasks import Subtask

logger = logging.getLogger("crewflow.execution.parallel")


@dataclass
class ParallelResult:
    """Every subtask's outcome, in submission (planner) order."""

    outcomes: list[SubtaskOutcome] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return bool(self.outcomes) and all(o.ok for o in self.outcomes)

    @property
    def succeeded(self) -> list[SubtaskOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def unsuccessful(self) -> list[SubtaskOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def summary(self) -> dict[str, int]:
        """Count of outcomes per status."""
        counts = {status.value: 0 for status in OutcomeStatus}
        for outcome in self.outcomes:
            counts[outcome.status.value] += 1
        return counts


class ParallelExecutionEngine:
    """Runs one worker per subtask with at most ``max_concurrency`` in flight.

    A worker's failure, or an exception escaping it, never cancels its
    siblings; it becomes that subtask's failure outcome.
    """

    def __init__(self, max_concurrency: int = 3):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency

    def run(
        self,
        subtasks: list[Subtask],
        worker: Callable[[Subtask], SubtaskOutcome],
        cancel_event: threading.Event | None = None,
    ) -> ParallelResult:
        """Run ``worker`` for every subtask.

        Args:
            subtasks: Subtasks in planner order
            worker: Runs one subtask and returns its outcome
            cancel_event: Task cancellation signal shared with the workers

        Returns:
            ParallelResult with outcomes in submission order
        """
        if not subtasks:
            return ParallelResult()

        def guarded(subtask: Subtask) -> SubtaskOutcome:
            if cancel_event is not None and cancel_event.is_set():
                return SubtaskOutcome(
                    subtask_id=subtask.id,
                    status=OutcomeStatus.CANCELLED,
                    branch_name=subtask.branch_name,
                    error="Task cancelled before start",
                )
            return worker(subtask)

        workers = min(self.max_concurrency, len(subtasks))
        logger.info("Running %d subtask(s) with %d worker(s)", len(subtasks), workers)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="crewflow-unit") as pool:
            futures = [(subtask, pool.submit(guarded, subtask)) for subtask in subtasks]

            outcomes: list[SubtaskOutcome] = []
            for subtask, future in futures:
                try:
                    outcome = future.result()
                except Exception as e:
                    logger.exception("Subtask %s raised unexpected exception", subtask.id)
                    outcome = SubtaskOutcome(
                        subtask_id=subtask.id,
                        status=OutcomeStatus.FAILURE,
                        branch_name=subtask.branch_name,
                        error=f"{type(e).__name__}: {e}",
                    )
                outcomes.append(outcome)

        result = ParallelResult(outcomes=outcomes)
        logger.info("Parallel run finished: %s", result.summary())
        return result
