"""Lifecycle registry: exactly-once release of execution environments.

Every environment/branch pair created for a task is registered here as a
ResourceHandle. The registry is the only writer of handle state; release is
idempotent and never raises, so it can be driven from worker threads, the
orchestrator's ``finally`` blocks and the signal path at the same time.
"""

from __future__ import annotations

import atexit
import logging
import signal
import sys
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from crewflow.adapters.base import EnvironmentProvider
from crewflow.core.exceptions import CleanupFailure, DuplicateHandleError, EnvironmentNotRunning
from crewflow.schemas.status import HandleState, ResourceHandle

logger = logging.getLogger("crewflow.core.lifecycle")

SIGINT_EXIT_CODE = 130
SIGTERM_EXIT_CODE = 143
UNCAUGHT_EXIT_CODE = 1

SIGNAL_EXIT_CODES: dict[int, int] = {
    signal.SIGINT: SIGINT_EXIT_CODE,
    signal.SIGTERM: SIGTERM_EXIT_CODE,
}

# Teardown errors that mean "someone else already removed it"
EXPECTED_TEARDOWN_RACES = (
    "already stopped",
    "no such container",
    "is already in progress",
    "is not a working tree",
)


def new_handle_id() -> str:
    """Generate a resource handle id."""
    return f"rh-{uuid.uuid4().hex[:12]}"


def is_expected_teardown_race(message: str) -> bool:
    """Check whether a teardown error only says the environment is gone."""
    lowered = message.lower()
    return any(phrase in lowered for phrase in EXPECTED_TEARDOWN_RACES)


@dataclass
class ReleaseReport:
    """Outcome of a bulk release."""

    released_count: int = 0
    failures: list[CleanupFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def merge(self, other: "ReleaseReport") -> "ReleaseReport":
        return ReleaseReport(
            released_count=self.released_count + other.released_count,
            failures=self.failures + other.failures,
        )


class LifecycleRegistry:
    """Process-wide table of active resource handles.

    Not a singleton: create one per process and pass it to the orchestrator
    and to :func:`install_signal_handlers`.
    """

    def __init__(
        self,
        provider: EnvironmentProvider,
        max_workers: int = 8,
        wait_timeout_s: float = 30.0,
    ):
        """Initialize the registry.

        Args:
            provider: Collaborator that tears environments down
            max_workers: Upper bound on parallel teardowns in release_all
            wait_timeout_s: How long a concurrent release waits for the one in flight
        """
        self.provider = provider
        self.max_workers = max_workers
        self.wait_timeout_s = wait_timeout_s
        self._handles: dict[str, ResourceHandle] = {}
        self._in_flight: dict[str, tuple[threading.Event, int]] = {}
        self._failures: list[CleanupFailure] = []
        self._lock = threading.RLock()

    def register(self, handle: ResourceHandle) -> ResourceHandle:
        """Start tracking a handle.

        Args:
            handle: Active handle to track

        Returns:
            The registered handle

        Raises:
            DuplicateHandleError: If the id is already registered
        """
        with self._lock:
            if handle.id in self._handles:
                raise DuplicateHandleError(handle.id)
            self._handles[handle.id] = handle

        logger.debug(
            "Registered %s (%s) for task %s",
            handle.id,
            handle.environment_ref,
            handle.owner_task_id,
        )
        return handle

    def get(self, handle_id: str) -> ResourceHandle | None:
        with self._lock:
            return self._handles.get(handle_id)

    def active_handles(self, owner_task_id: str | None = None) -> list[ResourceHandle]:
        """Active handles, optionally restricted to one task."""
        with self._lock:
            return [
                h
                for h in self._handles.values()
                if h.is_active and (owner_task_id is None or h.owner_task_id == owner_task_id)
            ]

    def active_count(self) -> int:
        return len(self.active_handles())

    @property
    def failures(self) -> list[CleanupFailure]:
        """Every cleanup failure seen so far."""
        with self._lock:
            return list(self._failures)

    def release(self, handle_id: str) -> bool:
        """Tear down a handle's environment and mark it released.

        Never raises. Unknown or already released ids are a no-op.

        Args:
            handle_id: Handle to release

        Returns:
            True if this call released the handle
        """
        released, _ = self._release_one(handle_id)
        return released

    def _release_one(
        self,
        handle_id: str,
        reentrant_for: int | None = None,
    ) -> tuple[bool, CleanupFailure | None]:
        caller = reentrant_for if reentrant_for is not None else threading.get_ident()

        with self._lock:
            handle = self._handles.get(handle_id)
            if handle is None:
                logger.debug("Release of unknown handle %s ignored", handle_id)
                return False, None
            if not handle.is_active:
                return False, None

            pending = self._in_flight.get(handle_id)
            if pending is None:
                done = threading.Event()
                self._in_flight[handle_id] = (done, caller)

        # Another thread is tearing it down; wait for it instead of racing.
        # The same thread re-entering (signal handler interrupting a release)
        # tears down again, which providers tolerate.
        if pending is not None:
            event, owner = pending
            if owner != caller:
                event.wait(self.wait_timeout_s)
                return False, None

        failure: CleanupFailure | None = None
        try:
            try:
                self.provider.teardown(handle.environment_ref)
            except EnvironmentNotRunning:
                logger.debug("Environment %s already stopped", handle.environment_ref)
            except Exception as e:
                if is_expected_teardown_race(str(e)):
                    logger.debug("Environment %s already gone: %s", handle.environment_ref, e)
                else:
                    failure = CleanupFailure(handle.id, handle.environment_ref, str(e))
                    logger.warning("%s", failure)

            with self._lock:
                if not handle.is_active:
                    return False, None
                handle.state = HandleState.RELEASED
                handle.released_at = datetime.now().isoformat()
                handle.subtask_id = None
                if failure is not None:
                    self._failures.append(failure)
        finally:
            if pending is None:
                with self._lock:
                    entry = self._in_flight.pop(handle_id, None)
                if entry is not None:
                    entry[0].set()

        logger.debug("Released %s (%s)", handle.id, handle.environment_ref)
        return True, failure

    def _release_many(self, handle_ids: list[str], serial: bool = False) -> ReleaseReport:
        report = ReleaseReport()
        if not handle_ids:
            return report

        if serial or len(handle_ids) == 1:
            # The calling thread may hold the lock (a signal handler interrupting
            # a locked section); pool workers would block on it forever.
            results = [self._release_one(hid) for hid in handle_ids]
        else:
            caller = threading.get_ident()
            workers = max(1, min(len(handle_ids), self.max_workers))
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="crewflow-release"
            ) as pool:
                results = list(pool.map(lambda hid: self._release_one(hid, caller), handle_ids))

        for released, failure in results:
            if failure is not None:
                report.failures.append(failure)
            elif released:
                report.released_count += 1

        return report

    def release_all(self, serial: bool = False) -> ReleaseReport:
        """Release every active handle in parallel, best effort.

        Never raises and never stops early: each handle is attempted even if
        others fail.

        Args:
            serial: Release on the calling thread, one handle at a time. Used
                from signal handlers.

        Returns:
            ReleaseReport with the number released and collected failures
        """
        report = self._release_many([h.id for h in self.active_handles()], serial=serial)
        if report.released_count or report.failures:
            logger.info(
                "Released %d handle(s), %d failure(s)",
                report.released_count,
                len(report.failures),
            )
        return report

    def release_owner(self, owner_task_id: str) -> ReleaseReport:
        """Release every active handle owned by one task."""
        return self._release_many([h.id for h in self.active_handles(owner_task_id)])

    def force_release_by_owner_prefix(
        self,
        prefix: str,
        max_age_hours: float | None = None,
    ) -> ReleaseReport:
        """Sweep environments by naming convention, tracked or not.

        Picks up orphans left behind by crashed processes. Tracked handles
        found in the sweep go through the normal release path.

        Args:
            prefix: Environment name prefix
            max_age_hours: Only sweep environments older than this

        Returns:
            ReleaseReport for the sweep
        """
        report = ReleaseReport()

        try:
            environments = self.provider.list_environments(prefix)
        except Exception as e:
            report.failures.append(CleanupFailure("-", f"{prefix}*", f"listing failed: {e}"))
            logger.warning("Could not list environments with prefix %s: %s", prefix, e)
            return report

        cutoff = None
        if max_age_hours is not None:
            cutoff = datetime.now() - timedelta(hours=max_age_hours)

        for env in environments:
            if cutoff is not None and env.created_at is not None:
                created = env.created_at.replace(tzinfo=None)
                if created > cutoff:
                    continue

            tracked = self._find_by_ref(env.ref)
            if tracked is not None:
                released, failure = self._release_one(tracked.id)
                if failure is not None:
                    report.failures.append(failure)
                elif released:
                    report.released_count += 1
                continue

            try:
                self.provider.teardown(env.ref)
                report.released_count += 1
                logger.info("Removed orphaned environment %s", env.ref)
            except EnvironmentNotRunning:
                logger.debug("Orphan %s already gone", env.ref)
            except Exception as e:
                if is_expected_teardown_race(str(e)):
                    continue
                failure = CleanupFailure("-", env.ref, str(e))
                report.failures.append(failure)
                logger.warning("%s", failure)

        return report

    def _find_by_ref(self, environment_ref: str) -> ResourceHandle | None:
        with self._lock:
            for handle in self._handles.values():
                if handle.is_active and handle.environment_ref == environment_ref:
                    return handle
        return None


def install_signal_handlers(
    registry: LifecycleRegistry,
    exit_fn: Callable[[int], object] = sys.exit,
    register_atexit: bool = True,
    on_signal: Callable[[int], object] | None = None,
    on_report: Callable[[ReleaseReport], object] | None = None,
) -> Callable[[], None]:
    """Release every handle on SIGINT, SIGTERM, uncaught exceptions and exit.

    Signal handlers first call ``on_signal`` (typically cancelling running
    tasks so in-flight agent calls stop), then ``registry.release_all()``
    serially on the main thread, then ``exit_fn`` with 130 (SIGINT) or 143
    (SIGTERM). Uncaught exceptions release, report through the previous
    excepthook, and the interpreter exits with status 1.

    Args:
        registry: Registry to drain
        exit_fn: Called with the exit code after a signal
        register_atexit: Also release on normal interpreter exit
        on_signal: Called with the signal number before releasing
        on_report: Receives the ReleaseReport of the signal-path release

    Returns:
        Callable restoring the previous handlers
    """
    previous_signals: dict[int, object] = {}

    def _on_signal(signum, frame):
        name = signal.Signals(signum).name
        logger.warning("Received %s, releasing %d active handle(s)", name, registry.active_count())
        if on_signal is not None:
            try:
                on_signal(signum)
            except Exception:
                logger.exception("Signal callback failed; releasing anyway")
        report = registry.release_all(serial=True)
        for failure in report.failures:
            logger.error("%s", failure)
        if on_report is not None:
            on_report(report)
        exit_fn(SIGNAL_EXIT_CODES.get(signum, UNCAUGHT_EXIT_CODE))

    for signum in SIGNAL_EXIT_CODES:
        try:
            previous_signals[signum] = signal.signal(signum, _on_signal)
        except ValueError:
            # signal.signal only works from the main thread
            logger.debug(
                "Not in main thread; %s handler not installed", signal.Signals(signum).name
            )

    previous_hook = sys.excepthook

    def _on_uncaught(exc_type, exc, tb):
        if not issubclass(exc_type, KeyboardInterrupt):
            logger.critical("Uncaught %s, releasing active handles", exc_type.__name__)
        registry.release_all()
        previous_hook(exc_type, exc, tb)

    sys.excepthook = _on_uncaught

    if register_atexit:
        atexit.register(registry.release_all)

    def restore() -> None:
        for signum, handler in previous_signals.items():
            signal.signal(signum, handler)
        if sys.excepthook is _on_uncaught:
            sys.excepthook = previous_hook
        if register_atexit:
            atexit.unregister(registry.release_all)

    return restore
