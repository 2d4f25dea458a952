"""Tests for the lifecycle registry and signal-driven cleanup."""

import signal
import sys
import threading
from datetime import datetime, timedelta

import pytest

from crewflow.core.exceptions import CleanupFailure, DuplicateHandleError, ProvisioningError
from crewflow.core.lifecycle import (
    SIGINT_EXIT_CODE,
    SIGTERM_EXIT_CODE,
    LifecycleRegistry,
    ReleaseReport,
    install_signal_handlers,
    is_expected_teardown_race,
    new_handle_id,
)
from crewflow.schemas.status import HandleState, ResourceHandle


def make_handle(provider, name: str, owner: str = "task-1") -> ResourceHandle:
    """Provision an environment in the fake provider and wrap it in a handle."""
    provider.add_orphan(name)
    return ResourceHandle(
        id=new_handle_id(),
        owner_task_id=owner,
        subtask_id=f"{owner}-part1",
        environment_ref=name,
        branch_name=f"crewflow/{owner}/{name}",
    )


class TestRegister:
    """Tests for LifecycleRegistry.register."""

    def test_register_tracks_handle(self, fake_provider) -> None:
        """Registered handles are active and retrievable."""
        registry = LifecycleRegistry(fake_provider)
        handle = registry.register(make_handle(fake_provider, "env-a"))

        assert registry.get(handle.id) is handle
        assert registry.active_count() == 1

    def test_duplicate_id_rejected(self, fake_provider) -> None:
        """The same id cannot be registered twice."""
        registry = LifecycleRegistry(fake_provider)
        handle = registry.register(make_handle(fake_provider, "env-a"))

        with pytest.raises(DuplicateHandleError):
            registry.register(handle.model_copy())

    def test_active_handles_by_owner(self, fake_provider) -> None:
        """Handles can be listed per owning task."""
        registry = LifecycleRegistry(fake_provider)
        registry.register(make_handle(fake_provider, "env-a", owner="task-1"))
        registry.register(make_handle(fake_provider, "env-b", owner="task-2"))

        owned = registry.active_handles("task-2")
        assert [h.environment_ref for h in owned] == ["env-b"]


class TestRelease:
    """Tests for LifecycleRegistry.release."""

    def test_release_tears_down_and_marks_released(self, fake_provider) -> None:
        """Release tears down the environment exactly once."""
        registry = LifecycleRegistry(fake_provider)
        handle = registry.register(make_handle(fake_provider, "env-a"))

        assert registry.release(handle.id) is True

        assert handle.state == HandleState.RELEASED
        assert handle.released_at is not None
        assert handle.subtask_id is None
        assert "env-a" not in fake_provider.environments
        assert fake_provider.teardown_count("env-a") == 1

    def test_double_release_is_noop(self, fake_provider) -> None:
        """Releasing twice only tears down once."""
        registry = LifecycleRegistry(fake_provider)
        handle = registry.register(make_handle(fake_provider, "env-a"))

        assert registry.release(handle.id) is True
        assert registry.release(handle.id) is False
        assert fake_provider.teardown_count("env-a") == 1

    def test_unknown_handle_is_noop(self, fake_provider) -> None:
        """Unknown ids are ignored."""
        registry = LifecycleRegistry(fake_provider)

        assert registry.release("rh-missing") is False
        assert fake_provider.teardowns == []

    def test_teardown_failure_is_collected_not_raised(self, fake_provider) -> None:
        """A failing teardown becomes a CleanupFailure and the handle is still released."""
        registry = LifecycleRegistry(fake_provider)
        handle = registry.register(make_handle(fake_provider, "env-a"))
        fake_provider.fail_teardown.add("env-a")

        assert registry.release(handle.id) is True

        assert handle.state == HandleState.RELEASED
        assert len(registry.failures) == 1
        assert isinstance(registry.failures[0], CleanupFailure)
        assert registry.failures[0].environment_ref == "env-a"

    def test_already_stopped_counts_as_success(self, fake_provider) -> None:
        """Expected teardown races are not failures."""
        registry = LifecycleRegistry(fake_provider)
        handle = registry.register(make_handle(fake_provider, "env-a"))
        fake_provider.already_stopped.add("env-a")

        assert registry.release(handle.id) is True
        assert registry.failures == []

    def test_environment_gone_counts_as_success(self, fake_provider) -> None:
        """An environment removed behind the registry's back is fine."""
        registry = LifecycleRegistry(fake_provider)
        handle = registry.register(make_handle(fake_provider, "env-a"))
        fake_provider.environments.clear()

        assert registry.release(handle.id) is True
        assert registry.failures == []

    def test_concurrent_release_tears_down_once(self, fake_provider) -> None:
        """Many threads releasing the same handle cause one teardown."""
        registry = LifecycleRegistry(fake_provider)
        handle = registry.register(make_handle(fake_provider, "env-a"))
        fake_provider.teardown_delay_s = 0.05

        results: list[bool] = []
        barrier = threading.Barrier(8)

        def worker() -> None:
            barrier.wait()
            results.append(registry.release(handle.id))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert fake_provider.teardown_count("env-a") == 1
        assert handle.state == HandleState.RELEASED


class TestReleaseAll:
    """Tests for release_all and release_owner."""

    def test_release_all_attempts_every_handle(self, fake_provider) -> None:
        """One failing teardown does not stop the others."""
        registry = LifecycleRegistry(fake_provider)
        for name in ("env-a", "env-b", "env-c"):
            registry.register(make_handle(fake_provider, name))
        fake_provider.fail_teardown.add("env-b")

        report = registry.release_all()

        assert report.released_count == 2
        assert len(report.failures) == 1
        assert report.failures[0].environment_ref == "env-b"
        assert not report.ok
        assert registry.active_count() == 0
        assert sorted(fake_provider.teardowns) == ["env-a", "env-b", "env-c"]

    def test_release_all_twice(self, fake_provider) -> None:
        """A second release_all finds nothing to do."""
        registry = LifecycleRegistry(fake_provider)
        registry.register(make_handle(fake_provider, "env-a"))

        first = registry.release_all()
        second = registry.release_all()

        assert first.released_count == 1
        assert second.released_count == 0
        assert fake_provider.teardown_count("env-a") == 1

    def test_release_owner_only_touches_owner(self, fake_provider) -> None:
        """Handles of other tasks stay active."""
        registry = LifecycleRegistry(fake_provider)
        registry.register(make_handle(fake_provider, "env-a", owner="task-1"))
        other = registry.register(make_handle(fake_provider, "env-b", owner="task-2"))

        report = registry.release_owner("task-1")

        assert report.released_count == 1
        assert registry.active_handles() == [other]

    def test_report_merge(self) -> None:
        """Reports add up."""
        failure = CleanupFailure("rh-1", "env-a", "boom")
        merged = ReleaseReport(1).merge(ReleaseReport(2, [failure]))

        assert merged.released_count == 3
        assert merged.failures == [failure]


class TestForceReleaseByOwnerPrefix:
    """Tests for the orphan sweep."""

    def test_sweeps_untracked_environments(self, fake_provider) -> None:
        """Environments matching the prefix are removed even if never registered."""
        registry = LifecycleRegistry(fake_provider)
        fake_provider.add_orphan("crewflow-task-old-part1")
        fake_provider.add_orphan("unrelated")

        report = registry.force_release_by_owner_prefix("crewflow-")

        assert report.released_count == 1
        assert "unrelated" in fake_provider.environments
        assert "crewflow-task-old-part1" not in fake_provider.environments

    def test_tracked_handles_go_through_release(self, fake_provider) -> None:
        """A tracked handle found by the sweep is marked released."""
        registry = LifecycleRegistry(fake_provider)
        handle = registry.register(make_handle(fake_provider, "crewflow-task-1-part1"))

        report = registry.force_release_by_owner_prefix("crewflow-")

        assert report.released_count == 1
        assert handle.state == HandleState.RELEASED

    def test_max_age_skips_recent(self, fake_provider) -> None:
        """Only environments older than the cutoff are swept."""
        registry = LifecycleRegistry(fake_provider)
        fake_provider.add_orphan("crewflow-old", created_at=datetime.now() - timedelta(hours=5))
        fake_provider.add_orphan("crewflow-new")

        report = registry.force_release_by_owner_prefix("crewflow-", max_age_hours=2)

        assert report.released_count == 1
        assert "crewflow-new" in fake_provider.environments

    def test_listing_failure_reported(self, fake_provider, monkeypatch) -> None:
        """A provider that cannot list environments yields a failure, not an exception."""
        registry = LifecycleRegistry(fake_provider)

        def broken(prefix):
            raise ProvisioningError("docker daemon not running")

        monkeypatch.setattr(fake_provider, "list_environments", broken)
        report = registry.force_release_by_owner_prefix("crewflow-")

        assert report.released_count == 0
        assert len(report.failures) == 1


class TestSignalHandlers:
    """Tests for install_signal_handlers."""

    def test_sigterm_releases_everything_and_exits_143(self, fake_provider) -> None:
        """SIGTERM with three active handles tears down all three, then exits 143."""
        registry = LifecycleRegistry(fake_provider)
        for name in ("env-a", "env-b", "env-c"):
            registry.register(make_handle(fake_provider, name))

        codes: list[int] = []
        restore = install_signal_handlers(registry, exit_fn=codes.append, register_atexit=False)
        try:
            signal.raise_signal(signal.SIGTERM)
        finally:
            restore()

        assert codes == [SIGTERM_EXIT_CODE]
        assert registry.active_count() == 0
        for name in ("env-a", "env-b", "env-c"):
            assert fake_provider.teardown_count(name) == 1

    def test_sigint_exits_130(self, fake_provider) -> None:
        """SIGINT exits with 130 after releasing."""
        registry = LifecycleRegistry(fake_provider)
        registry.register(make_handle(fake_provider, "env-a"))

        codes: list[int] = []
        restore = install_signal_handlers(registry, exit_fn=codes.append, register_atexit=False)
        try:
            signal.raise_signal(signal.SIGINT)
        finally:
            restore()

        assert codes == [SIGINT_EXIT_CODE]
        assert registry.active_count() == 0

    def test_signal_with_failing_teardown_still_exits(self, fake_provider) -> None:
        """Cleanup failures during shutdown are logged and do not block the exit."""
        registry = LifecycleRegistry(fake_provider)
        registry.register(make_handle(fake_provider, "env-a"))
        registry.register(make_handle(fake_provider, "env-b"))
        fake_provider.fail_teardown.add("env-a")

        codes: list[int] = []
        restore = install_signal_handlers(registry, exit_fn=codes.append, register_atexit=False)
        try:
            signal.raise_signal(signal.SIGTERM)
        finally:
            restore()

        assert codes == [SIGTERM_EXIT_CODE]
        assert fake_provider.teardown_count("env-b") == 1
        assert len(registry.failures) == 1

    def test_sigint_reports_three_releases(self, fake_provider) -> None:
        """SIGINT with three handles releases all three with no failures."""
        registry = LifecycleRegistry(fake_provider)
        for name in ("env-a", "env-b", "env-c"):
            registry.register(make_handle(fake_provider, name))

        codes: list[int] = []
        reports: list[ReleaseReport] = []
        restore = install_signal_handlers(
            registry, exit_fn=codes.append, register_atexit=False, on_report=reports.append
        )
        try:
            signal.raise_signal(signal.SIGINT)
        finally:
            restore()

        assert codes == [SIGINT_EXIT_CODE]
        assert len(reports) == 1
        assert reports[0].released_count == 3
        assert reports[0].failures == []

    def test_signal_while_registry_locked_does_not_hang(self, fake_provider) -> None:
        """A signal landing inside a locked registry section still releases everything."""
        registry = LifecycleRegistry(fake_provider)
        for name in ("env-a", "env-b", "env-c"):
            registry.register(make_handle(fake_provider, name))

        codes: list[int] = []
        restore = install_signal_handlers(registry, exit_fn=codes.append, register_atexit=False)
        try:
            with registry._lock:
                signal.raise_signal(signal.SIGTERM)
        finally:
            restore()

        assert codes == [SIGTERM_EXIT_CODE]
        assert registry.active_count() == 0
        for name in ("env-a", "env-b", "env-c"):
            assert fake_provider.teardown_count(name) == 1

    def test_on_signal_runs_before_release(self, fake_provider) -> None:
        """The signal callback sees handles still active; a failing callback is tolerated."""
        registry = LifecycleRegistry(fake_provider)
        registry.register(make_handle(fake_provider, "env-a"))

        seen: list[tuple[int, int]] = []

        def on_signal(signum: int) -> None:
            seen.append((signum, registry.active_count()))
            raise RuntimeError("cancel failed")

        codes: list[int] = []
        restore = install_signal_handlers(
            registry, exit_fn=codes.append, register_atexit=False, on_signal=on_signal
        )
        try:
            signal.raise_signal(signal.SIGINT)
        finally:
            restore()

        assert seen == [(signal.SIGINT, 1)]
        assert codes == [SIGINT_EXIT_CODE]
        assert registry.active_count() == 0

    def test_serial_release_all(self, fake_provider) -> None:
        """release_all(serial=True) releases on the calling thread."""
        registry = LifecycleRegistry(fake_provider)
        for name in ("env-a", "env-b"):
            registry.register(make_handle(fake_provider, name))

        threads: set[str] = set()
        original = fake_provider.teardown

        def recording_teardown(ref):
            threads.add(threading.current_thread().name)
            return original(ref)

        fake_provider.teardown = recording_teardown
        report = registry.release_all(serial=True)

        assert report.released_count == 2
        assert threads == {threading.current_thread().name}

    def test_uncaught_exception_releases(self, fake_provider) -> None:
        """The excepthook releases handles before delegating to the previous hook."""
        registry = LifecycleRegistry(fake_provider)
        registry.register(make_handle(fake_provider, "env-a"))

        seen: list[type] = []
        previous = sys.excepthook
        sys.excepthook = lambda exc_type, exc, tb: seen.append(exc_type)
        try:
            restore = install_signal_handlers(registry, register_atexit=False)
            try:
                sys.excepthook(RuntimeError, RuntimeError("boom"), None)
            finally:
                restore()
        finally:
            sys.excepthook = previous

        assert seen == [RuntimeError]
        assert registry.active_count() == 0

    def test_restore_reinstates_previous_handler(self, fake_provider) -> None:
        """restore() puts the original handlers back."""
        registry = LifecycleRegistry(fake_provider)
        before = signal.getsignal(signal.SIGTERM)

        restore = install_signal_handlers(registry, exit_fn=lambda code: None, register_atexit=False)
        assert signal.getsignal(signal.SIGTERM) is not before
        restore()

        assert signal.getsignal(signal.SIGTERM) == before


class TestTeardownRaces:
    """Tests for is_expected_teardown_race."""

    def test_known_phrases(self) -> None:
        """Messages saying the environment is gone are recognised."""
        assert is_expected_teardown_race("Error: No such container: crewflow-x")
        assert is_expected_teardown_race("container is already stopped")
        assert is_expected_teardown_race("fatal: '/tmp/x' is not a working tree")

    def test_real_failure(self) -> None:
        """Other errors are not races."""
        assert not is_expected_teardown_race("permission denied")
