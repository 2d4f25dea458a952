"""Integration tests for worktree management and the worktree provider.

These tests require git to be installed and available.
They create actual git repositories for testing.
"""

from pathlib import Path

import pytest

from crewflow.adapters.base import EnvironmentSpec
from crewflow.adapters.worktree import WorktreeEnvironmentProvider
from crewflow.core.exceptions import EnvironmentNotRunning, ProvisioningError
from crewflow.core.lifecycle import LifecycleRegistry
from crewflow.schemas.status import ResourceHandle
from crewflow.utils.git import branch_exists, commit_all
from crewflow.worktree.manager import WorktreeManager


def make_spec(repo: Path, name: str, branch: str, base: str = "main") -> EnvironmentSpec:
    return EnvironmentSpec(name=name, repository=repo, branch_name=branch, base_branch=base)


class TestWorktreeManager:
    """Integration tests for WorktreeManager."""

    def test_create_worktree(self, git_repo: Path) -> None:
        """A worktree is created on a new branch from the base."""
        manager = WorktreeManager(repo_root=git_repo)
        worktree_path, result = manager.create_worktree("env-a", "crewflow/t/part-1")

        assert result.ok
        assert worktree_path == git_repo / ".worktrees" / "env-a"
        assert (worktree_path / "README.md").exists()
        assert branch_exists("crewflow/t/part-1", cwd=git_repo)

        manager.delete_worktree("env-a", force=True)

    def test_create_on_existing_branch_fails(self, git_repo: Path, git) -> None:
        """create_worktree refuses a branch that already exists."""
        git(git_repo, "branch", "taken")
        manager = WorktreeManager(repo_root=git_repo)

        _, result = manager.create_worktree("env-a", "taken")

        assert not result.ok

    def test_attach_existing_branch(self, git_repo: Path, commit_file) -> None:
        """attach_worktree checks out a branch that already has work on it."""
        commit_file(git_repo, "feature", "feature.py", "x = 1\n")
        manager = WorktreeManager(repo_root=git_repo)

        path, result = manager.attach_worktree("env-a", "feature")

        assert result.ok
        assert (path / "feature.py").read_text() == "x = 1\n"
        manager.delete_worktree("env-a", force=True)

    def test_list_and_get(self, git_repo: Path) -> None:
        """Named worktrees are listed with their branch; the main checkout has no name."""
        manager = WorktreeManager(repo_root=git_repo)
        manager.create_worktree("env-a", "crewflow/t/part-1")

        worktrees = manager.list_worktrees()

        assert len(worktrees) == 2
        main = next(wt for wt in worktrees if wt.is_main)
        assert main.name is None
        wt = manager.get_worktree("env-a")
        assert wt is not None
        assert wt.branch == "crewflow/t/part-1"
        assert manager.get_worktree("env-b") is None

        manager.delete_worktree("env-a", force=True)

    def test_delete_keeps_branch_by_default(self, git_repo: Path) -> None:
        """Deleting a worktree leaves its branch for merging."""
        manager = WorktreeManager(repo_root=git_repo)
        path, _ = manager.create_worktree("env-a", "crewflow/t/part-1")

        result = manager.delete_worktree("env-a", force=True)

        assert result.ok
        assert not path.exists()
        assert not manager.worktree_exists("env-a")
        assert branch_exists("crewflow/t/part-1", cwd=git_repo)

    def test_delete_with_branch(self, git_repo: Path) -> None:
        """delete_branch removes the branch as well."""
        manager = WorktreeManager(repo_root=git_repo)
        manager.create_worktree("env-a", "crewflow/t/part-1")

        manager.delete_worktree("env-a", force=True, delete_branch=True)

        assert not branch_exists("crewflow/t/part-1", cwd=git_repo)

    def test_cleanup_stale_worktrees(self, git_repo: Path) -> None:
        """Directories git no longer knows about are removed."""
        manager = WorktreeManager(repo_root=git_repo)
        manager.create_worktree("env-a", "crewflow/t/part-1")
        stray = git_repo / ".worktrees" / "leftover"
        stray.mkdir()
        (stray / "junk.txt").write_text("x")

        cleaned = manager.cleanup_stale_worktrees()

        assert cleaned == ["leftover"]
        assert not stray.exists()
        assert manager.worktree_exists("env-a")

        manager.delete_worktree("env-a", force=True)


class TestWorktreeEnvironmentProvider:
    """Integration tests for the worktree-backed provider."""

    def test_provision_and_teardown(self, git_repo: Path) -> None:
        """An environment is a worktree on its branch; teardown keeps the branch."""
        provider = WorktreeEnvironmentProvider(git_repo)

        ref = provider.provision(make_spec(git_repo, "crewflow-t-part1", "crewflow/t/part-1"))

        workdir = provider.workdir(ref)
        assert workdir is not None and (workdir / "README.md").exists()
        assert [e.ref for e in provider.list_environments("crewflow-")] == [ref]

        provider.teardown(ref)

        assert not workdir.exists()
        assert provider.list_environments("crewflow-") == []
        assert branch_exists("crewflow/t/part-1", cwd=git_repo)

    def test_duplicate_name_rejected(self, git_repo: Path) -> None:
        """Two environments cannot share a name."""
        provider = WorktreeEnvironmentProvider(git_repo)
        provider.provision(make_spec(git_repo, "crewflow-t-part1", "crewflow/t/part-1"))

        with pytest.raises(ProvisioningError, match="already exists"):
            provider.provision(make_spec(git_repo, "crewflow-t-part1", "crewflow/t/part-2"))

        provider.teardown("crewflow-t-part1")

    def test_reuses_leftover_branch(self, git_repo: Path, commit_file) -> None:
        """A branch left by an earlier run is checked out as-is."""
        commit_file(git_repo, "crewflow/t/part-1", "wip.py", "pass\n")
        provider = WorktreeEnvironmentProvider(git_repo)

        ref = provider.provision(make_spec(git_repo, "crewflow-t-part1", "crewflow/t/part-1"))

        assert (provider.workdir(ref) / "wip.py").exists()
        provider.teardown(ref)

    def test_bad_base_branch(self, git_repo: Path) -> None:
        """An unknown base branch is a provisioning error."""
        provider = WorktreeEnvironmentProvider(git_repo)

        with pytest.raises(ProvisioningError, match="Could not create worktree"):
            provider.provision(
                make_spec(git_repo, "crewflow-t-part1", "crewflow/t/part-1", base="nope")
            )

    def test_teardown_twice(self, git_repo: Path) -> None:
        """A second teardown reports the environment is already gone."""
        provider = WorktreeEnvironmentProvider(git_repo)
        ref = provider.provision(make_spec(git_repo, "crewflow-t-part1", "crewflow/t/part-1"))
        provider.teardown(ref)

        with pytest.raises(EnvironmentNotRunning):
            provider.teardown(ref)

    def test_exec_and_commit_in_environment(self, git_repo: Path, git) -> None:
        """Commands run inside the worktree and commits land on its branch."""
        provider = WorktreeEnvironmentProvider(git_repo)
        ref = provider.provision(make_spec(git_repo, "crewflow-t-part1", "crewflow/t/part-1"))

        result = provider.exec_in_environment(ref, "echo hello > hello.txt")
        commit = commit_all(provider.workdir(ref), "Add hello")

        assert result.ok
        assert commit is not None and commit.ok
        assert not (git_repo / "hello.txt").exists()
        assert "hello.txt" in git(git_repo, "ls-tree", "--name-only", "crewflow/t/part-1")

        provider.teardown(ref)
        with pytest.raises(EnvironmentNotRunning):
            provider.exec_in_environment(ref, "true")

    def test_environments_isolated(self, git_repo: Path) -> None:
        """Changes in one environment are invisible to another."""
        provider = WorktreeEnvironmentProvider(git_repo)
        a = provider.provision(make_spec(git_repo, "crewflow-t-part1", "crewflow/t/part-1"))
        b = provider.provision(make_spec(git_repo, "crewflow-t-part2", "crewflow/t/part-2"))

        (provider.workdir(a) / "file_a.py").write_text("# A")

        assert not (provider.workdir(b) / "file_a.py").exists()
        assert not (git_repo / "file_a.py").exists()

        provider.teardown(a)
        provider.teardown(b)


class TestRegistryWithWorktrees:
    """The lifecycle registry driving a real provider."""

    def test_release_all_and_prefix_sweep(self, git_repo: Path) -> None:
        """Tracked and orphaned worktrees are both removed."""
        provider = WorktreeEnvironmentProvider(git_repo)
        registry = LifecycleRegistry(provider)

        tracked = provider.provision(make_spec(git_repo, "crewflow-t-part1", "crewflow/t/part-1"))
        registry.register(
            ResourceHandle(
                id="h-1",
                owner_task_id="t",
                environment_ref=tracked,
                branch_name="crewflow/t/part-1",
            )
        )
        # left behind by a crashed run, unknown to this registry
        provider.provision(make_spec(git_repo, "crewflow-old-part1", "crewflow/old/part-1"))

        report = registry.release_all()
        assert report.released_count == 1
        assert [e.ref for e in provider.list_environments("crewflow-")] == ["crewflow-old-part1"]

        sweep = registry.force_release_by_owner_prefix("crewflow-")
        assert sweep.ok
        assert sweep.released_count == 1
        assert provider.list_environments("crewflow-") == []

    def test_sweep_respects_age(self, git_repo: Path) -> None:
        """Environments younger than the age limit survive a sweep."""
        provider = WorktreeEnvironmentProvider(git_repo)
        registry = LifecycleRegistry(provider)
        provider.provision(make_spec(git_repo, "crewflow-new-part1", "crewflow/new/part-1"))

        report = registry.force_release_by_owner_prefix("crewflow-", max_age_hours=1.0)

        assert report.released_count == 0

        assert [e.ref for e in provider.list_environments("crewflow-")] == ["crewflow-new-part1"]
        provider.teardown("crewflow-new-part1")
