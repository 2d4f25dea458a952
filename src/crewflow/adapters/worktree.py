"""Environment provider backed by one git worktree per environment."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path

from crewflow.adapters.base import EnvironmentInfo, EnvironmentSpec
from crewflow.core.exceptions import EnvironmentNotRunning, ProvisioningError
from crewflow.utils.git import CommandResult, branch_exists, run_command
from crewflow.worktree.manager import WorktreeManager

logger = logging.getLogger("crewflow.adapters.worktree")


class WorktreeEnvironmentProvider:
    """Isolates each environment in its own worktree and branch.

    The branch outlives the environment: teardown removes the worktree only,
    so finished subtask branches stay available for merging.
    """

    def __init__(self, repo_root: Path, worktree_dir: str = ".worktrees", timeout: int = 300):
        self.manager = WorktreeManager(repo_root=Path(repo_root), worktree_dir=worktree_dir)
        self.timeout = timeout
        # git takes ref locks when adding/removing worktrees
        self._git_lock = threading.Lock()

    @property
    def repo_root(self) -> Path:
        return self.manager.repo_root

    def provision(self, spec: EnvironmentSpec) -> str:
        """Create a worktree checked out on ``spec.branch_name``.

        A new branch is created from ``spec.base_branch``; a leftover branch of
        the same name is reused as-is.

        Raises:
            ProvisioningError: If the worktree already exists or git fails
        """
        with self._git_lock:
            if self.manager.worktree_exists(spec.name):
                raise ProvisioningError(f"Environment already exists: {spec.name}")

            if branch_exists(spec.branch_name, cwd=self.repo_root):
                path, result = self.manager.attach_worktree(spec.name, spec.branch_name)
            else:
                path, result = self.manager.create_worktree(
                    spec.name, spec.branch_name, spec.base_branch
                )

        if not result.ok:
            raise ProvisioningError(
                f"Could not create worktree {spec.name} on {spec.branch_name}: "
                f"{result.stderr.strip()}"
            )

        logger.info("Provisioned worktree %s on %s", spec.name, spec.branch_name)
        return spec.name

    def teardown(self, environment_ref: str) -> None:
        """Remove the worktree, keeping its branch.

        Raises:
            EnvironmentNotRunning: The worktree is already gone
            ProvisioningError: git refused to remove it
        """
        path = self.manager.get_worktree_path(environment_ref)

        with self._git_lock:
            if not self.manager.worktree_exists(environment_ref):
                if path.exists():
                    run_command(["git", "worktree", "prune"], cwd=self.repo_root)
                raise EnvironmentNotRunning(f"Worktree already removed: {environment_ref}")

            result = self.manager.delete_worktree(environment_ref, force=True)

        if not result.ok:
            if "is not a working tree" in result.stderr:
                raise EnvironmentNotRunning(result.stderr.strip())
            raise ProvisioningError(
                f"Could not remove worktree {environment_ref}: {result.stderr.strip()}"
            )

        logger.debug("Removed worktree %s", environment_ref)

    def exec_in_environment(self, environment_ref: str, command: str | list[str]) -> CommandResult:
        """Run a command with the worktree as working directory."""
        path = self.manager.get_worktree_path(environment_ref)
        if not path.exists():
            raise EnvironmentNotRunning(f"Worktree not found: {environment_ref}")
        return run_command(command, cwd=path, timeout=self.timeout)

    def list_environments(self, prefix: str) -> list[EnvironmentInfo]:
        environments: list[EnvironmentInfo] = []
        for wt in self.manager.list_worktrees():
            if wt.name and wt.name.startswith(prefix):
                created = None
                if wt.path.exists():
                    created = datetime.fromtimestamp(wt.path.stat().st_mtime)
                environments.append(
                    EnvironmentInfo(ref=wt.name, created_at=created, status=wt.branch)
                )
        return environments

    def workdir(self, environment_ref: str) -> Path | None:
        return self.manager.get_worktree_path(environment_ref)
