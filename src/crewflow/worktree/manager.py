"""Git worktree management for environment isolation."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from crewflow.utils.git import CommandResult, get_repo_root, run_command

logger = logging.getLogger("crewflow.worktree.manager")


@dataclass
class WorktreeInfo:
    """Information about a git worktree."""

    path: Path
    branch: str
    commit: str
    name: str | None = None
    is_main: bool = False


class WorktreeManager:
    """Manages git worktrees, one per named environment."""

    def __init__(
        self,
        repo_root: Path | None = None,
        worktree_dir: str = ".worktrees",
    ):
        """Initialize worktree manager.

        Args:
            repo_root: Root of the git repository
            worktree_dir: Directory name for worktrees (relative to repo root)
        """
        self.repo_root = repo_root or get_repo_root() or Path.cwd()
        self.worktree_dir = self.repo_root / worktree_dir

    def create_worktree(
        self,
        name: str,
        branch_name: str,
        base_branch: str = "main",
    ) -> tuple[Path, CommandResult]:
        """Create a worktree checked out on a new branch.

        Args:
            name: Environment name, used as the worktree directory name
            branch_name: Branch to create for the worktree
            base_branch: Branch to base the new branch on

        Returns:
            Tuple of (worktree_path, CommandResult)
        """
        worktree_path = self.worktree_dir / name

        self.worktree_dir.mkdir(parents=True, exist_ok=True)

        result = run_command(
            ["git", "worktree", "add", "-b", branch_name, str(worktree_path), base_branch],
            cwd=self.repo_root,
        )
        if result.returncode == 0:
            logger.debug("Created worktree %s on %s", worktree_path, branch_name)

        return worktree_path, result

    def attach_worktree(self, name: str, branch_name: str) -> tuple[Path, CommandResult]:
        """Create a worktree for an existing branch."""
        worktree_path = self.worktree_dir / name
        self.worktree_dir.mkdir(parents=True, exist_ok=True)

        result = run_command(
            ["git", "worktree", "add", str(worktree_path), branch_name],
            cwd=self.repo_root,
        )
        return worktree_path, result

    def delete_worktree(
        self,
        name: str,
        force: bool = False,
        delete_branch: bool = False,
    ) -> CommandResult:
        """Delete a worktree.

        The branch is kept unless ``delete_branch`` is set, since subtask
        branches outlive their environments until they are merged.

        Args:
            name: Environment name
            force: Force removal even with uncommitted changes
            delete_branch: Also delete the worktree's branch

        Returns:
            CommandResult from git worktree remove
        """
        worktree_path = self.worktree_dir / name
        info = self.get_worktree(name) if delete_branch else None

        cmd = ["git", "worktree", "remove"]
        if force:
            cmd.append("--force")
        cmd.append(str(worktree_path))
        result = run_command(cmd, cwd=self.repo_root)

        if delete_branch and info and info.branch:
            run_command(["git", "branch", "-D", info.branch], cwd=self.repo_root)

        return result

    def list_worktrees(self) -> list[WorktreeInfo]:
        """List all worktrees.

        Returns:
            List of WorktreeInfo for all worktrees
        """
        result = run_command(
            ["git", "worktree", "list", "--porcelain"],
            cwd=self.repo_root,
        )

        if result.returncode != 0:
            return []

        worktrees: list[WorktreeInfo] = []
        current_wt: dict[str, str] = {}

        for line in result.stdout.strip().split("\n") + [""]:
            if not line:
                if current_wt:
                    worktrees.append(self._to_info(current_wt))
                    current_wt = {}
            elif line.startswith("worktree "):
                current_wt["worktree"] = line[9:]
            elif line.startswith("HEAD "):
                current_wt["HEAD"] = line[5:]
            elif line.startswith("branch "):
                current_wt["branch"] = line[7:]

        return worktrees

    def _to_info(self, entry: dict[str, str]) -> WorktreeInfo:
        wt_path = Path(entry.get("worktree", ""))
        branch = entry.get("branch", "").replace("refs/heads/", "")

        name = None
        if wt_path.parent.resolve() == self.worktree_dir.resolve():
            name = wt_path.name

        return WorktreeInfo(
            path=wt_path,
            branch=branch,
            commit=entry.get("HEAD", ""),
            name=name,
            is_main=wt_path.resolve() == self.repo_root.resolve(),
        )

    def get_worktree(self, name: str) -> WorktreeInfo | None:
        """Get worktree info for a named environment.

        Args:
            name: Environment name

        Returns:
            WorktreeInfo if found, None otherwise
        """
        for wt in self.list_worktrees():
            if wt.name == name:
                return wt
        return None

    def get_worktree_path(self, name: str) -> Path:
        """Get the path to a named worktree."""
        return self.worktree_dir / name

    def worktree_exists(self, name: str) -> bool:
        """Check if a worktree exists for a name."""
        return self.get_worktree(name) is not None

    def cleanup_stale_worktrees(self) -> list[str]:
        """Clean up stale worktrees (missing directories).

        Returns:
            Names of directories that were removed
        """
        run_command(["git", "worktree", "prune"], cwd=self.repo_root)

        cleaned: list[str] = []

        if self.worktree_dir.exists():
            active = {wt.name for wt in self.list_worktrees() if wt.name}

            for entry in self.worktree_dir.iterdir():
                if entry.is_dir() and entry.name not in active:
                    shutil.rmtree(entry)
                    cleaned.append(entry.name)

        return cleaned
