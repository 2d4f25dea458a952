"""Git operations utility functions."""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from pathlib import Path


@dataclass
class CommandResult:
    """Result of a shell command execution."""

    returncode: int
    stdout: str
    stderr: str
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, as git splits merge messages across both."""
        return f"{self.stdout}\n{self.stderr}"


def run_command(
    command: str | list[str],
    cwd: str | Path | None = None,
    timeout: int = 60,
) -> CommandResult:
    """Run a command and return the result.

    Args:
        command: Shell command string, or an argument list run without a shell
        cwd: Working directory for the command
        timeout: Timeout in seconds

    Returns:
        CommandResult with returncode, stdout, stderr
    """
    start = time.time()

    try:
        result = subprocess.run(
            command,
            shell=isinstance(command, str),
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        duration_ms = int((time.time() - start) * 1000)

        return CommandResult(
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=duration_ms,
        )
    except subprocess.TimeoutExpired:
        duration_ms = int((time.time() - start) * 1000)
        return CommandResult(
            returncode=-1,
            stdout="",
            stderr=f"Command timed out after {timeout} seconds",
            duration_ms=duration_ms,
        )
    except OSError as e:
        duration_ms = int((time.time() - start) * 1000)
        return CommandResult(
            returncode=-1,
            stdout="",
            stderr=str(e),
            duration_ms=duration_ms,
        )


def _lines(output: str) -> list[str]:
    return [line.strip() for line in output.strip().split("\n") if line.strip()]


def get_repo_root(path: str | Path | None = None) -> Path | None:
    """Get the root directory of a git repository.

    Args:
        path: Path within the repository (defaults to cwd)

    Returns:
        Path to repository root, or None if not in a repo
    """
    result = run_command(["git", "rev-parse", "--show-toplevel"], cwd=path)
    if result.returncode == 0:
        return Path(result.stdout.strip())
    return None


def get_current_branch(cwd: str | Path | None = None) -> str | None:
    """Get the current git branch name.

    Args:
        cwd: Working directory

    Returns:
        Branch name, or None if detached or not in a repo
    """
    result = run_command(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if result.returncode == 0:
        branch = result.stdout.strip()
        return None if branch == "HEAD" else branch
    return None


def get_current_commit(cwd: str | Path | None = None, ref: str = "HEAD") -> str | None:
    """Get the commit hash a ref points at.

    Args:
        cwd: Working directory
        ref: Branch, tag or revision (defaults to HEAD)

    Returns:
        Full commit hash, or None if the ref does not resolve
    """
    result = run_command(["git", "rev-parse", "--verify", "--quiet", ref], cwd=cwd)
    if result.returncode == 0:
        return result.stdout.strip()
    return None


def branch_exists(branch_name: str, cwd: str | Path | None = None) -> bool:
    """Check if a local branch exists."""
    result = run_command(
        ["git", "show-ref", "--verify", "--quiet", f"refs/heads/{branch_name}"],
        cwd=cwd,
    )
    return result.returncode == 0


def list_tracked_files(cwd: str | Path | None = None) -> list[str]:
    """List files tracked at HEAD."""
    result = run_command(["git", "ls-files"], cwd=cwd)
    if result.returncode == 0:
        return _lines(result.stdout)
    return []


def has_uncommitted_changes(cwd: str | Path) -> bool:
    """Check for staged, unstaged or untracked changes."""
    result = run_command(["git", "status", "--porcelain"], cwd=cwd)
    return result.returncode == 0 and bool(result.stdout.strip())


def commit_all(cwd: str | Path, message: str) -> CommandResult | None:
    """Stage everything and commit.

    Args:
        cwd: Working directory
        message: Commit message

    Returns:
        CommandResult from git commit, or None when there was nothing to commit
    """
    if not has_uncommitted_changes(cwd):
        return None

    result = run_command(["git", "add", "-A"], cwd=cwd)
    if result.returncode != 0:
        return result

    return run_command(["git", "commit", "-m", message], cwd=cwd)


def pull(cwd: str | Path, branch: str, remote: str = "origin") -> CommandResult:
    """Fast-forward a branch from its remote."""
    return run_command(["git", "pull", "--ff-only", remote, branch], cwd=cwd, timeout=300)


def sync_branch(cwd: str | Path, branch: str, remote: str = "origin") -> CommandResult:
    """Fast-forward a local branch to its remote without switching checkouts.

    A branch that is checked out is pulled; any other branch has its ref
    fast-forwarded with a fetch refspec.

    Args:
        cwd: Repository
        branch: Branch to update
        remote: Remote to update from

    Returns:
        CommandResult from git pull or git fetch
    """
    if get_current_branch(cwd) == branch:
        return pull(cwd, branch, remote)
    return run_command(["git", "fetch", remote, f"{branch}:{branch}"], cwd=cwd, timeout=300)


def create_branch(
    branch_name: str,
    cwd: str | Path | None = None,
    start_point: str | None = None,
    force: bool = False,
) -> CommandResult:
    """Create a new branch without checking it out.

    Args:
        branch_name: Name for the new branch
        cwd: Working directory
        start_point: Starting commit/branch (defaults to HEAD)
        force: Reset the branch if it already exists

    Returns:
        CommandResult from git branch
    """
    cmd = ["git", "branch"]
    if force:
        cmd.append("-f")
    cmd.append(branch_name)
    if start_point:
        cmd.append(start_point)
    return run_command(cmd, cwd=cwd)



def merge_branch(
    branch_name: str,
    cwd: str | Path | None = None,
    message: str | None = None,
) -> CommandResult:
    """Merge a branch into the current branch, always creating a merge commit.

    Args:
        branch_name: Branch to merge
        cwd: Working directory
        message: Merge commit message

    Returns:
        CommandResult from git merge
    """
    cmd = ["git", "merge", "--no-ff", "--no-edit"]
    if message:
        cmd.extend(["-m", message])
    cmd.append(branch_name)
    return run_command(cmd, cwd=cwd)


def is_conflict_output(result: CommandResult) -> bool:
    """Check whether a failed merge stopped on conflict markers."""
    output = result.output
    return "CONFLICT" in output or "Automatic merge failed" in output


def get_conflicted_files(cwd: str | Path | None = None) -> list[str]:
    """List paths left unmerged by the last merge, sorted.

    Args:
        cwd: Working directory

    Returns:
        Sorted list of conflicted file paths
    """
    result = run_command(["git", "diff", "--name-only", "--diff-filter=U"], cwd=cwd)
    if result.returncode == 0:
        return sorted(set(_lines(result.stdout)))
    return []


def abort_merge(cwd: str | Path | None = None) -> CommandResult:
    """Abort an in-progress merge."""
    return run_command(["git", "merge", "--abort"], cwd=cwd)


def delete_branch(
    branch_name: str,
    cwd: str | Path | None = None,
    force: bool = False,
) -> CommandResult:
    """Delete a branch.

    Args:
        branch_name: Branch to delete
        cwd: Working directory
        force: Force delete even if not merged

    Returns:
        CommandResult from git branch -d/-D
    """
    flag = "-D" if force else "-d"
    return run_command(["git", "branch", flag, branch_name], cwd=cwd)
