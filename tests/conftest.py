"""Shared fixtures: a throwaway git repository and an in-memory environment provider."""

import subprocess
import threading
import time
from datetime import datetime
from pathlib import Path

import pytest

from crewflow.adapters.base import EnvironmentInfo, EnvironmentSpec
from crewflow.core.exceptions import EnvironmentNotRunning, ProvisioningError
from crewflow.utils.git import CommandResult


class FakeEnvironmentProvider:
    """Keeps environments in a dict; teardown behaviour is configurable per ref."""

    def __init__(self) -> None:
        self.environments: dict[str, EnvironmentInfo] = {}
        self.provisioned: list[EnvironmentSpec] = []
        self.teardowns: list[str] = []
        self.fail_provision: set[str] = set()
        self.fail_teardown: set[str] = set()
        self.already_stopped: set[str] = set()
        self.teardown_delay_s = 0.0
        self._lock = threading.Lock()

    def provision(self, spec: EnvironmentSpec) -> str:
        with self._lock:
            if spec.name in self.fail_provision:
                raise ProvisioningError(f"cannot provision {spec.name}")
            if spec.name in self.environments:
                raise ProvisioningError(f"Environment already exists: {spec.name}")
            self.provisioned.append(spec)
            self.environments[spec.name] = EnvironmentInfo(
                ref=spec.name, created_at=datetime.now(), status="running"
            )
        return spec.name

    def add_orphan(self, ref: str, created_at: datetime | None = None) -> None:
        """Pretend an environment was left behind by another process."""
        with self._lock:
            self.environments[ref] = EnvironmentInfo(
                ref=ref, created_at=created_at or datetime.now(), status="exited"
            )

    def teardown(self, environment_ref: str) -> None:
        if self.teardown_delay_s:
            time.sleep(self.teardown_delay_s)
        with self._lock:
            self.teardowns.append(environment_ref)
            if environment_ref in self.fail_teardown:
                raise ProvisioningError(f"device busy while removing {environment_ref}")
            if environment_ref in self.already_stopped:
                self.environments.pop(environment_ref, None)
                raise ProvisioningError(f"container {environment_ref} is already stopped")
            if self.environments.pop(environment_ref, None) is None:
                raise EnvironmentNotRunning(f"No such environment: {environment_ref}")

    def exec_in_environment(self, environment_ref: str, command) -> CommandResult:
        if environment_ref not in self.environments:
            raise EnvironmentNotRunning(environment_ref)
        return CommandResult(returncode=0, stdout="", stderr="")

    def list_environments(self, prefix: str) -> list[EnvironmentInfo]:
        with self._lock:
            return [env for ref, env in self.environments.items() if ref.startswith(prefix)]

    def workdir(self, environment_ref: str) -> Path | None:
        return None

    def teardown_count(self, environment_ref: str) -> int:
        return self.teardowns.count(environment_ref)


@pytest.fixture
def fake_provider() -> FakeEnvironmentProvider:
    """In-memory environment provider."""
    return FakeEnvironmentProvider()


def _git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


@pytest.fixture
def git() -> object:
    """Run a git command in a repository and return its stdout."""
    return _git


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a temporary git repository on ``main`` with one commit."""
    repo_path = tmp_path / "test_repo"
    repo_path.mkdir()

    _git(repo_path, "init")
    _git(repo_path, "config", "user.email", "test@test.com")
    _git(repo_path, "config", "user.name", "Test User")
    _git(repo_path, "config", "commit.gpgsign", "false")

    (repo_path / "README.md").write_text("# Test Repo\n")
    (repo_path / ".gitignore").write_text(".worktrees/\n.crewflow/\n")
    _git(repo_path, "add", "README.md", ".gitignore")
    _git(repo_path, "commit", "-m", "Initial commit")
    _git(repo_path, "branch", "-M", "main")

    return repo_path


@pytest.fixture
def commit_file(git):
    """Write a file on a branch and commit it, returning to the previous branch."""

    def _commit(repo: Path, branch: str, name: str, content: str, base: str = "main") -> None:
        current = git(repo, "rev-parse", "--abbrev-ref", "HEAD")
        exists = subprocess.run(
            ["git", "show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo
        ).returncode == 0
        if exists:
            git(repo, "checkout", branch)
        else:
            git(repo, "checkout", "-b", branch, base)
        path = repo / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        git(repo, "add", name)
        git(repo, "commit", "-m", f"Edit {name} on {branch}")
        git(repo, "checkout", current)

    return _commit
