"""Pydantic models for .crewflow.yaml configuration."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from crewflow.schemas.tasks import Role


class OrchestrationSettings(BaseModel):
    """Orchestration settings."""

    max_rounds: int = Field(default=3, ge=1, description="Collaboration rounds before giving up")
    max_dialogue_rounds: int = Field(
        default=2, ge=1, description="Round-trips in a direct dialogue sub-exchange"
    )
    max_concurrency: int = Field(default=3, ge=1, description="Parallel subtask workers")
    consensus_lookback: int = Field(default=3, ge=1, description="Entries scanned for questions")
    base_branch: str = Field(default="main")
    branch_prefix: str = Field(default="crewflow")
    environment_prefix: str = Field(default="crewflow-")
    state_dir: str = Field(default=".crewflow")
    worktree_dir: str = Field(default=".worktrees")
    cleanup_branches_after_merge: bool = Field(default=True)
    sync_base: bool = Field(
        default=False, description="Fast-forward the base branch from the remote before planning"
    )
    remote: str = Field(default="origin")


class AgentSettings(BaseModel):
    """Agent CLI settings."""

    command: list[str] = Field(default_factory=lambda: ["claude"])
    model: str | None = Field(default=None)
    default_timeout_s: float = Field(default=300.0, gt=0)
    kill_grace_s: float = Field(default=5.0, ge=0)
    max_retries: int = Field(default=2, ge=0, description="Retries for transient errors")
    retry_backoff_s: float = Field(default=2.0, ge=0)
    timeouts: dict[Role, float] = Field(
        default_factory=dict, description="Per-role timeout overrides in seconds"
    )

    def timeout_for(self, role: Role, fallback: float | None = None) -> float:
        """Resolve the hard timeout for a role."""
        if role in self.timeouts:
            return self.timeouts[role]
        return fallback if fallback is not None else self.default_timeout_s


class EnvironmentSettings(BaseModel):
    """Execution environment settings."""

    provider: str = Field(default="docker", description="docker or worktree")
    image: str = Field(default="crewflow-agent:latest")
    memory: str = Field(default="4g")
    cpus: int = Field(default=2, ge=1)
    network: str = Field(default="none")
    forbidden_mounts: list[str] = Field(
        default_factory=lambda: ["/root", "/etc", "~/.ssh", "~/.aws", "~/.config"]
    )
    env: dict[str, str] = Field(default_factory=dict, description="Environment variables")


class PhraseSets(BaseModel):
    """Phrase lists driving the consensus classifiers.

    Matching is case-insensitive substring search. Negation phrases are
    stripped before the opposing list is checked, so "no issues" does not
    count as an issue.
    """

    ready: list[str] = Field(
        default_factory=lambda: [
            "ready to implement",
            "ready to proceed",
            "ready to start",
            "everything is clear",
            "all clear",
            "no further questions",
            "looks good to me",
        ]
    )
    not_ready: list[str] = Field(
        default_factory=lambda: [
            "not ready",
            "unclear",
            "not sure",
            "need clarification",
            "please clarify",
            "have a question",
            "a few questions",
            "confused",
        ]
    )
    approval: list[str] = Field(
        default_factory=lambda: [
            "approved",
            "lgtm",
            "looks good to me",
            "no issues",
            "passes all criteria",
            "excellent work",
            "ready to merge",
            "implementation is correct",
        ]
    )
    approval_negations: list[str] = Field(
        default_factory=lambda: [
            "not approved",
            "cannot approve",
            "can't approve",
            "unable to approve",
            "not ready to merge",
            "not yet approved",
        ]
    )
    issues: list[str] = Field(
        default_factory=lambda: [
            "issue",
            "problem",
            "bug",
            "incorrect",
            "missing",
            "needs to be fixed",
            "must fix",
            "should fix",
            "error",
            "doesn't work",
            "fails",
            "revision needed",
        ]
    )
    issue_negations: list[str] = Field(
        default_factory=lambda: [
            "no issues",
            "no issue",
            "no problems",
            "no bugs",
            "no errors",
            "nothing missing",
            "without issues",
        ]
    )
    direct_address: list[str] = Field(
        default_factory=lambda: [
            "why did you",
            "why you",
            "could you",
            "can you explain",
            "can you",
            "would you",
            "question about",
            "please clarify",
            "please explain",
        ]
    )
    concerns: list[str] = Field(
        default_factory=lambda: [
            "concern",
            "unclear",
            "not sure",
            "could you",
            "can you explain",
            "why did you",
            "question about",
        ]
    )


class CrewflowConfig(BaseModel):
    """Complete configuration for .crewflow.yaml."""

    orchestration: OrchestrationSettings = Field(default_factory=OrchestrationSettings)
    agents: AgentSettings = Field(default_factory=AgentSettings)
    environment: EnvironmentSettings = Field(default_factory=EnvironmentSettings)
    consensus: PhraseSets = Field(default_factory=PhraseSets)

    @classmethod
    def load(cls, path: str | Path) -> "CrewflowConfig":
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.model_validate(data)

    def save(self, path: str | Path) -> None:
        """Save configuration to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump(
                self.model_dump(mode="json", exclude_none=True),
                f,
                default_flow_style=False,
                sort_keys=False,
            )
