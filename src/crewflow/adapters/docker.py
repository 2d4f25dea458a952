"""Environment provider running each environment in a locked-down container.

The checkout lives in a git worktree on the host and is bind-mounted into the
container at /workspace; commands run inside the container via docker exec.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path

from crewflow.adapters.base import EnvironmentInfo, EnvironmentSpec
from crewflow.adapters.worktree import WorktreeEnvironmentProvider
from crewflow.core.exceptions import EnvironmentNotRunning, ProvisioningError
from crewflow.schemas.config import EnvironmentSettings
from crewflow.utils.git import CommandResult, run_command

logger = logging.getLogger("crewflow.adapters.docker")

CONTAINER_WORKDIR = "/workspace"

DROPPED_CAPABILITIES = [
    "NET_RAW",
    "NET_ADMIN",
    "SYS_ADMIN",
    "SYS_MODULE",
    "SYS_PTRACE",
    "SYS_BOOT",
    "SYS_TIME",
    "AUDIT_CONTROL",
    "MAC_ADMIN",
    "MAC_OVERRIDE",
    "SYSLOG",
    "SETUID",
    "SETGID",
    "SETPCAP",
    "LINUX_IMMUTABLE",
    "IPC_LOCK",
    "IPC_OWNER",
    "SYS_RAWIO",
    "SYS_CHROOT",
    "SYS_NICE",
    "SYS_RESOURCE",
    "SYS_TTY_CONFIG",
    "MKNOD",
    "LEASE",
    "AUDIT_WRITE",
    "AUDIT_READ",
]

TMPFS_MOUNTS = [
    "/tmp:rw,noexec,nosuid,size=512m",
    f"{CONTAINER_WORKDIR}/.tmp:rw,size=1g",
]

_MEMORY_UNITS = {"b": 1, "k": 1024, "m": 1024**2, "g": 1024**3}


def parse_memory(memory: str) -> int:
    """Convert a memory limit like ``4g`` or ``512m`` to bytes.

    Raises:
        ValueError: If the format is not ``<digits><b|k|m|g>``
    """
    match = re.fullmatch(r"(\d+)([bkmg])", memory.strip().lower())
    if not match:
        raise ValueError(f"Invalid memory format: {memory}")
    amount, unit = match.groups()
    return int(amount) * _MEMORY_UNITS[unit]


def check_mount(host_path: str | Path, forbidden: list[str]) -> None:
    """Refuse to mount forbidden host directories or anything below them.

    Raises:
        ProvisioningError: If ``host_path`` is forbidden
    """
    resolved = Path(host_path).expanduser().resolve()
    for entry in forbidden:
        blocked = Path(entry).expanduser().resolve()
        if resolved == blocked or blocked in resolved.parents:
            raise ProvisioningError(
                f"Security violation: cannot mount {resolved} (under {blocked})"
            )


def _parse_created(value: str) -> datetime | None:
    # docker prints e.g. "2024-05-01 12:30:00 +0000 UTC"
    try:
        return datetime.strptime(value.strip()[:19], "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return None


class DockerEnvironmentProvider:
    """One container plus one worktree per environment."""

    def __init__(
        self,
        settings: EnvironmentSettings,
        worktrees: WorktreeEnvironmentProvider,
        docker_bin: str = "docker",
    ):
        self.settings = settings
        self.worktrees = worktrees
        self.docker_bin = docker_bin

    def build_run_command(self, name: str, host_path: Path) -> list[str]:
        """docker run arguments for a new environment container."""
        memory = str(parse_memory(self.settings.memory))

        cmd = [
            self.docker_bin,
            "run",
            "-d",
            "--name",
            name,
            "--label",
            "crewflow=1",
            "--read-only",
            "--network",
            self.settings.network,
            "--memory",
            memory,
            "--memory-swap",
            memory,
            "--cpus",
            str(self.settings.cpus),
            "--security-opt",
            "no-new-privileges",
        ]
        for cap in DROPPED_CAPABILITIES:
            cmd.extend(["--cap-drop", cap])
        for mount in TMPFS_MOUNTS:
            cmd.extend(["--tmpfs", mount])
        for key, value in sorted(self.settings.env.items()):
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend(
            [
                "-v",
                f"{host_path}:{CONTAINER_WORKDIR}:rw",
                "-w",
                CONTAINER_WORKDIR,
                self.settings.image,
                "sleep",
                "infinity",
            ]
        )
        return cmd

    def provision(self, spec: EnvironmentSpec) -> str:
        """Create the worktree, then start the container mounting it.

        Raises:
            ProvisioningError: Forbidden mount, bad limits, or docker failure
        """
        ref = self.worktrees.provision(spec)
        host_path = self.worktrees.workdir(ref)

        try:
            check_mount(host_path, self.settings.forbidden_mounts)
            cmd = self.build_run_command(ref, host_path)
        except (ProvisioningError, ValueError) as e:
            self._discard_worktree(ref)
            raise ProvisioningError(str(e)) from e

        result = run_command(cmd, timeout=120)
        if not result.ok:
            self._discard_worktree(ref)
            raise ProvisioningError(f"docker run failed for {ref}: {result.stderr.strip()}")

        logger.info("Started container %s (%s)", ref, self.settings.image)
        return ref

    def _discard_worktree(self, ref: str) -> None:
        try:
            self.worktrees.teardown(ref)
        except ProvisioningError as e:
            logger.warning("Could not discard worktree %s: %s", ref, e)

    def teardown(self, environment_ref: str) -> None:
        """Remove the container and its worktree.

        Raises:
            EnvironmentNotRunning: Both were already gone
            ProvisioningError: docker or git failed
        """
        result = run_command([self.docker_bin, "rm", "-f", environment_ref], timeout=60)
        container_gone = not result.ok and "no such container" in result.stderr.lower()
        if not result.ok and not container_gone:
            raise ProvisioningError(
                f"docker rm failed for {environment_ref}: {result.stderr.strip()}"
            )

        try:
            self.worktrees.teardown(environment_ref)
        except EnvironmentNotRunning:
            if container_gone:
                raise

    def exec_in_environment(self, environment_ref: str, command: str | list[str]) -> CommandResult:
        """Run a command inside the container's /workspace."""
        if isinstance(command, str):
            command = ["/bin/sh", "-c", command]
        result = run_command(
            [self.docker_bin, "exec", "-w", CONTAINER_WORKDIR, environment_ref, *command],
            timeout=self.worktrees.timeout,
        )
        if not result.ok and "no such container" in result.stderr.lower():
            raise EnvironmentNotRunning(result.stderr.strip())
        return result

    def list_environments(self, prefix: str) -> list[EnvironmentInfo]:
        """Containers whose name starts with ``prefix`` (running or not)."""
        result = run_command(
            [
                self.docker_bin,
                "ps",
                "-a",
                "--filter",
                f"name={prefix}",
                "--format",
                "{{.Names}}\t{{.CreatedAt}}\t{{.Status}}",
            ],
            timeout=60,
        )
        if not result.ok:
            raise ProvisioningError(f"docker ps failed: {result.stderr.strip()}")

        environments: list[EnvironmentInfo] = []
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if not parts[0] or not parts[0].startswith(prefix):
                continue
            environments.append(
                EnvironmentInfo(
                    ref=parts[0],
                    created_at=_parse_created(parts[1]) if len(parts) > 1 else None,
                    status=parts[2] if len(parts) > 2 else "",
                )
            )
        return environments

    def workdir(self, environment_ref: str) -> Path | None:
        return self.worktrees.workdir(environment_ref)
