"""Agent client that shells out to the ``claude`` CLI in print mode."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import signal
import subprocess
import time
from pathlib import Path

from crewflow.adapters.base import AgentResponse, PromptContext
from crewflow.core.exceptions import AgentCancelled, AgentError, AgentErrorKind, AgentTimeout
from crewflow.core.retry import bounded_retry
from crewflow.schemas.config import AgentSettings
from crewflow.schemas.tasks import Role

logger = logging.getLogger("crewflow.adapters.claude_cli")

TRANSIENT_PATTERNS = (
    "rate limit",
    "rate_limit",
    "overloaded",
    "econnrefused",
    "econnreset",
    "etimedout",
    "network error",
    "socket hang up",
    "temporary failure",
    "temporarily unavailable",
)

# HTTP statuses only count as whole numbers, not digits inside durations or ids
TRANSIENT_STATUS = re.compile(r"\b(429|500|502|503|504|529)\b")

PERMANENT_PATTERNS = (
    "permission denied",
    "not found",
    "enoent",
    "invalid json",
    "syntax error",
    "invalid api key",
)


def classify_error(message: str) -> AgentErrorKind:
    """Decide whether a failed call is worth retrying.

    Known permanent failures win over transient ones; anything unrecognised
    is treated as transient.
    """
    lowered = message.lower()
    if any(p in lowered for p in PERMANENT_PATTERNS):
        return AgentErrorKind.PERMANENT
    if any(p in lowered for p in TRANSIENT_PATTERNS) or TRANSIENT_STATUS.search(lowered):
        return AgentErrorKind.TRANSIENT
    return AgentErrorKind.TRANSIENT


def terminate_process_group(proc: subprocess.Popen, grace_s: float) -> None:
    """Stop a process and its group: SIGTERM, then SIGKILL after ``grace_s``."""
    if proc.poll() is not None:
        return

    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()

    try:
        proc.wait(timeout=grace_s)
        return
    except subprocess.TimeoutExpired:
        pass

    logger.debug("Process %d ignored SIGTERM for %.1fs, killing", proc.pid, grace_s)
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        with contextlib.suppress(ProcessLookupError):
            proc.kill()


def parse_output(stdout: str) -> tuple[str, dict]:
    """Parse ``--output-format json`` output into (text, usage).

    Raises:
        AgentError: If the output is not JSON or reports an error
    """
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise AgentError(f"Invalid JSON from agent: {e}", AgentErrorKind.PERMANENT) from e

    if not isinstance(data, dict):
        raise AgentError("Invalid JSON from agent: expected an object", AgentErrorKind.PERMANENT)

    result = data.get("result") or ""
    if data.get("is_error"):
        message = result or "Unknown agent error"
        raise AgentError(message, classify_error(message))

    usage: dict = {
        "cost_usd": float(data.get("total_cost_usd") or 0.0),
        "num_turns": int(data.get("num_turns") or 1),
    }
    for key, value in (data.get("usage") or {}).items():
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            usage[key] = value
    if data.get("session_id"):
        usage["session_id"] = data["session_id"]

    return str(result), usage


class ClaudeCliAgentClient:
    """Runs ``claude -p --output-format json`` in the step's working directory.

    Each call gets a hard wall-clock limit. On expiry the process group gets
    SIGTERM, then SIGKILL after the grace period, and AgentTimeout is raised.
    Transient failures are retried with exponential backoff up to
    ``max_retries`` times.
    """

    def __init__(
        self,
        settings: AgentSettings | None = None,
        poll_interval_s: float = 0.5,
        extra_args: list[str] | None = None,
    ):
        self.settings = settings or AgentSettings()
        self.poll_interval_s = poll_interval_s
        self.extra_args = list(extra_args or [])

    def build_command(self, context: PromptContext) -> list[str]:
        cmd = list(self.settings.command) + ["-p", "--output-format", "json"]
        if self.settings.model:
            cmd.extend(["--model", self.settings.model])
        if context.allowed_tools:
            cmd.extend(["--allowedTools", ",".join(context.allowed_tools)])
        cmd.extend(self.extra_args)
        cmd.extend(["--", context.prompt])
        return cmd

    def invoke(self, role: Role, context: PromptContext, timeout_s: float) -> AgentResponse:
        """Call the agent, retrying transient failures.

        Args:
            role: Role being played
            context: Rendered prompt and working directory
            timeout_s: Hard limit per attempt

        Returns:
            AgentResponse

        Raises:
            AgentTimeout: The call hit its hard limit
            AgentCancelled: The task was cancelled mid-call
            AgentError: Permanent failure, or transient failures exhausted retries
        """

        def attempt(number: int) -> AgentResponse | AgentError:
            try:
                return self._invoke_once(role, context, timeout_s)
            except AgentError as e:
                if not e.is_transient:
                    raise
                logger.warning(
                    "[%s] attempt %d/%d failed: %s",
                    role.value,
                    number,
                    self.settings.max_retries + 1,
                    e,
                )
                return e

        outcome = bounded_retry(
            attempt,
            until=lambda value: isinstance(value, AgentResponse),
            max_attempts=self.settings.max_retries + 1,
            backoff_s=self.settings.retry_backoff_s,
            cancel_event=context.cancel_event,
        )

        if outcome.cancelled:
            raise AgentCancelled(role.value)
        if isinstance(outcome.value, AgentError):
            raise outcome.value
        return outcome.value

    def _invoke_once(self, role: Role, context: PromptContext, timeout_s: float) -> AgentResponse:
        cmd = self.build_command(context)
        cwd = Path(context.workdir) if context.workdir else None
        start = time.monotonic()

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except OSError as e:
            raise AgentError(f"Failed to spawn agent: {e}", AgentErrorKind.PERMANENT) from e

        deadline = start + timeout_s
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise AgentTimeout(role.value, timeout_s)

                if context.cancel_event is not None and context.cancel_event.is_set():
                    raise AgentCancelled(role.value)

                try:
                    stdout, stderr = proc.communicate(
                        timeout=min(self.poll_interval_s, remaining)
                    )
                    break
                except subprocess.TimeoutExpired:
                    continue
        except BaseException:
            # Also reached by SystemExit/KeyboardInterrupt from the signal path:
            # the child runs in its own session and never sees the terminal's signal.
            terminate_process_group(proc, self.settings.kill_grace_s)
            self._reap(proc)
            raise

        duration_ms = int((time.monotonic() - start) * 1000)

        if proc.returncode != 0:
            detail = stderr.strip() or stdout.strip()
            message = f"Agent exited with code {proc.returncode}: {detail}"
            raise AgentError(message, classify_error(message))

        text, usage = parse_output(stdout)
        return AgentResponse(text=text, usage=usage, duration_ms=duration_ms)

    def _reap(self, proc: subprocess.Popen) -> None:
        with contextlib.suppress(subprocess.TimeoutExpired, ValueError, OSError):
            proc.communicate(timeout=self.settings.kill_grace_s or 1.0)
