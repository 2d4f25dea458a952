"""Agent client that replays canned responses (tests and dry runs)."""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from typing import Callable, Union

from crewflow.adapters.base import AgentResponse, PromptContext
from crewflow.core.exceptions import AgentCancelled
from crewflow.schemas.tasks import Role

ScriptItem = Union[str, AgentResponse, BaseException, Callable[[PromptContext], object]]


class ScriptedAgentClient:
    """Returns scripted replies per role, in order.

    Each script item is one of:
    - a string: returned as the response text
    - an AgentResponse: returned as-is
    - an exception instance: raised
    - a callable: called with the PromptContext (e.g. to write files into the
      working directory); its return value is handled like the items above,
      None meaning an empty reply

    When a role's script runs out, ``default`` is used if set, else the last
    item is repeated.
    """

    def __init__(
        self,
        script: dict[Role, list[ScriptItem]] | None = None,
        default: ScriptItem | None = None,
    ):
        self._queues: dict[Role, deque[ScriptItem]] = defaultdict(deque)
        self._last: dict[Role, ScriptItem] = {}
        self.default = default
        self.calls: list[tuple[Role, PromptContext]] = []
        self._lock = threading.Lock()

        for role, items in (script or {}).items():
            self.add(role, *items)

    def add(self, role: Role, *items: ScriptItem) -> None:
        """Append items to a role's script."""
        with self._lock:
            self._queues[role].extend(items)

    def calls_for(self, role: Role) -> list[PromptContext]:
        """Contexts the client was invoked with for one role."""
        return [context for called, context in self.calls if called == role]

    def invoke(self, role: Role, context: PromptContext, timeout_s: float) -> AgentResponse:
        if context.cancel_event is not None and context.cancel_event.is_set():
            raise AgentCancelled(role.value)

        with self._lock:
            self.calls.append((role, context))
            queue = self._queues[role]
            if queue:
                item = queue.popleft()
                self._last[role] = item
            elif self.default is not None:
                item = self.default
            elif role in self._last:
                item = self._last[role]
            else:
                item = f"{role.value}: done"

        return self._resolve(item, context)

    def _resolve(self, item: ScriptItem, context: PromptContext) -> AgentResponse:
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, AgentResponse):
            return item
        if isinstance(item, str):
            return AgentResponse(text=item, usage={"cost_usd": 0.0, "num_turns": 1})
        if callable(item):
            result = item(context)
            return self._resolve("" if result is None else result, context)
        raise TypeError(f"Unsupported script item: {item!r}")
