"""In-memory cost accumulation per task."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any

from crewflow.schemas.tasks import Role


class InMemoryCostAccumulator:
    """Sums numeric usage fields (tokens, cost, turns) per task and role."""

    def __init__(self):
        self._totals: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._by_role: dict[tuple[str, str], dict[str, float]] = defaultdict(
            lambda: defaultdict(float)
        )
        self._lock = threading.Lock()

    def record(self, task_id: str, role: Role, usage: dict[str, Any]) -> None:
        """Add one call's usage. Non-numeric fields are ignored."""
        with self._lock:
            for key, value in usage.items():
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    continue
                self._totals[task_id][key] += value
                self._by_role[(task_id, role.value)][key] += value
            self._totals[task_id]["calls"] += 1

    def total(self, task_id: str) -> dict[str, float]:
        with self._lock:
            return dict(self._totals.get(task_id, {}))

    def by_role(self, task_id: str) -> dict[str, dict[str, float]]:
        """Usage per role for one task."""
        with self._lock:
            return {
                role: dict(values)
                for (owner, role), values in self._by_role.items()
                if owner == task_id
            }
