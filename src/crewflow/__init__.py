"""crewflow: multi-agent code-change orchestration.

Coordinates architect, coder and reviewer agents working in disposable,
branch-bound environments, with consensus-gated collaboration rounds,
bounded parallel execution and conflict-detecting branch merges.
"""

__version__ = "0.1.0"
