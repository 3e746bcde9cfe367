"""Error taxonomy for the orchestration engine.

Configuration errors (cycles, unknown ids) are raised to the caller of
``submit_graph``. Backend and parsing errors are task-level and are routed
through the recovery engine; they never escape the orchestration loop.
"""

from __future__ import annotations

from typing import List, Optional


class OrchestrationError(Exception):
    """Base class for all engine errors."""


class CyclicDependency(OrchestrationError):
    """A dependency edge (or a submitted edge set) would create a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__("Cyclic dependency: " + " -> ".join(self.cycle))


class UnknownTask(OrchestrationError):
    """A task id is not present in the graph."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Unknown task: {task_id}")


class InvalidTransition(OrchestrationError):
    """A status change is not allowed by the execution state machine."""

    def __init__(self, task_id: str, current: str, target: str):
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(f"Task {task_id}: invalid transition {current} -> {target}")


class NoEligibleWorker(OrchestrationError):
    """No worker can take the task and a specialist could not be spawned."""

    def __init__(self, task_id: str, reason: str = ""):
        self.task_id = task_id
        super().__init__(f"No eligible worker for task {task_id}" + (f": {reason}" if reason else ""))


class BackendUnavailable(OrchestrationError):
    """The reasoning backend reported an error or the transport failed."""


class BackendTimeout(BackendUnavailable):
    """A reasoning backend call exceeded its timeout."""

    def __init__(self, timeout_seconds: float, purpose: Optional[str] = None):
        self.timeout_seconds = timeout_seconds
        self.purpose = purpose
        label = f" ({purpose})" if purpose else ""
        super().__init__(f"Backend call{label} timed out after {timeout_seconds}s")


class UnparseableResult(OrchestrationError):
    """A backend reply could not be parsed into the expected structure."""

    def __init__(self, message: str, raw: str = ""):
        self.raw = raw
        super().__init__(message)


class RecoveryExhausted(OrchestrationError):
    """Every recovery strategy for a task has been tried."""

    def __init__(self, task_id: str, attempts: int):
        self.task_id = task_id
        self.attempts = attempts
        super().__init__(f"Recovery exhausted for task {task_id} after {attempts} attempt(s)")


class UnknownRun(OrchestrationError):
    """A run id is not known to the engine."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Unknown run: {run_id}")


class KnowledgeStoreUnavailable(OrchestrationError):
    """The knowledge store could not be read or written."""
