"""
Run Metrics
===========
Aggregate progress metrics recomputed on every orchestration tick.

- progress: completed / total tasks, in percent
- phase: label derived from progress thresholds
- velocity: completed tasks per elapsed hour (elapsed floored at 0.1 h)
- quality score: completed / (completed + failed) in percent, 100 when
  nothing has been processed yet
- autonomy level: 100 * (1 - escalations / decisions), 100 without decisions
- critical_path_estimate: the longest 30% of tasks by estimated duration.
  This is a cheap proxy kept for parity, not a graph computation.
- critical_path: the true longest duration-weighted dependency chain
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .graph import TaskGraph
from .models import Task, TaskStatus


PHASE_THRESHOLDS: Tuple[Tuple[float, str], ...] = (
    (25.0, "Analysis & Planning"),
    (70.0, "Implementation"),
    (90.0, "Quality Assurance"),
    (100.0, "Finalization"),
)
COMPLETED_PHASE = "Completed"

CRITICAL_PATH_SHARE = 0.3
MIN_ELAPSED_HOURS = 0.1
VELOCITY_TREND_LENGTH = 10


def phase_label(progress: float) -> str:
    for upper, label in PHASE_THRESHOLDS:
        if progress < upper:
            return label
    return COMPLETED_PHASE


def progress_percent(graph: TaskGraph) -> float:
    total = len(graph)
    if total == 0:
        return 100.0
    completed = sum(1 for t in graph.tasks() if t.status == TaskStatus.COMPLETED)
    return completed / total * 100.0


def velocity(completed: int, elapsed_seconds: float) -> float:
    hours = max(elapsed_seconds / 3600.0, MIN_ELAPSED_HOURS)
    return completed / hours


def quality_score(completed: int, failed: int) -> float:
    processed = completed + failed
    if processed == 0:
        return 100.0
    return completed / processed * 100.0


def autonomy_level(decisions: int, escalations: int) -> float:
    if decisions <= 0:
        return 100.0
    return max(0.0, 100.0 * (1 - escalations / decisions))


def critical_path_estimate(tasks: Sequence[Task]) -> List[str]:
    """Ids of the top 30% of tasks by estimated duration (longest first)."""
    if not tasks:
        return []
    count = math.ceil(len(tasks) * CRITICAL_PATH_SHARE)
    ordered = sorted(enumerate(tasks), key=lambda pair: (-pair[1].estimated_duration, pair[0]))
    return [task.id for _, task in ordered[:count]]


def critical_path(graph: TaskGraph) -> Tuple[List[str], float]:
    """Longest duration-weighted dependency chain.

    Returns:
        (task ids from first prerequisite to last dependent, total hours)
    """
    tasks = graph.tasks()
    if not tasks:
        return [], 0.0

    best: Dict[str, float] = {}
    via: Dict[str, Optional[str]] = {}

    def visit(task_id: str) -> float:
        # Iterative post-order keeps deep chains off the recursion limit
        stack = [(task_id, False)]
        while stack:
            current, expanded = stack.pop()
            if current in best:
                continue
            task = graph.get(current)
            pending = [d for d in task.dependencies if d not in best]
            if pending and not expanded:
                stack.append((current, True))
                stack.extend((d, False) for d in pending)
                continue
            longest_dep, longest = None, 0.0
            for dep in task.dependencies:
                if best[dep] > longest:
                    longest_dep, longest = dep, best[dep]
            best[current] = longest + task.estimated_duration
            via[current] = longest_dep
        return best[task_id]

    end, total = None, -1.0
    for task in tasks:
        length = visit(task.id)
        if length > total:
            end, total = task.id, length

    path: List[str] = []
    node = end
    while node is not None:
        path.append(node)
        node = via[node]
    path.reverse()
    return path, total


@dataclass
class RunMetrics:
    progress: float
    phase: str
    velocity: float
    quality_score: float
    autonomy_level: float
    critical_path_estimate: List[str]
    critical_path: List[str]
    critical_path_hours: float
    counts: Dict[str, int]
    decisions: int = 0
    escalations: int = 0
    tokens: int = 0
    cost: float = 0.0
    velocity_trend: List[float] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "progress": round(self.progress, 2),
            "phase": self.phase,
            "velocity": round(self.velocity, 3),
            "quality_score": round(self.quality_score, 2),
            "autonomy_level": round(self.autonomy_level, 2),
            "critical_path_estimate": list(self.critical_path_estimate),
            "critical_path": list(self.critical_path),
            "critical_path_hours": self.critical_path_hours,
            "counts": dict(self.counts),
            "decisions": self.decisions,
            "escalations": self.escalations,
            "tokens": self.tokens,
            "cost": round(self.cost, 6),
            "velocity_trend": [round(v, 3) for v in self.velocity_trend],
        }


def compute_metrics(
    graph: TaskGraph,
    elapsed_seconds: float,
    decisions: int = 0,
    escalations: int = 0,
    tokens: int = 0,
    cost: float = 0.0,
    previous_trend: Sequence[float] = (),
) -> RunMetrics:
    counts = graph.counts()
    completed = counts[TaskStatus.COMPLETED.value]
    failed = counts[TaskStatus.FAILED.value]
    progress = progress_percent(graph)
    current_velocity = velocity(completed, elapsed_seconds)
    path, hours = critical_path(graph)
    trend = (list(previous_trend) + [current_velocity])[-VELOCITY_TREND_LENGTH:]
    return RunMetrics(
        progress=progress,
        phase=phase_label(progress),
        velocity=current_velocity,
        quality_score=quality_score(completed, failed),
        autonomy_level=autonomy_level(decisions, escalations),
        critical_path_estimate=critical_path_estimate(graph.tasks()),
        critical_path=path,
        critical_path_hours=hours,
        counts=counts,
        decisions=decisions,
        escalations=escalations,
        tokens=tokens,
        cost=cost,
        velocity_trend=trend,
    )
