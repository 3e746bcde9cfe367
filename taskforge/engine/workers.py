"""
Worker Registry & Assignment Scorer
===================================
Holds worker profiles, their specializations and live load, and picks the
best worker for a ready task.

Scoring (deterministic):
1. +100 when one of the worker's specializations maps, through
   SPECIALIZATION_KEYWORDS, to a keyword found in the task's title and
   description (case-insensitive substring match).
2. + success_rate * 20, where success_rate is 0.5 for a worker that has not
   completed any task yet.
3. - tasks_completed * 2, a fairness damper favouring workers with less
   history. This is not a live-load penalty.

The best idle candidate wins. Ties go to the earliest created worker, then
to registration order for workers created at the same instant.
When no candidate matches on specialization a specialist is spawned for the
task, its specialization taken from the first SPAWN_BUCKETS entry whose
keywords appear in the task text.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from loguru import logger

from .errors import NoEligibleWorker
from .models import Task, WorkerKind, WorkerProfile, WorkerStatus, new_id, utc_now


SPECIALIZATION_MATCH_BONUS = 100.0
PERFORMANCE_WEIGHT = 20.0
HISTORY_PENALTY = 2.0
DEFAULT_SUCCESS_RATE = 0.5

# Specialization -> keywords that signal a task fits it
SPECIALIZATION_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "frontend": ("ui", "interface", "component", "react", "vue", "angular"),
    "backend": ("api", "server", "database", "endpoint", "service"),
    "fullstack": ("application", "app", "full", "complete", "integration"),
    "devops": ("deploy", "build", "ci/cd", "docker", "kubernetes"),
    "testing": ("test", "spec", "unit", "integration", "e2e"),
    "documentation": ("doc", "readme", "guide", "manual", "help"),
}

# Ordered buckets used to pick a spawned specialist's specialization
SPAWN_BUCKETS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("frontend", ("ui", "component", "frontend")),
    ("backend", ("api", "backend", "server")),
    ("testing", ("test", "spec")),
    ("devops", ("deploy", "build")),
    ("documentation", ("doc", "readme")),
)
DEFAULT_SPECIALIZATION = "fullstack"

SPECIALIZATION_CAPABILITIES: Dict[str, Tuple[str, ...]] = {
    "frontend": ("ui_implementation", "component_design", "accessibility_review"),
    "backend": ("api_design", "data_modeling", "service_integration"),
    "fullstack": ("code_generation", "debugging", "refactoring", "integration"),
    "devops": ("build_configuration", "deployment_automation", "infrastructure_review"),
    "testing": ("test_generation", "test_execution", "coverage_analysis", "bug_detection"),
    "documentation": ("code_documentation", "api_documentation", "user_guides", "technical_writing"),
    "coding": ("code_generation", "debugging", "refactoring", "optimization"),
    "research": ("technology_research", "best_practices", "solution_analysis"),
}

PRIMARY_SPECIALIZATIONS = ("planning", "coordination", "decision_making", "memory_management")
PRIMARY_CAPABILITIES = (
    "project_analysis", "task_decomposition", "agent_management",
    "memory_persistence", "error_analysis", "autonomous_decision_making",
)


def specialization_matches(worker: WorkerProfile, task: Task) -> bool:
    """True when a worker specialization keyword appears in the task text."""
    text = task.text()
    for spec in worker.specializations:
        keywords = SPECIALIZATION_KEYWORDS.get(spec.lower(), ())
        if any(keyword in text for keyword in keywords):
            return True
    return False


def specialization_for(task: Task) -> str:
    """Specialization for a specialist spawned to handle ``task``."""
    text = task.text()
    for name, keywords in SPAWN_BUCKETS:
        if any(keyword in text for keyword in keywords):
            return name
    return DEFAULT_SPECIALIZATION


def capabilities_for(specialization: str) -> Set[str]:
    return set(SPECIALIZATION_CAPABILITIES.get(specialization, (specialization,)))


@dataclass(frozen=True)
class Assignment:
    """Outcome of an assignment request.

    ``spawned`` is True when a new specialist was created for the task.
    """
    worker: WorkerProfile
    score: float
    spawned: bool = False


class WorkerRegistry:
    """Owned registry of worker profiles and their load.

    Args:
        max_workers: Optional cap on registered workers. ``None`` means no
            cap, so a specialist is spawned whenever nothing idle matches. At
            the cap the best idle candidate is used instead.
    """

    def __init__(self, max_workers: Optional[int] = None):
        self._workers: Dict[str, WorkerProfile] = {}
        self._sequence = 0
        self.max_workers = max_workers

    # ── Registration ──────────────────────────────────────────

    def register(self, profile: WorkerProfile) -> WorkerProfile:
        if profile.id in self._workers:
            raise ValueError(f"Duplicate worker id: {profile.id}")
        profile.sequence = self._sequence
        self._sequence += 1
        self._workers[profile.id] = profile
        logger.info(
            f"Registered {profile.kind.value} worker {profile.name} "
            f"(specializations={sorted(profile.specializations)})"
        )
        return profile

    def register_primary(self, max_concurrent_tasks: int = 50) -> WorkerProfile:
        """Create the primary worker. Called once at engine start."""
        return self.register(WorkerProfile(
            id=new_id("worker"),
            name="primary-director",
            kind=WorkerKind.PRIMARY,
            specializations=set(PRIMARY_SPECIALIZATIONS),
            capabilities=set(PRIMARY_CAPABILITIES),
            max_concurrent_tasks=max_concurrent_tasks,
        ))

    def spawn_specialist(self, specialization: str) -> WorkerProfile:
        worker_id = new_id("worker")
        return self.register(WorkerProfile(
            id=worker_id,
            name=f"{specialization}-specialist-{worker_id[-4:]}",
            kind=WorkerKind.SPECIALIST,
            specializations={specialization},
            capabilities=capabilities_for(specialization),
        ))

    # ── Queries ───────────────────────────────────────────────

    def get(self, worker_id: str) -> WorkerProfile:
        worker = self._workers.get(worker_id)
        if worker is None:
            raise KeyError(f"Unknown worker: {worker_id}")
        return worker

    def workers(self) -> List[WorkerProfile]:
        return sorted(self._workers.values(), key=lambda w: w.sequence)

    def idle_candidates(self, exclude: Iterable[str] = ()) -> List[WorkerProfile]:
        """Idle workers with spare capacity, in registration order."""
        excluded = set(exclude)
        return [
            w for w in self.workers()
            if w.status == WorkerStatus.IDLE
            and w.current_load < w.max_concurrent_tasks
            and w.id not in excluded
        ]

    @staticmethod
    def score(worker: WorkerProfile, task: Task) -> float:
        perf = worker.performance
        score = SPECIALIZATION_MATCH_BONUS if specialization_matches(worker, task) else 0.0
        success_rate = perf.success_rate if perf.tasks_completed > 0 else DEFAULT_SUCCESS_RATE
        score += success_rate * PERFORMANCE_WEIGHT
        score -= perf.tasks_completed * HISTORY_PENALTY
        return score

    def rank(self, task: Task, candidates: Sequence[WorkerProfile]) -> List[Tuple[float, WorkerProfile]]:
        """Candidates with scores, best first, earliest created on ties."""
        scored = [(self.score(w, task), w) for w in candidates]
        scored.sort(key=lambda pair: (-pair[0], pair[1].created_at, pair[1].sequence))
        return scored

    # ── Assignment ────────────────────────────────────────────

    def assign(self, task: Task) -> Assignment:
        """Pick (or spawn) the best worker for ``task`` and mark it busy.

        The task's excluded_workers set is consumed by this call, so an
        exclusion applies to one assignment only.

        Raises:
            NoEligibleWorker: when no candidate is idle and the worker cap
                prevents spawning.
        """
        excluded = set(task.excluded_workers)
        task.excluded_workers.clear()
        candidates = self.idle_candidates(exclude=excluded)
        ranked = self.rank(task, candidates)

        matching = [(s, w) for s, w in ranked if specialization_matches(w, task)]
        if matching:
            score, worker = matching[0]
            self._occupy(worker, task.id)
            return Assignment(worker=worker, score=score)

        at_cap = self.max_workers is not None and len(self._workers) >= self.max_workers
        if not at_cap:
            worker = self.spawn_specialist(specialization_for(task))
            self._occupy(worker, task.id)
            return Assignment(worker=worker, score=self.score(worker, task), spawned=True)

        if ranked:
            score, worker = ranked[0]
            logger.warning(
                f"Worker cap ({self.max_workers}) reached; assigning task {task.id} "
                f"to non-matching worker {worker.name}"
            )
            self._occupy(worker, task.id)
            return Assignment(worker=worker, score=score)

        # Restore the exclusion so it still applies when the task is retried
        task.excluded_workers.update(excluded)
        raise NoEligibleWorker(task.id, f"worker cap {self.max_workers} reached and no idle worker")

    def _occupy(self, worker: WorkerProfile, task_id: str) -> None:
        worker.status = WorkerStatus.BUSY
        worker.current_tasks.append(task_id)
        worker.current_load += 1
        worker.last_active = utc_now()

    def release(
        self,
        worker_id: str,
        task_id: str,
        *,
        succeeded: Optional[bool] = None,
        elapsed_seconds: float = 0.0,
        quality: Optional[float] = None,
    ) -> WorkerProfile:
        """Drop a task from a worker and update its statistics.

        ``succeeded=None`` releases without recording an outcome (used when
        an execution is interrupted). A worker in error keeps that status.
        """
        worker = self.get(worker_id)
        if task_id in worker.current_tasks:
            worker.current_tasks.remove(task_id)
            worker.current_load = max(0, worker.current_load - 1)
        if succeeded is not None:
            worker.performance.record(succeeded, elapsed_seconds, quality)
        worker.last_active = utc_now()
        if worker.status != WorkerStatus.ERROR and not worker.current_tasks:
            worker.status = WorkerStatus.IDLE
        return worker

    def mark_error(self, worker_id: str) -> None:
        """Exclude a worker from assignment until reset()."""
        worker = self.get(worker_id)
        worker.status = WorkerStatus.ERROR
        logger.warning(f"Worker {worker.name} marked as error")

    def reset(self, worker_id: str) -> None:
        worker = self.get(worker_id)
        worker.status = WorkerStatus.BUSY if worker.current_tasks else WorkerStatus.IDLE
        logger.info(f"Worker {worker.name} reset to {worker.status.value}")
