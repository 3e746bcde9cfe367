"""
Engine Data Model
=================
Tasks, workers, issues, artifacts, and decisions shared by every engine
component.

Tasks are mutated only through the TaskGraph (status, assignment) and by the
execution and recovery components (artifacts, issues, notes). They are never
deleted; terminal tasks are retained for metrics and audit.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class TaskCategory(Enum):
    """Fixed set of task categories."""
    ANALYSIS = "analysis"
    CODING = "coding"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    RESEARCH = "research"
    INTEGRATION = "integration"
    DEPLOYMENT = "deployment"
    DEBUGGING = "debugging"


class TaskStatus(Enum):
    """States of the per-task execution state machine."""
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


# Statuses in which a task holds a worker
HELD_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS, TaskStatus.REVIEW})


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Knowledge-store importance per issue severity
SEVERITY_IMPORTANCE: Dict[Severity, int] = {
    Severity.CRITICAL: 10,
    Severity.HIGH: 8,
    Severity.MEDIUM: 6,
    Severity.LOW: 4,
}


def lower_severity(severity: Severity) -> Severity:
    """Return the next lower severity (LOW stays LOW)."""
    order = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]
    return order[max(0, order.index(severity) - 1)]


class IssueCategory(Enum):
    ERROR = "error"
    DEPENDENCY = "dependency"
    DESIGN = "design"
    PERFORMANCE = "performance"
    SECURITY = "security"
    EXECUTION_FAILURE = "execution_failure"


class WorkerKind(Enum):
    PRIMARY = "primary"
    SPECIALIST = "specialist"


class WorkerStatus(Enum):
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"


class ArtifactKind(Enum):
    CODE = "code"
    DOCUMENTATION = "documentation"
    TEST = "test"
    CONFIG = "config"
    DESIGN = "design"
    ANALYSIS = "analysis"
    TEXT = "text"


@dataclass
class Artifact:
    """A typed payload produced by a task, with provenance."""
    kind: ArtifactKind
    name: str
    content: str
    created_by: str
    version: int = 1
    id: str = field(default_factory=lambda: new_id("art"))
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "content": self.content,
            "version": self.version,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Issue:
    """A structured failure record attached to a task."""
    severity: Severity
    category: IssueCategory
    description: str
    context: str
    reporter: str
    id: str = field(default_factory=lambda: new_id("iss"))
    reported_at: datetime = field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None
    durable_lesson: bool = False

    def resolve(self, resolution: str) -> None:
        self.resolution = resolution
        self.resolved_at = utc_now()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "severity": self.severity.value,
            "category": self.category.value,
            "description": self.description,
            "context": self.context,
            "reporter": self.reporter,
            "reported_at": self.reported_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution": self.resolution,
            "durable_lesson": self.durable_lesson,
        }


@dataclass
class Decision:
    """An audited autonomous choice."""
    context: str
    chosen: str
    alternatives: List[str]
    confidence: int
    reversible: bool
    reasoning: str = ""
    impact: str = "medium"
    task_id: Optional[str] = None
    id: str = field(default_factory=lambda: new_id("dec"))
    timestamp: datetime = field(default_factory=utc_now)
    outcome: Optional[str] = None  # success | failure | partial
    degraded: bool = False         # True when the safe default replaced a backend answer

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "context": self.context,
            "chosen": self.chosen,
            "alternatives": list(self.alternatives),
            "confidence": self.confidence,
            "reversible": self.reversible,
            "reasoning": self.reasoning,
            "impact": self.impact,
            "timestamp": self.timestamp.isoformat(),
            "outcome": self.outcome,
            "degraded": self.degraded,
        }


@dataclass
class Task:
    """A unit of work in the dependency graph."""
    id: str
    title: str
    description: str = ""
    category: TaskCategory = TaskCategory.ANALYSIS
    priority: int = 5
    complexity: int = 5
    estimated_duration: float = 1.0  # hours
    required_skills: Set[str] = field(default_factory=set)
    dependencies: List[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    assigned_worker: Optional[str] = None
    artifacts: List[Artifact] = field(default_factory=list)
    issues: List[Issue] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    excluded_workers: Set[str] = field(default_factory=set)
    blocked_reason: Optional[str] = None
    parent_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if not self.id:
            raise ValueError("Task id must be a non-empty string")
        for name in ("priority", "complexity"):
            value = getattr(self, name)
            if not isinstance(value, int) or not 1 <= value <= 10:
                raise ValueError(f"Task {self.id}: {name} must be an integer in 1-10, got {value!r}")
        if self.estimated_duration < 0:
            raise ValueError(f"Task {self.id}: estimated_duration must be >= 0")
        if isinstance(self.category, str):
            self.category = TaskCategory(self.category)
        self.required_skills = set(self.required_skills)
        # Ordered, de-duplicated
        self.dependencies = list(dict.fromkeys(self.dependencies))

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    def text(self) -> str:
        """Lower-cased title and description used for keyword matching."""
        return f"{self.title} {self.description}".lower()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category.value,
            "priority": self.priority,
            "complexity": self.complexity,
            "estimated_duration": self.estimated_duration,
            "required_skills": sorted(self.required_skills),
            "dependencies": list(self.dependencies),
            "status": self.status.value,
            "assigned_worker": self.assigned_worker,
            "artifacts": [a.to_dict() for a in self.artifacts],
            "issues": [i.to_dict() for i in self.issues],
            "notes": list(self.notes),
            "blocked_reason": self.blocked_reason,
            "parent_id": self.parent_id,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Build a pending task from a submission dict (planner output or graph file)."""
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or data["id"]),
            description=str(data.get("description") or ""),
            category=TaskCategory(data.get("category") or data.get("type") or "analysis"),
            priority=int(data.get("priority", 5)),
            complexity=int(data.get("complexity", 5)),
            estimated_duration=float(data.get("estimated_duration", data.get("estimatedHours", 1.0))),
            required_skills=set(data.get("required_skills") or data.get("requiredSkills") or []),
            dependencies=[str(d) for d in (data.get("dependencies") or [])],
        )


@dataclass
class WorkerPerformance:
    """Running performance statistics for a worker."""
    tasks_completed: int = 0
    tasks_failed: int = 0
    success_rate: float = 0.0  # fraction 0-1
    average_quality: float = 0.0
    average_speed: float = 0.0  # seconds per task

    def record(self, succeeded: bool, elapsed_seconds: float = 0.0, quality: Optional[float] = None) -> None:
        if succeeded:
            self.tasks_completed += 1
        else:
            self.tasks_failed += 1
        finished = self.tasks_completed + self.tasks_failed
        self.success_rate = self.tasks_completed / finished
        self.average_speed += (elapsed_seconds - self.average_speed) / finished
        if quality is not None and succeeded:
            self.average_quality += (quality - self.average_quality) / self.tasks_completed

    def to_dict(self) -> dict:
        return {
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "success_rate": self.success_rate,
            "average_quality": self.average_quality,
            "average_speed": self.average_speed,
        }


@dataclass
class WorkerProfile:
    """A specialized executor."""
    id: str
    name: str
    kind: WorkerKind = WorkerKind.SPECIALIST
    specializations: Set[str] = field(default_factory=set)
    capabilities: Set[str] = field(default_factory=set)
    current_load: int = 0
    max_concurrent_tasks: int = 3
    performance: WorkerPerformance = field(default_factory=WorkerPerformance)
    status: WorkerStatus = WorkerStatus.IDLE
    current_tasks: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    last_active: datetime = field(default_factory=utc_now)
    sequence: int = 0  # registration order, set by the registry

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "specializations": sorted(self.specializations),
            "capabilities": sorted(self.capabilities),
            "current_load": self.current_load,
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "performance": self.performance.to_dict(),
            "status": self.status.value,
            "current_tasks": list(self.current_tasks),
            "created_at": self.created_at.isoformat(),
        }
