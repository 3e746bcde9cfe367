"""
Task Execution
==============
Drives one assigned task through the execution state machine:

    assigned -> in_progress -> [review ->] completed
                            -> failed

A reply counts as success when it says ``success: true`` or when it carries
no structured result at all (the raw text becomes the artifact). Explicit
``success: false``, a backend-reported error, a timeout, a transport failure,
or an unexpected exception fails the task with an Issue; the caller hands
that Issue to the recovery engine.

If the surrounding asyncio task is cancelled mid-call the task returns to
pending and its worker is released without recording an outcome.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from loguru import logger

from taskforge.config import GENERATION
from taskforge.llm.backend import GenerationOptions
from taskforge.llm.gateway import BackendGateway

from .errors import BackendTimeout, BackendUnavailable
from .events import EventKind
from .graph import TaskGraph
from .models import (
    Issue,
    IssueCategory,
    Severity,
    Task,
    TaskStatus,
    WorkerProfile,
)
from .prompts import build_execution_prompt, build_review_prompt
from .results import interpret_execution_reply, interpret_review_reply
from .workers import WorkerRegistry


Emit = Callable[..., Any]


@dataclass
class ExecutionReport:
    """What happened to one execution attempt."""
    task_id: str
    worker_id: str
    succeeded: bool
    issue: Optional[Issue] = None
    newly_ready: List[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0


def dependency_summary(task: Task) -> str:
    """One-line summary of a completed task for downstream prompts."""
    detail = ""
    if task.artifacts and task.artifacts[-1].content.strip():
        detail = task.artifacts[-1].content.strip().splitlines()[0][:200]
    elif task.notes:
        detail = task.notes[-1][:200]
    return f"{task.title}" + (f": {detail}" if detail else "")


class TaskExecutor:
    """Executes assigned tasks against the reasoning backend.

    Args:
        graph: Task graph of the run.
        registry: Worker registry of the engine.
        gateway: Backend gateway (bounded, timed).
        emit: ``emit(kind, **payload)`` callable bound to the run.
        enable_review: Route successful results through a review step.
    """

    def __init__(
        self,
        graph: TaskGraph,
        registry: WorkerRegistry,
        gateway: BackendGateway,
        emit: Emit,
        enable_review: bool = False,
    ):
        self.graph = graph
        self.registry = registry
        self.gateway = gateway
        self.emit = emit
        self.enable_review = enable_review

    async def execute(self, task_id: str) -> ExecutionReport:
        task = self.graph.get(task_id)
        if task.status != TaskStatus.ASSIGNED or task.assigned_worker is None:
            raise ValueError(f"Task {task_id} is not assigned (status={task.status.value})")
        worker = self.registry.get(task.assigned_worker)

        self.graph.set_status(task_id, TaskStatus.IN_PROGRESS)
        self.emit(EventKind.TASK_STARTED, task_id=task_id, worker_id=worker.id)
        started = time.monotonic()

        try:
            return await self._run(task, worker, started)
        except asyncio.CancelledError:
            self._interrupt(task, worker)
            raise
        except Exception as e:
            logger.exception(f"Unexpected error executing task {task_id}: {e}")
            issue = Issue(
                severity=Severity.CRITICAL,
                category=IssueCategory.EXECUTION_FAILURE,
                description=f"Unexpected {type(e).__name__}: {e}",
                context=self._context(task, worker),
                reporter=worker.id,
            )
            return self._fail(task, worker, issue, started, worker_fault=True)

    async def _run(self, task: Task, worker: WorkerProfile, started: float) -> ExecutionReport:
        deps = [dependency_summary(self.graph.get(d)) for d in task.dependencies]
        prompt = build_execution_prompt(task, worker, deps)
        options = GenerationOptions(
            max_tokens=GENERATION.EXECUTION_MAX_TOKENS,
            temperature=GENERATION.EXECUTION_TEMPERATURE,
        )

        try:
            result = await self.gateway.call(prompt, options, purpose="execution")
        except BackendUnavailable as e:
            label = "timed out" if isinstance(e, BackendTimeout) else "unavailable"
            issue = Issue(
                severity=Severity.HIGH,
                category=IssueCategory.EXECUTION_FAILURE,
                description=f"Backend {label}: {e}",
                context=self._context(task, worker),
                reporter=worker.id,
            )
            return self._fail(task, worker, issue, started)

        outcome = interpret_execution_reply(result.content, task_id=task.id, worker_id=worker.id)
        task.notes.extend(outcome.notes)
        if not outcome.success:
            issue = Issue(
                severity=Severity.HIGH,
                category=IssueCategory.ERROR,
                description=outcome.error or "Worker reported failure",
                context=self._context(task, worker),
                reporter=worker.id,
            )
            return self._fail(task, worker, issue, started)

        quality = outcome.quality
        if self.enable_review:
            self.graph.set_status(task.id, TaskStatus.REVIEW)
            self.emit(EventKind.TASK_REVIEW, task_id=task.id, worker_id=worker.id)
            verdict_quality, rejection = await self._review(task, outcome.output or result.content)
            if verdict_quality is not None:
                quality = verdict_quality
            if rejection is not None:
                issue = Issue(
                    severity=Severity.MEDIUM,
                    category=IssueCategory.DESIGN,
                    description=f"Review rejected result: {rejection}",
                    context=self._context(task, worker),
                    reporter=worker.id,
                )
                return self._fail(task, worker, issue, started)

        task.artifacts.extend(outcome.artifacts)
        return self._complete(task, worker, started, quality)

    async def _review(self, task: Task, output: str):
        """Returns (quality, rejection feedback or None)."""
        options = GenerationOptions(
            max_tokens=GENERATION.CLASSIFICATION_MAX_TOKENS,
            temperature=GENERATION.CLASSIFICATION_TEMPERATURE,
        )
        try:
            result = await self.gateway.call(build_review_prompt(task, output), options, purpose="review")
        except BackendUnavailable as e:
            task.notes.append(f"Review skipped: {e}")
            logger.warning(f"Review of task {task.id} skipped: {e}")
            return None, None
        verdict = interpret_review_reply(result.content)
        if verdict.approved:
            return verdict.quality, None
        return verdict.quality, verdict.feedback or "no feedback given"

    # ── Outcomes ──────────────────────────────────────────────

    def _complete(self, task: Task, worker: WorkerProfile, started: float, quality: Optional[float]) -> ExecutionReport:
        elapsed = time.monotonic() - started
        newly_ready = self.graph.set_status(task.id, TaskStatus.COMPLETED)
        self.registry.release(worker.id, task.id, succeeded=True, elapsed_seconds=elapsed, quality=quality)
        logger.info(f"Task {task.id} completed by {worker.name} in {elapsed:.2f}s")
        self.emit(
            EventKind.TASK_COMPLETED,
            task_id=task.id,
            worker_id=worker.id,
            artifacts=len(task.artifacts),
        )
        for ready_id in newly_ready:
            self.emit(EventKind.TASK_UNBLOCKED, task_id=ready_id, unblocked_by=task.id)
        return ExecutionReport(
            task_id=task.id,
            worker_id=worker.id,
            succeeded=True,
            newly_ready=newly_ready,
            elapsed_seconds=elapsed,
        )

    def _fail(
        self,
        task: Task,
        worker: WorkerProfile,
        issue: Issue,
        started: float,
        worker_fault: bool = False,
    ) -> ExecutionReport:
        elapsed = time.monotonic() - started
        task.issues.append(issue)
        self.graph.set_status(task.id, TaskStatus.FAILED)
        if worker_fault:
            self.registry.mark_error(worker.id)
        self.registry.release(worker.id, task.id, succeeded=False, elapsed_seconds=elapsed)
        logger.warning(f"Task {task.id} failed on {worker.name}: {issue.description}")
        self.emit(EventKind.ISSUE_REPORTED, task_id=task.id, issue=issue.to_dict())
        self.emit(EventKind.TASK_FAILED, task_id=task.id, worker_id=worker.id, reason=issue.description)
        return ExecutionReport(
            task_id=task.id,
            worker_id=worker.id,
            succeeded=False,
            issue=issue,
            elapsed_seconds=elapsed,
        )

    def _interrupt(self, task: Task, worker: WorkerProfile) -> None:
        if task.status in (TaskStatus.IN_PROGRESS, TaskStatus.REVIEW, TaskStatus.ASSIGNED):
            self.graph.set_status(task.id, TaskStatus.PENDING)
        self.registry.release(worker.id, task.id)
        task.notes.append("Execution interrupted by cancellation")
        logger.info(f"Task {task.id} interrupted; returned to pending")

    @staticmethod
    def _context(task: Task, worker: WorkerProfile) -> str:
        return f"Task: {task.title}, Worker: {worker.name}"
