"""
Failure & Recovery Engine
=========================
Handles every Issue raised by a failed execution:

1. Durability classification: ask the backend whether the failure is a
   lesson worth keeping. Only a well-formed ``{"shouldCommit": true}``
   reply counts; durable lessons go to the knowledge store with
   importance scaled by severity and tags [category, "error_pattern"].
2. Strategy selection through DecisionMaker over the strategies not yet
   tried for the task.
3. Strategy execution:
   - retry_with_different_agent: back to pending, failed worker excluded
     from the next assignment of this task only
   - decompose_task: two or more chained sub-tasks inherit the original's
     dependencies; the original waits in blocked ("awaiting_subtasks") and
     completes when every sub-task completes, or fails permanently when one
     of them does
   - escalate_to_human: the task stays failed permanently and its
     dependents are blocked
   - skip_temporarily: blocked ("skipped") for a number of ticks, then
     pending again
   - modify_requirements: description and skills rewritten from a backend
     suggestion, then pending; no usable suggestion escalates instead

Backend problems during classification or selection never propagate: they
degrade to "not durable" and escalate_to_human, and are recorded on the task
as a new Issue one severity level lower.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from loguru import logger

from taskforge.config import GENERATION, ORCHESTRATION
from taskforge.knowledge.store import KnowledgeEntry, KnowledgeStore
from taskforge.llm.backend import GenerationOptions
from taskforge.llm.gateway import BackendGateway
from taskforge.utils.schema_validation import Schema

from .decisions import DecisionMaker
from .errors import BackendUnavailable, KnowledgeStoreUnavailable, RecoveryExhausted
from .events import EventKind
from .graph import TaskGraph
from .models import (
    SEVERITY_IMPORTANCE,
    Decision,
    Issue,
    IssueCategory,
    Task,
    TaskStatus,
    WorkerProfile,
    lower_severity,
)
from .prompts import build_decomposition_prompt, build_durability_prompt, build_requirements_prompt
from .results import Parsed, parse_reply
from .workers import WorkerRegistry


RETRY = "retry_with_different_agent"
DECOMPOSE = "decompose_task"
ESCALATE = "escalate_to_human"
SKIP = "skip_temporarily"
MODIFY = "modify_requirements"

STRATEGIES = (RETRY, DECOMPOSE, ESCALATE, SKIP, MODIFY)

AWAITING_SUBTASKS = "awaiting_subtasks"
SKIPPED = "skipped"

# Sub-tasks of sub-tasks of ... are not split further past this depth
MAX_DECOMPOSITION_DEPTH = 2

DURABILITY_SCHEMA = Schema.DURABILITY
DECOMPOSITION_SCHEMA = Schema.DECOMPOSITION
REQUIREMENT_SCHEMA = Schema.REQUIREMENT_CHANGE

Emit = Callable[..., Any]


def _short_hash(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:8]


def subtask_id(parent_id: str, index: int, title: str) -> str:
    """Deterministic sub-task id, stable across runs for the same split."""
    return f"{parent_id}.ST{index:02d}_{_short_hash(f'{parent_id}:{index}:{title.strip()}')}"


@dataclass
class DurabilityVerdict:
    durable: bool
    reasoning: str = ""
    pattern: str = ""
    tags: List[str] = field(default_factory=list)
    degraded: bool = False


@dataclass
class RecoveryOutcome:
    """What the recovery engine did for one Issue."""
    task_id: str
    strategy: str
    decision: Optional[Decision]
    durable: bool = False
    exhausted: bool = False
    blocked: List[str] = field(default_factory=list)
    subtasks: List[str] = field(default_factory=list)


class RecoveryEngine:
    """Classifies failures and applies recovery strategies.

    Args:
        graph: Task graph of the run.
        registry: Worker registry (for failure context).
        gateway: Backend gateway.
        decisions: Decision maker whose log belongs to the run.
        knowledge: Optional knowledge store. Without one, durability
            classification is skipped.
        emit: ``emit(kind, **payload)`` callable bound to the run.
        max_attempts: Recovery strategies applied per task before it is
            escalated as exhausted.
        skip_cooldown_ticks: Ticks a skipped task waits in blocked.
    """

    def __init__(
        self,
        graph: TaskGraph,
        registry: WorkerRegistry,
        gateway: BackendGateway,
        decisions: DecisionMaker,
        knowledge: Optional[KnowledgeStore],
        emit: Emit,
        max_attempts: int = ORCHESTRATION.MAX_RECOVERY_ATTEMPTS,
        skip_cooldown_ticks: int = ORCHESTRATION.SKIP_COOLDOWN_TICKS,
    ):
        self.graph = graph
        self.registry = registry
        self.gateway = gateway
        self.decisions = decisions
        self.knowledge = knowledge
        self.emit = emit
        self.max_attempts = max_attempts
        self.skip_cooldown_ticks = skip_cooldown_ticks

        self._attempts: Dict[str, int] = {}
        self._tried: Dict[str, Set[str]] = {}
        self._last_decision: Dict[str, str] = {}
        self._skipped: Dict[str, int] = {}
        self._subtasks: Dict[str, List[str]] = {}
        self.escalated: List[str] = []

    # ── Entry point ───────────────────────────────────────────

    async def handle_failure(self, task_id: str, issue: Issue) -> RecoveryOutcome:
        task = self.graph.get(task_id)
        previous = self._last_decision.pop(task_id, None)
        if previous is not None:
            self.decisions.log.set_outcome(previous, "failure")

        verdict = await self.classify(task, issue)
        if verdict.durable:
            self._commit_lesson(task, issue, verdict)

        try:
            options = self._remaining_options(task)
        except RecoveryExhausted as e:
            logger.warning(str(e))
            decision = self.decisions.log.record(Decision(
                context=f"Task '{task.title}' failed: {issue.description}",
                chosen=ESCALATE,
                alternatives=[],
                confidence=100,
                reversible=False,
                reasoning=str(e),
                task_id=task_id,
            ))
            self.emit(EventKind.DECISION_MADE, task_id=task_id, decision=decision.to_dict())
            blocked = self._escalate(task, reason="recovery_exhausted")
            return RecoveryOutcome(task_id, ESCALATE, decision, verdict.durable, exhausted=True, blocked=blocked)

        decision = await self.decisions.decide(
            f"Task '{task.title}' ({task.category.value}, complexity {task.complexity}/10) "
            f"failed with {issue.severity.value} {issue.category.value}: {issue.description}",
            options,
            safe_default=ESCALATE,
            impact="medium",
            task_id=task_id,
        )
        self.emit(EventKind.DECISION_MADE, task_id=task_id, decision=decision.to_dict())
        if decision.degraded:
            self._report_degradation(task, issue, decision.reasoning)

        self._attempts[task_id] = self._attempts.get(task_id, 0) + 1
        self._tried.setdefault(task_id, set()).add(decision.chosen)
        outcome = await self._apply(task, issue, decision)
        outcome.durable = verdict.durable

        if outcome.strategy != ESCALATE:
            issue.resolve(outcome.strategy)
            self._last_decision[task_id] = decision.id
        self.emit(
            EventKind.RECOVERY_APPLIED,
            task_id=task_id,
            strategy=outcome.strategy,
            attempt=self._attempts[task_id],
            subtasks=outcome.subtasks,
        )
        return outcome

    def attempts(self, task_id: str) -> int:
        return self._attempts.get(task_id, 0)

    def _remaining_options(self, task: Task) -> List[str]:
        attempts = self._attempts.get(task.id, 0)
        tried = self._tried.get(task.id, set())
        options = [s for s in STRATEGIES if s not in tried]
        if self._depth(task) >= MAX_DECOMPOSITION_DEPTH and DECOMPOSE in options:
            options.remove(DECOMPOSE)
        if attempts >= self.max_attempts or all(o == ESCALATE for o in options):
            raise RecoveryExhausted(task.id, attempts)
        return options

    def _depth(self, task: Task) -> int:
        depth = 0
        parent = task.parent_id
        while parent is not None and parent in self.graph:
            depth += 1
            parent = self.graph.get(parent).parent_id
        return depth

    # ── Durability ────────────────────────────────────────────

    async def classify(self, task: Task, issue: Issue) -> DurabilityVerdict:
        """Strict durability classification; anything unclear is not durable."""
        if self.knowledge is None:
            return DurabilityVerdict(durable=False, reasoning="no knowledge store configured")

        worker = self._worker(issue.reporter)
        options = GenerationOptions(
            max_tokens=GENERATION.CLASSIFICATION_MAX_TOKENS,
            temperature=GENERATION.CLASSIFICATION_TEMPERATURE,
            model_hint="haiku",
        )
        try:
            result = await self.gateway.call(build_durability_prompt(issue, task, worker), options, purpose="durability")
        except BackendUnavailable as e:
            self._report_degradation(task, issue, f"durability classification unavailable: {e}")
            return DurabilityVerdict(durable=False, reasoning=str(e), degraded=True)

        parsed = parse_reply(result.content, DURABILITY_SCHEMA)
        if not isinstance(parsed, Parsed):
            logger.debug(f"Durability reply for {task.id} not usable ({parsed.reason}); treating as not durable")
            return DurabilityVerdict(durable=False, reasoning=f"unparseable: {parsed.reason}")

        payload = parsed.payload
        return DurabilityVerdict(
            durable=payload["shouldCommit"] is True,
            reasoning=str(payload.get("reasoning") or ""),
            pattern=str(payload.get("generalPattern") or ""),
            tags=[str(t) for t in payload.get("tags") or []],
        )

    def _commit_lesson(self, task: Task, issue: Issue, verdict: DurabilityVerdict) -> None:
        category = issue.category.value
        tags = [category, "error_pattern"]
        entry = KnowledgeEntry(
            category=category,
            content=verdict.pattern or issue.description,
            tags=tags,
            importance=SEVERITY_IMPORTANCE[issue.severity],
            source_task_id=task.id,
            context={
                "description": issue.description,
                "context": issue.context,
                "reasoning": verdict.reasoning,
                "suggested_tags": verdict.tags,
            },
        )
        try:
            self.knowledge.append(entry)
        except (KnowledgeStoreUnavailable, ValueError) as e:
            logger.warning(f"Lesson from task {task.id} not recorded: {e}")
            return
        issue.durable_lesson = True
        logger.info(f"Committed lesson {entry.id} from task {task.id} (importance {entry.importance})")
        self.emit(EventKind.KNOWLEDGE_COMMITTED, task_id=task.id, entry_id=entry.id, tags=tags)

    def _report_degradation(self, task: Task, issue: Issue, reason: str) -> None:
        degraded = Issue(
            severity=lower_severity(issue.severity),
            category=IssueCategory.ERROR,
            description=f"Recovery analysis degraded: {reason}",
            context=f"While handling issue {issue.id} on task {task.id}",
            reporter="recovery-engine",
        )
        task.issues.append(degraded)
        logger.warning(f"Task {task.id}: {degraded.description}")
        self.emit(EventKind.ISSUE_REPORTED, task_id=task.id, issue=degraded.to_dict())

    def _worker(self, worker_id: str) -> Optional[WorkerProfile]:
        try:
            return self.registry.get(worker_id)
        except KeyError:
            return None

    # ── Strategies ────────────────────────────────────────────

    async def _apply(self, task: Task, issue: Issue, decision: Decision) -> RecoveryOutcome:
        strategy = decision.chosen
        if strategy == RETRY:
            if issue.reporter:
                task.excluded_workers.add(issue.reporter)
            self.graph.set_status(task.id, TaskStatus.PENDING)
            task.notes.append(f"Retrying without worker {issue.reporter}")
            logger.info(f"Task {task.id}: retry with a different worker")
            return RecoveryOutcome(task.id, RETRY, decision)

        if strategy == DECOMPOSE:
            subtasks = await self._decompose(task, issue)
            return RecoveryOutcome(task.id, DECOMPOSE, decision, subtasks=subtasks)

        if strategy == SKIP:
            self.graph.set_status(task.id, TaskStatus.BLOCKED, reason=SKIPPED)
            self._skipped[task.id] = self.skip_cooldown_ticks
            self.emit(EventKind.TASK_BLOCKED, task_id=task.id, reason=SKIPPED)
            logger.info(f"Task {task.id}: skipped for {self.skip_cooldown_ticks} tick(s)")
            return RecoveryOutcome(task.id, SKIP, decision)

        if strategy == MODIFY:
            if await self._modify_requirements(task, issue):
                return RecoveryOutcome(task.id, MODIFY, decision)
            task.notes.append("No usable requirement change; escalating")
            blocked = self._escalate(task, reason="requirements_unchanged")
            return RecoveryOutcome(task.id, ESCALATE, decision, blocked=blocked)

        blocked = self._escalate(task, reason="escalated")
        return RecoveryOutcome(task.id, ESCALATE, decision, blocked=blocked)

    def _escalate(self, task: Task, reason: str) -> List[str]:
        """Freeze the task as failed and block everything downstream."""
        self.escalated.append(task.id)
        blocked = self.graph.mark_permanently_failed(task.id)
        self.emit(EventKind.ESCALATION, task_id=task.id, reason=reason, title=task.title)
        for blocked_id in blocked:
            self.emit(EventKind.TASK_BLOCKED, task_id=blocked_id, reason=f"dependency {task.id} failed")
        logger.warning(f"Task {task.id} escalated to human ({reason}); {len(blocked)} dependent(s) blocked")
        blocked.extend(self._fail_parent(task))
        return blocked

    async def _decompose(self, task: Task, issue: Issue) -> List[str]:
        options = GenerationOptions(
            max_tokens=GENERATION.PLANNING_MAX_TOKENS,
            temperature=GENERATION.PLANNING_TEMPERATURE,
        )
        parts: List[Dict[str, Any]] = []
        try:
            result = await self.gateway.call(build_decomposition_prompt(task, issue), options, purpose="decomposition")
            parsed = parse_reply(result.content, DECOMPOSITION_SCHEMA)
            if isinstance(parsed, Parsed):
                parts = parsed.payload["subtasks"]
            else:
                logger.warning(f"Decomposition of {task.id} unparseable ({parsed.reason}); using default split")
        except BackendUnavailable as e:
            logger.warning(f"Decomposition of {task.id} unavailable ({e}); using default split")

        if len(parts) < 2:
            parts = [
                {"title": f"Plan: {task.title}",
                 "description": f"Outline the approach and resolve blockers for: {task.description}"},
                {"title": f"Implement: {task.title}",
                 "description": f"Carry out the outlined approach for: {task.description}"},
            ]

        created: List[str] = []
        previous: Optional[str] = None
        for index, part in enumerate(parts, start=1):
            title = str(part.get("title") or f"{task.title} (part {index})")
            sub = Task(
                id=subtask_id(task.id, index, title),
                title=title,
                description=str(part.get("description") or task.description),
                category=part.get("category") or task.category,
                priority=task.priority,
                complexity=max(1, task.complexity - 1),
                estimated_duration=float(part.get("estimated_duration", task.estimated_duration / len(parts))),
                required_skills=set(part.get("required_skills") or task.required_skills),
                dependencies=list(task.dependencies) if previous is None else [previous],
                parent_id=task.id,
            )
            self.graph.add_task(sub)
            created.append(sub.id)
            previous = sub.id

        self.graph.set_status(task.id, TaskStatus.BLOCKED, reason=AWAITING_SUBTASKS)
        self._subtasks[task.id] = created
        task.notes.append(f"Decomposed into {len(created)} sub-task(s): {', '.join(created)}")
        self.emit(EventKind.TASK_BLOCKED, task_id=task.id, reason=AWAITING_SUBTASKS)
        logger.info(f"Task {task.id} decomposed into {len(created)} sub-tasks")
        return created

    async def _modify_requirements(self, task: Task, issue: Issue) -> bool:
        options = GenerationOptions(
            max_tokens=GENERATION.DECISION_MAX_TOKENS,
            temperature=GENERATION.DECISION_TEMPERATURE,
        )
        try:
            result = await self.gateway.call(build_requirements_prompt(task, issue), options, purpose="requirements")
        except BackendUnavailable as e:
            self._report_degradation(task, issue, f"requirement rewrite unavailable: {e}")
            return False

        parsed = parse_reply(result.content, REQUIREMENT_SCHEMA)
        if not isinstance(parsed, Parsed):
            return False
        description = parsed.payload["description"].strip()
        skills = {str(s) for s in parsed.payload.get("required_skills") or []}
        if description == task.description.strip() and (not skills or skills == task.required_skills):
            return False

        task.notes.append(f"Requirements modified (was: {task.description[:200]})")
        task.description = description
        if skills:
            task.required_skills = skills
        self.graph.set_status(task.id, TaskStatus.PENDING)
        logger.info(f"Task {task.id}: requirements modified")
        return True

    # ── Loop hooks ────────────────────────────────────────────

    def release_skipped(self) -> List[str]:
        """Count down skipped tasks; return the ids moved back to pending."""
        released = []
        for task_id in list(self._skipped):
            self._skipped[task_id] -= 1
            if self._skipped[task_id] > 0:
                continue
            del self._skipped[task_id]
            task = self.graph.get(task_id)
            if task.status == TaskStatus.BLOCKED and task.blocked_reason == SKIPPED:
                self.graph.set_status(task_id, TaskStatus.PENDING)
                released.append(task_id)
        return released

    def on_task_completed(self, task_id: str) -> List[str]:
        """Record success and complete a decomposed parent when its last sub-task finishes.

        Returns:
            Ids that became ready because a parent completed.
        """
        previous = self._last_decision.pop(task_id, None)
        if previous is not None:
            self.decisions.log.set_outcome(previous, "success")

        task = self.graph.get(task_id)
        parent_id = task.parent_id
        if parent_id is None or parent_id not in self._subtasks:
            return []
        siblings = self._subtasks[parent_id]
        if not all(self.graph.status(s) == TaskStatus.COMPLETED for s in siblings):
            return []

        parent = self.graph.get(parent_id)
        if parent.status != TaskStatus.BLOCKED:
            return []
        del self._subtasks[parent_id]
        parent.notes.append("All sub-tasks completed")
        newly_ready = self.graph.set_status(parent_id, TaskStatus.COMPLETED)
        self.emit(EventKind.TASK_COMPLETED, task_id=parent_id, via_subtasks=siblings)
        for ready_id in newly_ready:
            self.emit(EventKind.TASK_UNBLOCKED, task_id=ready_id, unblocked_by=parent_id)
        return newly_ready + self.on_task_completed(parent_id)

    def _fail_parent(self, task: Task) -> List[str]:
        parent_id = task.parent_id
        if parent_id is None or parent_id not in self._subtasks:
            return []
        parent = self.graph.get(parent_id)
        if parent.status != TaskStatus.BLOCKED:
            return []
        del self._subtasks[parent_id]
        parent.notes.append(f"Sub-task {task.id} failed permanently")
        self.graph.set_status(parent_id, TaskStatus.FAILED)
        self.emit(EventKind.TASK_FAILED, task_id=parent_id, reason=f"sub-task {task.id} failed")
        return self._escalate(parent, reason="subtask_failed")
