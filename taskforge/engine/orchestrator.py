"""
Orchestration Engine
====================
Public surface of taskforge. Accepts task graphs, runs each one to
completion on the asyncio event loop and reports progress.

Each submitted graph becomes a run with its own loop:

1. release skipped tasks whose cooldown is over
2. block pending tasks that can no longer become ready
3. dispatch ready tasks (priority order) up to the concurrency ceiling
4. recompute metrics and emit a ``progress`` event
5. sleep until the next tick or until an execution finishes

A stuck-task sweep runs on its own interval and returns tasks that are held
(assigned/in_progress/review) without a live execution to pending.

Usage:
    engine = OrchestrationEngine(EchoBackend())
    run_id = await engine.submit_graph(tasks, edges)
    status = await engine.wait(run_id)
"""

from __future__ import annotations

import asyncio
import functools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from loguru import logger

from taskforge.config import ORCHESTRATION, TIMEOUTS
from taskforge.knowledge.store import KnowledgeStore
from taskforge.llm.backend import ReasoningBackend
from taskforge.llm.gateway import BackendGateway
from taskforge.utils.issue_report import write_issue_report

from .decisions import DecisionLog, DecisionMaker
from .errors import NoEligibleWorker, UnknownRun
from .events import EngineEvent, EventBus, EventKind
from .execution import TaskExecutor
from .graph import DEPENDENCY_FAILED_PREFIX, TaskGraph
from .metrics import RunMetrics, compute_metrics
from .models import HELD_STATUSES, Task, TaskStatus, new_id, utc_now
from .recovery import RecoveryEngine
from .workers import WorkerRegistry


TaskInput = Union[Task, Dict[str, Any]]


@dataclass
class EngineConfig:
    """Per-engine settings. Defaults come from ``taskforge.config``."""

    tick_seconds: float = ORCHESTRATION.TICK_SECONDS
    stuck_sweep_seconds: float = ORCHESTRATION.STUCK_SWEEP_SECONDS
    max_concurrency: int = ORCHESTRATION.MAX_CONCURRENCY
    max_workers: Optional[int] = ORCHESTRATION.MAX_WORKERS
    event_history_limit: int = ORCHESTRATION.EVENT_HISTORY_LIMIT
    retained_runs: int = ORCHESTRATION.RETAINED_FINISHED_RUNS
    max_recovery_attempts: int = ORCHESTRATION.MAX_RECOVERY_ATTEMPTS
    skip_cooldown_ticks: int = ORCHESTRATION.SKIP_COOLDOWN_TICKS
    backend_timeout_seconds: float = TIMEOUTS.BACKEND_CALL
    cancel_grace_seconds: float = TIMEOUTS.CANCEL_GRACE
    enable_review: bool = ORCHESTRATION.ENABLE_REVIEW
    primary_max_concurrent: int = 50
    issue_report_dir: Optional[str] = None

    def __post_init__(self):
        if self.tick_seconds <= 0:
            raise ValueError("tick_seconds must be > 0")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if self.max_recovery_attempts < 1:
            raise ValueError("max_recovery_attempts must be >= 1")


class RunState(Enum):
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


FINISHED_STATES = frozenset({RunState.CANCELLED, RunState.COMPLETED})


@dataclass
class RunStatus:
    """Snapshot of a run returned by ``status()``."""
    run_id: str
    state: RunState
    progress: float
    phase: str
    per_task_status: Dict[str, str]
    metrics: RunMetrics
    started_at: str
    finished_at: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.state in FINISHED_STATES

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "progress": round(self.progress, 2),
            "phase": self.phase,
            "per_task_status": dict(self.per_task_status),
            "metrics": self.metrics.to_dict(),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class _Run:
    id: str
    graph: TaskGraph
    executor: TaskExecutor
    recovery: RecoveryEngine
    decisions: DecisionLog
    emit: Callable[..., EngineEvent]
    state: RunState = RunState.RUNNING
    started: float = field(default_factory=time.monotonic)
    started_at: str = field(default_factory=lambda: utc_now().isoformat())
    finished_at: Optional[str] = None
    in_flight: Dict[str, "asyncio.Task"] = field(default_factory=dict)
    recovering: Set[str] = field(default_factory=set)
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    resumed: asyncio.Event = field(default_factory=asyncio.Event)
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    loop_task: Optional["asyncio.Task"] = None
    metrics: Optional[RunMetrics] = None
    velocity_trend: List[float] = field(default_factory=list)
    ticks: int = 0
    last_sweep: float = field(default_factory=time.monotonic)
    tokens_baseline: int = 0
    cost_baseline: float = 0.0


class OrchestrationEngine:
    """Runs task graphs against a reasoning backend.

    Args:
        backend: Reasoning backend (ClaudeClient, EchoBackend, or any object
            with ``async generate(prompt, options)``).
        knowledge: Optional knowledge store for durable failure lessons.
        config: Engine settings.
        registry: Worker registry to share between engines; a new one with
            the primary worker registered is created when omitted.
    """

    def __init__(
        self,
        backend: ReasoningBackend,
        knowledge: Optional[KnowledgeStore] = None,
        config: Optional[EngineConfig] = None,
        registry: Optional[WorkerRegistry] = None,
    ):
        self.config = config or EngineConfig()
        self.knowledge = knowledge
        self.gateway = BackendGateway(
            backend,
            max_concurrency=self.config.max_concurrency,
            timeout_seconds=self.config.backend_timeout_seconds,
        )
        if registry is None:
            registry = WorkerRegistry(max_workers=self.config.max_workers)
            registry.register_primary(self.config.primary_max_concurrent)
        self.registry = registry
        self.events = EventBus(
            history_limit=self.config.event_history_limit,
            retained_runs=self.config.retained_runs,
        )
        self._runs: Dict[str, _Run] = {}

    # ── Public surface ────────────────────────────────────────

    async def submit_graph(
        self,
        tasks: Iterable[TaskInput],
        edges: Iterable[Tuple[str, str]] = (),
    ) -> str:
        """Validate a task graph and start running it.

        Args:
            tasks: Task objects or task dicts (see ``Task.from_dict``).
            edges: (prerequisite_id, dependent_id) pairs in addition to the
                dependencies declared on the tasks.

        Returns:
            The run id.

        Raises:
            CyclicDependency: the dependency relation has a cycle.
            UnknownTask: an edge or dependency names a task not submitted.
        """
        task_objs = [t if isinstance(t, Task) else Task.from_dict(t) for t in tasks]
        graph = TaskGraph.from_submission(task_objs, edges)

        run_id = new_id("run")
        emit = functools.partial(self.events.emit, run_id=run_id)
        decisions = DecisionLog()
        run = _Run(
            id=run_id,
            graph=graph,
            executor=TaskExecutor(
                graph, self.registry, self.gateway, emit, enable_review=self.config.enable_review
            ),
            recovery=RecoveryEngine(
                graph,
                self.registry,
                self.gateway,
                DecisionMaker(self.gateway, decisions),
                self.knowledge,
                emit,
                max_attempts=self.config.max_recovery_attempts,
                skip_cooldown_ticks=self.config.skip_cooldown_ticks,
            ),
            decisions=decisions,
            emit=emit,
            tokens_baseline=self.gateway.usage.total_tokens,
            cost_baseline=self.gateway.usage.cost,
        )
        run.resumed.set()
        self._runs[run_id] = run

        logger.info(f"Run {run_id} submitted with {len(graph)} task(s)")
        emit(EventKind.RUN_STARTED, tasks=len(graph))
        run.loop_task = asyncio.create_task(self._loop(run), name=f"taskforge-{run_id}")
        return run_id

    def pause(self, run_id: str) -> None:
        """Stop dispatching new tasks. In-flight executions continue."""
        run = self._get(run_id)
        if run.state != RunState.RUNNING:
            return
        run.state = RunState.PAUSED
        run.resumed.clear()
        run.wake.set()
        logger.info(f"Run {run_id} paused")
        run.emit(EventKind.RUN_PAUSED, in_flight=len(run.in_flight))

    def resume(self, run_id: str) -> None:
        run = self._get(run_id)
        if run.state != RunState.PAUSED:
            return
        run.state = RunState.RUNNING
        run.resumed.set()
        run.wake.set()
        logger.info(f"Run {run_id} resumed")
        run.emit(EventKind.RUN_RESUMED)

    async def cancel(self, run_id: str) -> RunStatus:
        """Stop a run.

        Dispatching stops at once. In-flight executions get
        ``cancel_grace_seconds`` to finish; the rest are interrupted and
        their tasks return to pending.
        """
        run = self._get(run_id)
        if run.state in FINISHED_STATES or run.state == RunState.CANCELLING:
            await run.finished.wait()
            return self.status(run_id)

        run.state = RunState.CANCELLING
        run.resumed.set()
        run.wake.set()
        logger.info(f"Cancelling run {run_id} ({len(run.in_flight)} execution(s) in flight)")

        in_flight = list(run.in_flight.values())
        if in_flight:
            _, still_running = await asyncio.wait(in_flight, timeout=self.config.cancel_grace_seconds)
            for pending in still_running:
                pending.cancel()
            if still_running:
                logger.warning(f"Run {run_id}: interrupting {len(still_running)} execution(s) after grace period")
                await asyncio.gather(*still_running, return_exceptions=True)

        if run.loop_task is not None:
            await asyncio.gather(run.loop_task, return_exceptions=True)

        for task in run.graph.tasks():
            if task.status in HELD_STATUSES:
                if task.assigned_worker:
                    self.registry.release(task.assigned_worker, task.id)
                run.graph.set_status(task.id, TaskStatus.PENDING)
                task.notes.append("Returned to pending by cancellation")

        self._finish(run, RunState.CANCELLED)
        return self.status(run_id)

    def status(self, run_id: str) -> RunStatus:
        run = self._get(run_id)
        metrics = self._metrics(run, record=False)
        return RunStatus(
            run_id=run.id,
            state=run.state,
            progress=metrics.progress,
            phase=metrics.phase,
            per_task_status={t.id: t.status.value for t in run.graph.tasks()},
            metrics=metrics,
            started_at=run.started_at,
            finished_at=run.finished_at,
        )

    async def wait(self, run_id: str, timeout: Optional[float] = None) -> RunStatus:
        """Wait for a run to complete or be cancelled.

        Raises:
            asyncio.TimeoutError: the run did not finish within ``timeout``.
        """
        run = self._get(run_id)
        await asyncio.wait_for(run.finished.wait(), timeout=timeout)
        return self.status(run_id)

    def subscribe(self, run_id: str):
        """Async iterator over the run's events, ending after its terminal event."""
        run = self._get(run_id)
        return self.events.subscribe(run_id, finished=run.finished.is_set())

    def add_listener(self, callback: Callable[[EngineEvent], Any]) -> None:
        self.events.add_listener(callback)

    def graph(self, run_id: str) -> TaskGraph:
        return self._get(run_id).graph

    def decisions(self, run_id: str) -> DecisionLog:
        return self._get(run_id).decisions

    def runs(self) -> List[str]:
        return list(self._runs)

    async def shutdown(self) -> None:
        """Cancel every unfinished run."""
        for run_id, run in list(self._runs.items()):
            if run.state not in FINISHED_STATES:
                await self.cancel(run_id)
        logger.info(f"Engine shut down ({len(self._runs)} run(s))")

    # ── Loop ──────────────────────────────────────────────────

    def _get(self, run_id: str) -> _Run:
        run = self._runs.get(run_id)
        if run is None:
            raise UnknownRun(run_id)
        return run

    async def _loop(self, run: _Run) -> None:
        while True:
            if run.state == RunState.CANCELLING:
                return
            if run.state == RunState.PAUSED:
                await run.resumed.wait()
                continue

            run.ticks += 1
            try:
                self._tick(run)
            except Exception as e:
                logger.exception(f"Run {run.id}: tick {run.ticks} failed: {e}")

            if not run.in_flight and run.graph.all_settled():
                self._finish(run, RunState.COMPLETED)
                return

            if time.monotonic() - run.last_sweep >= self.config.stuck_sweep_seconds:
                run.last_sweep = time.monotonic()
                try:
                    self._sweep_stuck(run)
                except Exception as e:
                    logger.exception(f"Run {run.id}: stuck-task sweep failed: {e}")

            run.wake.clear()
            try:
                await asyncio.wait_for(run.wake.wait(), timeout=self.config.tick_seconds)
            except asyncio.TimeoutError:
                pass

    def _tick(self, run: _Run) -> None:
        for task_id in run.recovery.release_skipped():
            logger.info(f"Run {run.id}: skipped task {task_id} back to pending")
            run.emit(EventKind.TASK_UNBLOCKED, task_id=task_id, unblocked_by="skip_cooldown")

        self._block_unsatisfiable(run)
        self._dispatch(run)

        try:
            run.metrics = self._metrics(run, record=True)
        except Exception as e:
            logger.error(f"Run {run.id}: metrics computation failed: {e}")
            return
        run.emit(EventKind.PROGRESS, tick=run.ticks, in_flight=len(run.in_flight), metrics=run.metrics.to_dict())

    def _block_unsatisfiable(self, run: _Run) -> None:
        graph = run.graph
        for task in graph.unsatisfiable_tasks():
            culprit = next(
                dep for dep in task.dependencies
                if graph.is_permanently_failed(dep)
                or (graph.get(dep).blocked_reason or "").startswith(DEPENDENCY_FAILED_PREFIX)
            )
            graph.set_status(task.id, TaskStatus.BLOCKED, reason=f"{DEPENDENCY_FAILED_PREFIX}{culprit}")
            logger.warning(f"Run {run.id}: task {task.id} blocked, dependency {culprit} cannot complete")
            run.emit(EventKind.TASK_BLOCKED, task_id=task.id, reason=f"dependency {culprit} failed")

    def _dispatch(self, run: _Run) -> None:
        capacity = self.config.max_concurrency - len(run.in_flight)
        if capacity <= 0:
            return
        for task in run.graph.ready_tasks():
            if capacity <= 0:
                break
            try:
                assignment = self.registry.assign(task)
            except NoEligibleWorker as e:
                logger.debug(f"Run {run.id}: {e}")
                continue

            worker = assignment.worker
            run.graph.assign(task.id, worker.id)
            if assignment.spawned:
                run.emit(EventKind.WORKER_SPAWNED, task_id=task.id, worker_id=worker.id, name=worker.name)
            run.emit(EventKind.TASK_ASSIGNED, task_id=task.id, worker_id=worker.id, score=assignment.score)
            logger.info(f"Run {run.id}: task {task.id} assigned to {worker.name} (score {assignment.score:.1f})")

            run.in_flight[task.id] = asyncio.create_task(
                self._execute(run, task.id), name=f"taskforge-{run.id}-{task.id}"
            )
            capacity -= 1

    async def _execute(self, run: _Run, task_id: str) -> None:
        try:
            try:
                report = await run.executor.execute(task_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Run {run.id}: execution of task {task_id} could not start: {e}")
                return
            if report.succeeded:
                run.recovery.on_task_completed(task_id)
                return
            if run.state in (RunState.CANCELLING, RunState.CANCELLED):
                logger.info(f"Run {run.id}: task {task_id} failed during cancellation; recovery skipped")
                return

            run.recovering.add(task_id)
            try:
                await run.recovery.handle_failure(task_id, report.issue)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Run {run.id}: recovery of task {task_id} failed: {e}")
                self._contain(run, task_id)
            finally:
                run.recovering.discard(task_id)
        finally:
            run.in_flight.pop(task_id, None)
            run.wake.set()

    def _contain(self, run: _Run, task_id: str) -> None:
        graph = run.graph
        if graph.status(task_id) != TaskStatus.FAILED or graph.is_permanently_failed(task_id):
            return
        for blocked_id in graph.mark_permanently_failed(task_id):
            run.emit(EventKind.TASK_BLOCKED, task_id=blocked_id, reason=f"dependency {task_id} failed")

    def _sweep_stuck(self, run: _Run) -> List[str]:
        reset = []
        for task in run.graph.tasks():
            if task.status not in HELD_STATUSES or task.id in run.in_flight:
                continue
            if task.assigned_worker:
                self.registry.release(task.assigned_worker, task.id)
            run.graph.set_status(task.id, TaskStatus.PENDING)
            task.notes.append("Reset to pending by stuck-task sweep")
            reset.append(task.id)
        if reset:
            logger.warning(f"Run {run.id}: stuck-task sweep reset {len(reset)} task(s): {', '.join(reset)}")
        return reset

    # ── Metrics & completion ──────────────────────────────────

    def _metrics(self, run: _Run, record: bool) -> RunMetrics:
        usage = self.gateway.usage
        metrics = compute_metrics(
            run.graph,
            elapsed_seconds=time.monotonic() - run.started,
            decisions=len(run.decisions),
            escalations=len(run.recovery.escalated),
            tokens=usage.total_tokens - run.tokens_baseline,
            cost=usage.cost - run.cost_baseline,
            previous_trend=run.velocity_trend,
        )
        if record:
            run.velocity_trend = list(metrics.velocity_trend)
        return metrics

    def _finish(self, run: _Run, state: RunState) -> None:
        run.state = state
        run.finished_at = utc_now().isoformat()
        run.metrics = self._metrics(run, record=True)
        summary = run.metrics.to_dict()

        if self.config.issue_report_dir:
            try:
                write_issue_report(
                    self.config.issue_report_dir,
                    run.id,
                    run.graph.tasks(),
                    escalated=run.recovery.escalated,
                    run_summary={"state": state.value, **summary},
                )
            except OSError as e:
                logger.error(f"Run {run.id}: could not write issue report: {e}")

        kind = EventKind.RUN_COMPLETED if state == RunState.COMPLETED else EventKind.RUN_CANCELLED
        logger.info(
            f"Run {run.id} {state.value}: {summary['progress']}% complete, "
            f"quality {summary['quality_score']}, autonomy {summary['autonomy_level']}"
        )
        run.emit(kind, metrics=summary)
        run.finished.set()
