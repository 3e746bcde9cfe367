"""
Engine Events
=============
Progress events emitted by the orchestration loop.

Two delivery paths:
- listeners: plain callables invoked synchronously for every event (errors
  are logged and swallowed so a faulty listener cannot stall the loop)
- subscriptions: per-run asyncio queues consumed as async iterators; the
  iterator ends after the run's terminal event

Replay buffers are bounded per run, and only a fixed number of finished
runs keep theirs.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional

from loguru import logger

from taskforge.config import ORCHESTRATION

from .models import utc_now


class EventKind(Enum):
    RUN_STARTED = "run_started"
    TASK_ASSIGNED = "task_assigned"
    WORKER_SPAWNED = "worker_spawned"
    TASK_STARTED = "task_started"
    TASK_REVIEW = "task_review"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_UNBLOCKED = "task_unblocked"
    TASK_BLOCKED = "task_blocked"
    ISSUE_REPORTED = "issue_reported"
    KNOWLEDGE_COMMITTED = "knowledge_committed"
    DECISION_MADE = "decision_made"
    RECOVERY_APPLIED = "recovery_applied"
    ESCALATION = "escalation"
    PROGRESS = "progress"
    RUN_PAUSED = "run_paused"
    RUN_RESUMED = "run_resumed"
    RUN_CANCELLED = "run_cancelled"
    RUN_COMPLETED = "run_completed"


TERMINAL_EVENTS = frozenset({EventKind.RUN_CANCELLED, EventKind.RUN_COMPLETED})


@dataclass
class EngineEvent:
    """Event envelope."""
    kind: EventKind
    run_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())

    @property
    def task_id(self) -> Optional[str]:
        return self.payload.get("task_id")

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "run_id": self.run_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "payload": dict(self.payload),
        }


Listener = Callable[[EngineEvent], Any]


class EventBus:
    """Fan-out of engine events to listeners and run subscriptions.

    Each run keeps a replay buffer of its most recent ``history_limit``
    events. Buffers of finished runs are retained for the ``retained_runs``
    most recently finished runs; older ones are dropped.
    """

    def __init__(
        self,
        history_limit: int = ORCHESTRATION.EVENT_HISTORY_LIMIT,
        retained_runs: int = ORCHESTRATION.RETAINED_FINISHED_RUNS,
    ):
        if history_limit < 1:
            raise ValueError("history_limit must be >= 1")
        if retained_runs < 0:
            raise ValueError("retained_runs must be >= 0")
        self.history_limit = history_limit
        self.retained_runs = retained_runs
        self._listeners: List[Listener] = []
        self._queues: Dict[str, List[asyncio.Queue]] = {}
        self._history: Dict[str, Deque[EngineEvent]] = {}
        # Finished run ids, oldest first
        self._closed_runs: "OrderedDict[str, None]" = OrderedDict()
        self._sequence = 0

    def add_listener(self, callback: Listener) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Listener) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def emit(self, kind: EventKind, run_id: str, **payload: Any) -> EngineEvent:
        self._sequence += 1
        event = EngineEvent(kind=kind, run_id=run_id, payload=payload, sequence=self._sequence)
        buffer = self._history.get(run_id)
        if buffer is None and run_id not in self._closed_runs:
            buffer = self._history[run_id] = deque(maxlen=self.history_limit)
        if buffer is not None:
            buffer.append(event)
        logger.debug(f"[{run_id}] event {kind.value} {payload.get('task_id', '')}")

        for cb in list(self._listeners):
            try:
                cb(event)
            except Exception as exc:
                logger.warning(f"Event listener error for {kind.value}: {exc}")

        for queue in self._queues.get(run_id, []):
            queue.put_nowait(event)
        if kind in TERMINAL_EVENTS:
            self._close(run_id)
        return event

    def _close(self, run_id: str) -> None:
        for queue in self._queues.pop(run_id, []):
            queue.put_nowait(None)
        self._closed_runs[run_id] = None
        self._closed_runs.move_to_end(run_id)
        while len(self._closed_runs) > self.retained_runs:
            expired, _ = self._closed_runs.popitem(last=False)
            self._history.pop(expired, None)
            logger.debug(f"[{expired}] event history dropped")

    def forget(self, run_id: str) -> None:
        """Drop the replay buffer of a finished run."""
        if run_id in self._closed_runs:
            del self._closed_runs[run_id]
            self._history.pop(run_id, None)

    def tracked_runs(self) -> List[str]:
        """Run ids that currently hold a replay buffer."""
        return list(self._history)

    def events_for(self, run_id: str, kind: Optional[EventKind] = None) -> List[EngineEvent]:
        return [e for e in self._history.get(run_id, ()) if kind is None or e.kind == kind]

    async def subscribe(self, run_id: str, finished: bool = False) -> AsyncIterator[EngineEvent]:
        """Yield events for ``run_id`` until its terminal event.

        Buffered events are replayed first, so a subscriber to a short run
        never misses its start. Subscribing to a run that already finished
        (``finished`` or a recorded terminal event) yields whatever is still
        buffered and stops.
        """
        if finished or run_id in self._closed_runs:
            for event in self.events_for(run_id):
                yield event
            return

        queue: asyncio.Queue = asyncio.Queue()
        self._queues.setdefault(run_id, []).append(queue)
        backlog = self.events_for(run_id)
        try:
            for event in backlog:
                yield event
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            queues = self._queues.get(run_id)
            if queues and queue in queues:
                queues.remove(queue)
