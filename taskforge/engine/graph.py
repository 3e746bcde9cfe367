"""
Task Graph Store
================
Holds tasks and their dependency edges and answers readiness queries.

The graph is an owned, single-writer structure: the orchestration loop and
the components it drives mutate it synchronously on the event loop, so no
locking is needed and a ready task can never be handed out twice.

Edges point from a prerequisite to its dependent. The dependency relation is
kept acyclic: an edge that would close a cycle is rejected with
CyclicDependency and the graph is left untouched.
"""

from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from loguru import logger

from .errors import CyclicDependency, InvalidTransition, UnknownTask
from .models import HELD_STATUSES, Task, TaskStatus, utc_now


# Allowed status transitions. COMPLETED is terminal.
TRANSITIONS: Dict[TaskStatus, frozenset] = {
    TaskStatus.PENDING: frozenset({TaskStatus.ASSIGNED, TaskStatus.BLOCKED}),
    TaskStatus.ASSIGNED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.PENDING, TaskStatus.FAILED}),
    TaskStatus.IN_PROGRESS: frozenset({
        TaskStatus.REVIEW, TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PENDING,
    }),
    TaskStatus.REVIEW: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PENDING}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING, TaskStatus.BLOCKED}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.PENDING, TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
}

DEPENDENCY_FAILED_PREFIX = "dependency_failed:"

Edge = Tuple[str, str]


def find_cycle(dependencies: Dict[str, Sequence[str]]) -> Optional[List[str]]:
    """Return one dependency cycle as a path of ids, or None if acyclic.

    Args:
        dependencies: task id -> ids it depends on. Ids missing from the
            mapping are treated as leaves.
    """
    white, grey, black = 0, 1, 2
    color: Dict[str, int] = {tid: white for tid in dependencies}

    for root in dependencies:
        if color[root] != white:
            continue
        # Iterative DFS keeping the current path for error reporting
        stack: List[Tuple[str, int]] = [(root, 0)]
        path: List[str] = [root]
        color[root] = grey
        while stack:
            node, idx = stack[-1]
            deps = list(dependencies.get(node, ()))
            if idx < len(deps):
                stack[-1] = (node, idx + 1)
                nxt = deps[idx]
                state = color.get(nxt, black)
                if state == grey:
                    start = path.index(nxt)
                    return path[start:] + [nxt]
                if state == white:
                    color[nxt] = grey
                    stack.append((nxt, 0))
                    path.append(nxt)
            else:
                color[node] = black
                stack.pop()
                path.pop()
    return None


class TaskGraph:
    """Dependency-aware task store with readiness queries."""

    def __init__(self):
        self._tasks: Dict[str, Task] = {}
        self._order: Dict[str, int] = {}           # insertion index for deterministic ordering
        self._dependents: Dict[str, Set[str]] = {}  # prerequisite -> dependents
        self._permanently_failed: Set[str] = set()

    # ── Construction ──────────────────────────────────────────

    @classmethod
    def from_submission(cls, tasks: Iterable[Task], edges: Iterable[Edge] = ()) -> "TaskGraph":
        """Validate a whole submission and build a graph from it.

        Nothing is built when validation fails: duplicate ids and unknown
        references raise UnknownTask/ValueError, and any cycle in the union
        of declared dependencies and edges raises CyclicDependency.
        """
        task_list = list(tasks)
        edge_list = [(str(a), str(b)) for a, b in edges]

        ids: Dict[str, Task] = {}
        for task in task_list:
            if task.id in ids:
                raise ValueError(f"Duplicate task id: {task.id}")
            ids[task.id] = task

        deps: Dict[str, List[str]] = {tid: list(t.dependencies) for tid, t in ids.items()}
        for prerequisite, dependent in edge_list:
            for tid in (prerequisite, dependent):
                if tid not in ids:
                    raise UnknownTask(tid)
            if prerequisite not in deps[dependent]:
                deps[dependent].append(prerequisite)
        for tid, dep_ids in deps.items():
            for dep in dep_ids:
                if dep not in ids:
                    raise UnknownTask(dep)

        cycle = find_cycle(deps)
        if cycle:
            raise CyclicDependency(cycle)

        graph = cls()
        for task in task_list:
            task.dependencies = deps[task.id]
            graph._insert(task)
        logger.debug(f"Task graph built with {len(task_list)} tasks")
        return graph

    def _insert(self, task: Task) -> None:
        self._tasks[task.id] = task
        self._order[task.id] = len(self._order)
        self._dependents.setdefault(task.id, set())
        for dep in task.dependencies:
            self._dependents.setdefault(dep, set()).add(task.id)

    def add_task(self, task: Task) -> None:
        """Add a task. Its declared dependencies must already be present."""
        if task.id in self._tasks:
            raise ValueError(f"Duplicate task id: {task.id}")
        for dep in task.dependencies:
            if dep not in self._tasks:
                raise UnknownTask(dep)
        self._insert(task)

    def mark_dependency_edge(self, prerequisite_id: str, dependent_id: str) -> None:
        """Record that ``dependent_id`` depends on ``prerequisite_id``.

        Raises:
            CyclicDependency: if the edge would close a cycle.
        """
        prerequisite = self.get(prerequisite_id)
        dependent = self.get(dependent_id)
        if prerequisite_id in dependent.dependencies:
            return

        cycle = self._path_between(prerequisite_id, dependent_id)
        if cycle is not None:
            raise CyclicDependency([dependent_id] + cycle)

        dependent.dependencies.append(prerequisite.id)
        self._dependents.setdefault(prerequisite_id, set()).add(dependent_id)
        dependent.updated_at = utc_now()

    def _path_between(self, start: str, target: str) -> Optional[List[str]]:
        """Path following dependency links from start to target, if any."""
        if start == target:
            return [start]
        parents: Dict[str, Optional[str]] = {start: None}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for dep in self._tasks[current].dependencies:
                if dep in parents:
                    continue
                parents[dep] = current
                if dep == target:
                    path = [dep]
                    node: Optional[str] = current
                    while node is not None:
                        path.append(node)
                        node = parents[node]
                    return list(reversed(path))
                queue.append(dep)
        return None

    def validate_acyclic(self) -> None:
        """Raise CyclicDependency if the stored relation contains a cycle."""
        cycle = find_cycle({tid: t.dependencies for tid, t in self._tasks.items()})
        if cycle:
            raise CyclicDependency(cycle)

    # ── Queries ───────────────────────────────────────────────

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def get(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise UnknownTask(task_id)
        return task

    def tasks(self) -> List[Task]:
        """All tasks in insertion order."""
        return sorted(self._tasks.values(), key=lambda t: self._order[t.id])

    def status(self, task_id: str) -> TaskStatus:
        return self.get(task_id).status

    def dependents_of(self, task_id: str) -> List[str]:
        self.get(task_id)
        return sorted(self._dependents.get(task_id, ()), key=lambda tid: self._order[tid])

    def is_permanently_failed(self, task_id: str) -> bool:
        return task_id in self._permanently_failed

    def _deps_completed(self, task: Task) -> bool:
        return all(self._tasks[dep].status == TaskStatus.COMPLETED for dep in task.dependencies)

    def ready_tasks(self) -> List[Task]:
        """Pending tasks whose dependencies are all completed.

        Ordered by priority (desc), estimated duration (asc), then insertion
        order.
        """
        ready = [
            t for t in self._tasks.values()
            if t.status == TaskStatus.PENDING and self._deps_completed(t)
        ]
        ready.sort(key=lambda t: (-t.priority, t.estimated_duration, self._order[t.id]))
        return ready

    def unsatisfiable_tasks(self) -> List[Task]:
        """Pending tasks that can never become ready.

        A task is unsatisfiable when one of its dependencies failed
        permanently or is itself blocked behind a permanent failure.
        """
        out = []
        for task in self.tasks():
            if task.status != TaskStatus.PENDING:
                continue
            for dep_id in task.dependencies:
                dep = self._tasks[dep_id]
                if dep_id in self._permanently_failed or (
                    dep.status == TaskStatus.BLOCKED
                    and (dep.blocked_reason or "").startswith(DEPENDENCY_FAILED_PREFIX)
                ):
                    out.append(task)
                    break
        return out

    def counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in TaskStatus}
        for task in self._tasks.values():
            counts[task.status.value] += 1
        return counts

    def all_settled(self) -> bool:
        """True when no task can make further progress on its own.

        Completed, permanently failed, and dependency-blocked tasks are
        settled. Failed tasks awaiting recovery and skipped or decomposed
        blocked tasks are not.
        """
        for task in self._tasks.values():
            if task.status == TaskStatus.COMPLETED:
                continue
            if task.status == TaskStatus.FAILED and task.id in self._permanently_failed:
                continue
            if task.status == TaskStatus.BLOCKED and (task.blocked_reason or "").startswith(
                DEPENDENCY_FAILED_PREFIX
            ):
                continue
            return False
        return True

    # ── State transitions ─────────────────────────────────────

    def _check_transition(self, task: Task, target: TaskStatus) -> None:
        if target not in TRANSITIONS[task.status]:
            raise InvalidTransition(task.id, task.status.value, target.value)
        if task.id in self._permanently_failed:
            raise InvalidTransition(task.id, "failed (permanent)", target.value)

    def assign(self, task_id: str, worker_id: str) -> None:
        """pending -> assigned, recording the worker."""
        task = self.get(task_id)
        self._check_transition(task, TaskStatus.ASSIGNED)
        if not self._deps_completed(task):
            raise InvalidTransition(task_id, task.status.value, "assigned (dependencies incomplete)")
        task.status = TaskStatus.ASSIGNED
        task.assigned_worker = worker_id
        task.updated_at = utc_now()

    def set_status(self, task_id: str, status: TaskStatus, *, reason: Optional[str] = None) -> List[str]:
        """Move a task to ``status``.

        Returns:
            Ids of dependents that became ready because this task completed
            (empty for any other transition).
        """
        if status == TaskStatus.ASSIGNED:
            raise ValueError("Use assign() to move a task to assigned")
        task = self.get(task_id)
        self._check_transition(task, status)

        now = utc_now()
        task.status = status
        task.updated_at = now
        if status not in HELD_STATUSES:
            task.assigned_worker = None
        if status == TaskStatus.BLOCKED:
            task.blocked_reason = reason or "blocked"
        else:
            task.blocked_reason = None
        if status == TaskStatus.IN_PROGRESS:
            task.started_at = now
        if status == TaskStatus.COMPLETED:
            task.completed_at = now
            return self._newly_ready_after(task_id)
        return []

    def _newly_ready_after(self, task_id: str) -> List[str]:
        unblocked = []
        for dep_id in self.dependents_of(task_id):
            dependent = self._tasks[dep_id]
            if dependent.status == TaskStatus.PENDING and self._deps_completed(dependent):
                unblocked.append(dep_id)
        if unblocked:
            logger.debug(f"Task {task_id} completed; now ready: {', '.join(unblocked)}")
        return unblocked

    def mark_permanently_failed(self, task_id: str) -> List[str]:
        """Freeze a failed task and block everything downstream of it.

        Returns:
            Ids of tasks moved to blocked.
        """
        task = self.get(task_id)
        if task.status != TaskStatus.FAILED:
            raise InvalidTransition(task_id, task.status.value, "failed (permanent)")
        self._permanently_failed.add(task_id)
        return self.block_dependents(task_id)

    def block_dependents(self, task_id: str) -> List[str]:
        """Transitively block pending dependents of a permanently failed task."""
        blocked: List[str] = []
        queue = deque([task_id])
        seen: Set[str] = {task_id}
        while queue:
            current = queue.popleft()
            for dep_id in self.dependents_of(current):
                if dep_id in seen:
                    continue
                seen.add(dep_id)
                dependent = self._tasks[dep_id]
                if dependent.status == TaskStatus.PENDING:
                    self.set_status(dep_id, TaskStatus.BLOCKED, reason=f"{DEPENDENCY_FAILED_PREFIX}{task_id}")
                    blocked.append(dep_id)
                    queue.append(dep_id)
        if blocked:
            logger.warning(f"Blocked {len(blocked)} task(s) downstream of failed task {task_id}")
        return blocked
