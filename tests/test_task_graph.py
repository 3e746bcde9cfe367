"""
Tests for the Task Graph Store
==============================
Readiness ordering, cycle rejection, transitions and eager blocking.
"""

import pytest

from taskforge.engine.errors import CyclicDependency, InvalidTransition, UnknownTask
from taskforge.engine.graph import DEPENDENCY_FAILED_PREFIX, TaskGraph, find_cycle
from taskforge.engine.models import Task, TaskStatus

from conftest import make_task


def _ready_ids(graph):
    return [t.id for t in graph.ready_tasks()]


class TestCycleDetection:

    @pytest.mark.unit
    def test_find_cycle_returns_none_for_dag(self):
        assert find_cycle({"a": [], "b": ["a"], "c": ["a", "b"]}) is None

    @pytest.mark.unit
    def test_find_cycle_reports_path(self):
        cycle = find_cycle({"a": ["c"], "b": ["a"], "c": ["b"]})
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    @pytest.mark.unit
    def test_submission_with_cycle_adds_nothing(self):
        tasks = [make_task("T1"), make_task("T2"), make_task("T3")]
        with pytest.raises(CyclicDependency) as exc:
            TaskGraph.from_submission(tasks, [("T1", "T2"), ("T2", "T3"), ("T3", "T1")])
        assert set(exc.value.cycle) == {"T1", "T2", "T3"}
        # Declared dependencies on the submitted tasks are left untouched
        assert all(t.dependencies == [] for t in tasks)

    @pytest.mark.unit
    def test_self_edge_is_a_cycle(self):
        with pytest.raises(CyclicDependency):
            TaskGraph.from_submission([make_task("T1")], [("T1", "T1")])

    @pytest.mark.unit
    def test_edge_closing_cycle_is_rejected_and_graph_unchanged(self, graph):
        graph.add_task(make_task("A"))
        graph.add_task(make_task("B", dependencies=["A"]))
        graph.add_task(make_task("C", dependencies=["B"]))

        with pytest.raises(CyclicDependency):
            graph.mark_dependency_edge("C", "A")

        assert graph.get("A").dependencies == []
        graph.validate_acyclic()

    @pytest.mark.unit
    def test_unknown_edge_endpoint(self):
        with pytest.raises(UnknownTask):
            TaskGraph.from_submission([make_task("T1")], [("T1", "missing")])

    @pytest.mark.unit
    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValueError):
            TaskGraph.from_submission([make_task("T1"), make_task("T1")])


class TestReadiness:

    @pytest.mark.unit
    def test_ready_order_priority_duration_insertion(self, graph):
        graph.add_task(make_task("low", priority=2))
        graph.add_task(make_task("long", priority=8, estimated_duration=5.0))
        graph.add_task(make_task("short", priority=8, estimated_duration=0.5))
        graph.add_task(make_task("short2", priority=8, estimated_duration=0.5))

        assert _ready_ids(graph) == ["short", "short2", "long", "low"]

    @pytest.mark.unit
    def test_ready_iff_pending_and_dependencies_completed(self, graph):
        graph.add_task(make_task("T1"))
        graph.add_task(make_task("T2", dependencies=["T1"]))
        graph.add_task(make_task("T3"))

        for task in graph.tasks():
            deps_done = all(graph.status(d) == TaskStatus.COMPLETED for d in task.dependencies)
            expected = task.status == TaskStatus.PENDING and deps_done
            assert (task.id in _ready_ids(graph)) == expected

    @pytest.mark.unit
    def test_completion_makes_dependent_ready(self, graph):
        """Completing a prerequisite makes its dependent ready."""
        graph.add_task(make_task("T1"))
        graph.add_task(make_task("T2", dependencies=["T1"]))
        assert _ready_ids(graph) == ["T1"]

        graph.assign("T1", "w1")
        graph.set_status("T1", TaskStatus.IN_PROGRESS)
        newly_ready = graph.set_status("T1", TaskStatus.COMPLETED)

        assert newly_ready == ["T2"]
        assert _ready_ids(graph) == ["T2"]

    @pytest.mark.unit
    def test_assigned_task_is_not_ready(self, graph):
        graph.add_task(make_task("T1"))
        graph.assign("T1", "w1")
        assert _ready_ids(graph) == []
        assert graph.get("T1").assigned_worker == "w1"

    @pytest.mark.unit
    def test_assign_rejects_incomplete_dependencies(self, graph):
        graph.add_task(make_task("T1"))
        graph.add_task(make_task("T2", dependencies=["T1"]))
        with pytest.raises(InvalidTransition):
            graph.assign("T2", "w1")

    @pytest.mark.unit
    def test_add_task_requires_known_dependencies(self, graph):
        with pytest.raises(UnknownTask):
            graph.add_task(make_task("T2", dependencies=["T1"]))


class TestTransitions:

    @pytest.mark.unit
    def test_completed_is_terminal(self, graph):
        graph.add_task(make_task("T1"))
        graph.assign("T1", "w1")
        graph.set_status("T1", TaskStatus.IN_PROGRESS)
        graph.set_status("T1", TaskStatus.COMPLETED)

        for target in (TaskStatus.PENDING, TaskStatus.FAILED, TaskStatus.BLOCKED, TaskStatus.IN_PROGRESS):
            with pytest.raises(InvalidTransition):
                graph.set_status("T1", target)
        assert graph.get("T1").completed_at is not None

    @pytest.mark.unit
    def test_assigned_only_through_assign(self, graph):
        graph.add_task(make_task("T1"))
        with pytest.raises(ValueError):
            graph.set_status("T1", TaskStatus.ASSIGNED)

    @pytest.mark.unit
    def test_unknown_task(self, graph):
        with pytest.raises(UnknownTask):
            graph.status("nope")

    @pytest.mark.unit
    def test_release_to_pending_clears_worker(self, graph):
        graph.add_task(make_task("T1"))
        graph.assign("T1", "w1")
        graph.set_status("T1", TaskStatus.IN_PROGRESS)
        graph.set_status("T1", TaskStatus.PENDING)
        assert graph.get("T1").assigned_worker is None


class TestEagerBlocking:
    """Dependents of a permanently failed task are blocked eagerly.

    This goes beyond passive readiness filtering on purpose: a blocked task
    is visible in status and lets the run settle.
    """

    def _fail(self, graph, task_id):
        graph.assign(task_id, "w1")
        graph.set_status(task_id, TaskStatus.IN_PROGRESS)
        graph.set_status(task_id, TaskStatus.FAILED)

    @pytest.mark.unit
    def test_permanent_failure_blocks_transitive_dependents(self, graph):
        graph.add_task(make_task("A"))
        graph.add_task(make_task("B", dependencies=["A"]))
        graph.add_task(make_task("C", dependencies=["B"]))
        graph.add_task(make_task("D"))
        self._fail(graph, "A")

        blocked = graph.mark_permanently_failed("A")

        assert blocked == ["B", "C"]
        for tid in blocked:
            assert graph.status(tid) == TaskStatus.BLOCKED
            assert graph.get(tid).blocked_reason == f"{DEPENDENCY_FAILED_PREFIX}A"
        assert graph.status("D") == TaskStatus.PENDING
        assert graph.all_settled() is False

    @pytest.mark.unit
    def test_permanently_failed_task_cannot_be_revived(self, graph):
        graph.add_task(make_task("A"))
        self._fail(graph, "A")
        graph.mark_permanently_failed("A")
        with pytest.raises(InvalidTransition):
            graph.set_status("A", TaskStatus.PENDING)

    @pytest.mark.unit
    def test_unsatisfiable_detects_late_pending_dependent(self, graph):
        graph.add_task(make_task("A"))
        self._fail(graph, "A")
        graph.mark_permanently_failed("A")
        # Added after the failure, so not blocked yet
        graph.add_task(make_task("late", dependencies=["A"]))

        assert [t.id for t in graph.unsatisfiable_tasks()] == ["late"]

    @pytest.mark.unit
    def test_all_settled_with_failure_and_blocked(self, graph):
        graph.add_task(make_task("A"))
        graph.add_task(make_task("B", dependencies=["A"]))
        self._fail(graph, "A")
        assert graph.all_settled() is False
        graph.mark_permanently_failed("A")
        assert graph.all_settled() is True

    @pytest.mark.unit
    def test_counts(self, graph):
        graph.add_task(make_task("A"))
        graph.add_task(make_task("B"))
        graph.assign("A", "w1")
        counts = graph.counts()
        assert counts["pending"] == 1
        assert counts["assigned"] == 1
        assert sum(counts.values()) == 2


@pytest.mark.unit
def test_task_rejects_out_of_range_priority():
    with pytest.raises(ValueError):
        Task(id="T1", title="x", priority=11)


@pytest.mark.unit
def test_task_from_dict_accepts_alternate_keys():
    task = Task.from_dict({
        "id": "T9",
        "title": "Deploy",
        "type": "deployment",
        "estimatedHours": 2.5,
        "requiredSkills": ["docker"],
        "dependencies": ["T1", "T1"],
    })
    assert task.category.value == "deployment"
    assert task.estimated_duration == 2.5
    assert task.required_skills == {"docker"}
    assert task.dependencies == ["T1"]
