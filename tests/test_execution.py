"""
Tests for the Execution State Machine
=====================================
"""

import asyncio
from unittest.mock import patch

import pytest

from taskforge.engine.events import EventKind
from taskforge.engine.execution import TaskExecutor
from taskforge.engine.models import IssueCategory, Severity, TaskStatus, WorkerStatus
from taskforge.engine.prompts import PromptKind
from taskforge.llm.backend import GenerationResult
from taskforge.llm.gateway import BackendGateway

from conftest import ScriptedBackend, make_task


def _assign(graph, registry, task_id):
    assignment = registry.assign(graph.get(task_id))
    graph.assign(task_id, assignment.worker.id)
    return assignment.worker


def _executor(backend, graph, registry, emitter, timeout=5.0, enable_review=False):
    gateway = BackendGateway(backend, max_concurrency=2, timeout_seconds=timeout)
    return TaskExecutor(graph, registry, gateway, emitter, enable_review=enable_review)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_success_completes_and_unblocks(graph, registry, emitter):
    backend = ScriptedBackend()
    graph.add_task(make_task("T1", "Write unit tests", priority=7))
    graph.add_task(make_task("T2", dependencies=["T1"]))
    worker = _assign(graph, registry, "T1")

    report = await _executor(backend, graph, registry, emitter).execute("T1")

    assert report.succeeded is True
    assert report.newly_ready == ["T2"]
    task = graph.get("T1")
    assert task.status == TaskStatus.COMPLETED
    assert [a.name for a in task.artifacts] == ["summary.md"]
    assert worker.status == WorkerStatus.IDLE
    assert worker.performance.tasks_completed == 1
    assert emitter.kinds() == [EventKind.TASK_STARTED, EventKind.TASK_COMPLETED, EventKind.TASK_UNBLOCKED]

    prompt = backend.calls_for(PromptKind.EXECUTION)[0]
    assert "TASK: Write unit tests" in prompt
    assert "PRIORITY: 7/10" in prompt
    assert "Specializations: testing" in prompt


@pytest.mark.unit
@pytest.mark.asyncio
async def test_dependency_results_are_embedded(graph, registry, emitter):
    backend = ScriptedBackend()
    graph.add_task(make_task("T1", "Design schema"))
    graph.add_task(make_task("T2", "Build api", dependencies=["T1"]))
    executor = _executor(backend, graph, registry, emitter)

    _assign(graph, registry, "T1")
    await executor.execute("T1")
    _assign(graph, registry, "T2")
    await executor.execute("T2")

    assert "- Design schema: # Design schema" in backend.calls_for(PromptKind.EXECUTION)[1]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_backend_reported_error_fails_with_execution_issue(graph, registry, emitter):
    """An error reply fails the attempt."""
    backend = ScriptedBackend(execution=lambda p: GenerationResult(content="", error="timeout"))
    graph.add_task(make_task("T1"))
    worker = _assign(graph, registry, "T1")

    report = await _executor(backend, graph, registry, emitter).execute("T1")

    task = graph.get("T1")
    assert report.succeeded is False
    assert task.status == TaskStatus.FAILED
    assert len(task.issues) == 1
    assert task.issues[0].category == IssueCategory.EXECUTION_FAILURE
    assert task.issues[0].severity == Severity.HIGH
    assert report.issue is task.issues[0]
    assert worker.status == WorkerStatus.IDLE
    assert worker.performance.tasks_failed == 1
    assert EventKind.ISSUE_REPORTED in emitter.kinds()
    assert emitter.kinds()[-1] == EventKind.TASK_FAILED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_call_timeout_fails_task(graph, registry, emitter):
    async def slow(prompt):
        await asyncio.sleep(1.0)
        return {"success": True}

    backend = ScriptedBackend(execution=slow)
    graph.add_task(make_task("T1"))
    _assign(graph, registry, "T1")

    report = await _executor(backend, graph, registry, emitter, timeout=0.05).execute("T1")

    assert report.succeeded is False
    assert "timed out" in report.issue.description
    assert report.issue.category == IssueCategory.EXECUTION_FAILURE


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transport_exception_fails_task(graph, registry, emitter):
    backend = ScriptedBackend(execution=lambda p: ConnectionError("reset by peer"))
    graph.add_task(make_task("T1"))
    worker = _assign(graph, registry, "T1")

    report = await _executor(backend, graph, registry, emitter).execute("T1")

    assert report.succeeded is False
    assert "reset by peer" in report.issue.description
    assert worker.status == WorkerStatus.IDLE


@pytest.mark.unit
@pytest.mark.asyncio
async def test_explicit_failure_reply(graph, registry, emitter):
    backend = ScriptedBackend(execution=lambda p: {"success": False, "error": "spec unclear"})
    graph.add_task(make_task("T1"))
    _assign(graph, registry, "T1")

    report = await _executor(backend, graph, registry, emitter).execute("T1")

    assert report.issue.category == IssueCategory.ERROR
    assert report.issue.description == "spec unclear"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unparseable_reply_is_lenient_success(graph, registry, emitter):
    backend = ScriptedBackend(execution=lambda p: "Here is the implementation, no JSON.")
    graph.add_task(make_task("T1"))
    _assign(graph, registry, "T1")

    report = await _executor(backend, graph, registry, emitter).execute("T1")

    assert report.succeeded is True
    assert graph.get("T1").artifacts[0].content == "Here is the implementation, no JSON."


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unexpected_exception_marks_worker_error(graph, registry, emitter):
    graph.add_task(make_task("T1"))
    worker = _assign(graph, registry, "T1")
    executor = _executor(ScriptedBackend(), graph, registry, emitter)

    with patch("taskforge.engine.execution.interpret_execution_reply", side_effect=RuntimeError("boom")):
        report = await executor.execute("T1")

    assert report.succeeded is False
    assert report.issue.severity == Severity.CRITICAL
    assert worker.status == WorkerStatus.ERROR
    assert worker.current_load == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_review_rejection_fails_task(graph, registry, emitter):
    backend = ScriptedBackend(review=lambda p: {"approved": False, "feedback": "no error handling"})
    graph.add_task(make_task("T1"))
    _assign(graph, registry, "T1")

    report = await _executor(backend, graph, registry, emitter, enable_review=True).execute("T1")

    assert report.succeeded is False
    assert report.issue.category == IssueCategory.DESIGN
    assert report.issue.severity == Severity.MEDIUM
    assert "no error handling" in report.issue.description
    assert EventKind.TASK_REVIEW in emitter.kinds()
    assert graph.get("T1").artifacts == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_review_outage_approves_with_note(graph, registry, emitter):
    backend = ScriptedBackend(review=lambda p: GenerationResult(content="", error="overloaded"))
    graph.add_task(make_task("T1"))
    _assign(graph, registry, "T1")

    report = await _executor(backend, graph, registry, emitter, enable_review=True).execute("T1")

    assert report.succeeded is True
    assert any(n.startswith("Review skipped") for n in graph.get("T1").notes)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cancellation_returns_task_to_pending(graph, registry, emitter):
    started = asyncio.Event()

    async def hang(prompt):
        started.set()
        await asyncio.Event().wait()

    graph.add_task(make_task("T1"))
    worker = _assign(graph, registry, "T1")
    executor = _executor(ScriptedBackend(execution=hang), graph, registry, emitter)

    running = asyncio.create_task(executor.execute("T1"))
    await asyncio.wait_for(started.wait(), timeout=1.0)
    running.cancel()
    with pytest.raises(asyncio.CancelledError):
        await running

    assert graph.status("T1") == TaskStatus.PENDING
    assert worker.current_load == 0
    assert worker.performance.tasks_completed == 0
    assert worker.performance.tasks_failed == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unassigned_task_is_rejected(graph, registry, emitter):
    graph.add_task(make_task("T1"))
    with pytest.raises(ValueError):
        await _executor(ScriptedBackend(), graph, registry, emitter).execute("T1")
