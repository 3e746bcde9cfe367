"""
Tests for Goal Planning
=======================
"""

from unittest.mock import MagicMock

import pytest

from taskforge.engine.errors import BackendUnavailable, KnowledgeStoreUnavailable, UnparseableResult
from taskforge.engine.graph import TaskGraph
from taskforge.engine.models import TaskCategory
from taskforge.engine.planning import TaskPlanner, plan_prefix
from taskforge.engine.prompts import PromptKind
from taskforge.knowledge.store import InMemoryKnowledgeStore, KnowledgeEntry
from taskforge.llm.backend import GenerationResult
from taskforge.llm.echo_backend import EchoBackend
from taskforge.llm.gateway import BackendGateway

from conftest import ScriptedBackend


GOAL = "Build a todo list REST api with tests"


def _planner(backend, knowledge=None):
    return TaskPlanner(BackendGateway(backend, max_concurrency=1, timeout_seconds=5.0), knowledge)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_offline_plan_is_a_valid_graph():
    tasks, edges = await _planner(EchoBackend()).plan(GOAL, ["python"])

    prefix = plan_prefix(GOAL)
    assert [t.id for t in tasks] == [f"{prefix}.T1", f"{prefix}.T2", f"{prefix}.T3"]
    assert edges == [(f"{prefix}.T1", f"{prefix}.T2"), (f"{prefix}.T2", f"{prefix}.T3")]
    assert tasks[2].category == TaskCategory.TESTING
    assert all(t.dependencies == [] for t in tasks)

    graph = TaskGraph.from_submission(tasks, edges)
    assert [t.id for t in graph.ready_tasks()] == [f"{prefix}.T1"]


@pytest.mark.unit
def test_plan_prefix_is_stable():
    assert plan_prefix(GOAL) == plan_prefix(f"  {GOAL}\n")
    assert plan_prefix(GOAL) != plan_prefix("something else")
    assert plan_prefix(GOAL).startswith("plan_")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_dependencies_by_title_and_unknown_refs_dropped():
    backend = ScriptedBackend(planning=lambda p: {"tasks": [
        {"id": "a", "title": "Design schema"},
        {"id": "b", "title": "Build endpoints", "dependencies": ["design schema", "ghost", "b"]},
    ]})
    tasks, edges = await _planner(backend).plan(GOAL)

    a, b = (t.id for t in tasks)
    assert edges == [(a, b)]


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply",
    [
        "I cannot plan this.",
        {"tasks": []},
        {"tasks": [{"id": "a", "title": "x", "priority": 42}]},
        {"tasks": [{"id": "a", "title": "x"}, {"id": "a", "title": "y"}]},
    ],
)
async def test_invalid_plan_raises(reply):
    with pytest.raises(UnparseableResult):
        await _planner(ScriptedBackend(planning=lambda p: reply)).plan(GOAL)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_backend_failure_propagates():
    backend = ScriptedBackend(planning=lambda p: GenerationResult(content="", error="overloaded"))
    with pytest.raises(BackendUnavailable):
        await _planner(backend).plan(GOAL)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_empty_goal_rejected():
    with pytest.raises(ValueError):
        await _planner(EchoBackend()).plan("   ")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_lessons_are_included_in_prompt():
    store = InMemoryKnowledgeStore([
        KnowledgeEntry(
            category="execution_failure",
            content="Pin dependency versions before building",
            tags=["execution_failure", "error_pattern"],
            importance=8,
        ),
    ])
    backend = ScriptedBackend()
    await _planner(backend, store).plan(GOAL)

    prompt = backend.calls_for(PromptKind.PLANNING)[0]
    assert "(importance 8) Pin dependency versions before building" in prompt


@pytest.mark.unit
@pytest.mark.asyncio
async def test_knowledge_outage_does_not_block_planning():
    store = MagicMock()
    store.query.side_effect = KnowledgeStoreUnavailable("ledger locked")
    backend = ScriptedBackend()

    tasks, _ = await _planner(backend, store).plan(GOAL)

    assert len(tasks) == 3
    assert "No relevant lessons recorded." in backend.calls_for(PromptKind.PLANNING)[0]
