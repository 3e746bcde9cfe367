"""
Shared Test Fixtures
====================
Scripted reasoning backend, stores and engine configuration used across the
test suite. No test reaches the network.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from taskforge.engine.events import EventBus
from taskforge.engine.graph import TaskGraph
from taskforge.engine.models import Task
from taskforge.engine.orchestrator import EngineConfig
from taskforge.engine.prompts import PromptKind, prompt_kind
from taskforge.engine.workers import WorkerRegistry
from taskforge.knowledge.store import InMemoryKnowledgeStore
from taskforge.llm.backend import GenerationOptions, GenerationResult, TokenCounts
from taskforge.llm.echo_backend import EchoBackend
from taskforge.llm.gateway import BackendGateway


Handler = Callable[[str], Any]


class ScriptedBackend:
    """Backend whose replies are scripted per prompt kind.

    A handler receives the prompt and returns a dict (sent as JSON), a
    string, a GenerationResult, or an exception instance to raise. Handlers
    may be coroutines. Kinds without a handler get the EchoBackend reply.
    """

    def __init__(self, **handlers: Handler):
        self.handlers: Dict[str, Handler] = handlers
        self.echo = EchoBackend()
        self.calls: List[Tuple[Optional[PromptKind], str]] = []

    def calls_for(self, kind: PromptKind) -> List[str]:
        return [p for k, p in self.calls if k == kind]

    async def generate(self, prompt: str, options: GenerationOptions) -> GenerationResult:
        kind = prompt_kind(prompt)
        self.calls.append((kind, prompt))
        handler = self.handlers.get(kind.value if kind else "")
        if handler is None:
            return await self.echo.generate(prompt, options)

        reply = handler(prompt)
        if asyncio.iscoroutine(reply):
            reply = await reply
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, GenerationResult):
            return reply
        content = reply if isinstance(reply, str) else json.dumps(reply)
        return GenerationResult(content=content, tokens=TokenCounts(prompt=10, completion=5), cost=0.001)


class RecordingEmitter:
    """Stand-in for a run-bound ``emit(kind, **payload)`` callable."""

    def __init__(self):
        self.events: List[Tuple[Any, Dict[str, Any]]] = []

    def __call__(self, kind, **payload):
        self.events.append((kind, payload))

    def kinds(self) -> List[Any]:
        return [k for k, _ in self.events]

    def of(self, kind) -> List[Dict[str, Any]]:
        return [p for k, p in self.events if k == kind]


def make_task(task_id: str, title: Optional[str] = None, **kwargs) -> Task:
    return Task(id=task_id, title=title or f"Task {task_id}", **kwargs)


@pytest.fixture
def temp_project_folder(tmp_path):
    return tmp_path


@pytest.fixture
def scripted_backend():
    return ScriptedBackend()


@pytest.fixture
def gateway(scripted_backend):
    return BackendGateway(scripted_backend, max_concurrency=4, timeout_seconds=5.0)


@pytest.fixture
def registry():
    reg = WorkerRegistry(max_workers=16)
    reg.register_primary()
    return reg


@pytest.fixture
def graph():
    return TaskGraph()


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest.fixture
def knowledge_store():
    return InMemoryKnowledgeStore()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def fast_config():
    """Engine settings with short ticks so loop tests finish quickly."""
    return EngineConfig(
        tick_seconds=0.01,
        stuck_sweep_seconds=0.05,
        max_concurrency=4,
        max_workers=16,
        backend_timeout_seconds=2.0,
        cancel_grace_seconds=0.2,
    )
