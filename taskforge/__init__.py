"""
taskforge
=========
Autonomous task orchestration: a dependency graph of tasks is executed by a
pool of reasoning-backend workers, with failure recovery, durable lessons and
progress metrics.
"""

from .engine.models import Task, TaskCategory, TaskStatus
from .engine.orchestrator import EngineConfig, OrchestrationEngine, RunState, RunStatus
from .engine.planning import TaskPlanner
from .knowledge.store import InMemoryKnowledgeStore, JsonlKnowledgeStore
from .llm.echo_backend import EchoBackend

__version__ = "0.1.0"

__all__ = [
    "EchoBackend",
    "EngineConfig",
    "InMemoryKnowledgeStore",
    "JsonlKnowledgeStore",
    "OrchestrationEngine",
    "RunState",
    "RunStatus",
    "Task",
    "TaskCategory",
    "TaskPlanner",
    "TaskStatus",
]
