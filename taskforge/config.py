"""
Centralized Configuration
=========================
Centralized configuration values and constants for the taskforge engine.

This module provides:
- Timeout configuration for reasoning backend calls and cancellation
- Orchestration loop defaults (tick cadence, concurrency ceiling, recovery limits)
- Knowledge store location
- Tracing settings

Every value can be overridden through a TASKFORGE_* environment variable.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_optional_int(name: str) -> Optional[int]:
    value = os.getenv(name, "").strip()
    return int(value) if value else None


@dataclass(frozen=True)
class TimeoutConfig:
    """Centralized timeout configuration in seconds."""

    # Reasoning backend
    BACKEND_CALL: float = float(os.getenv("TASKFORGE_BACKEND_TIMEOUT", "120"))
    BACKEND_CONNECT: float = float(os.getenv("TASKFORGE_BACKEND_CONNECT_TIMEOUT", "30"))

    # How long cancel() waits for in-flight executions before interrupting them
    CANCEL_GRACE: float = float(os.getenv("TASKFORGE_CANCEL_GRACE", "30"))

    # File operations
    FILE_LOCK: int = int(os.getenv("TASKFORGE_FILE_LOCK_TIMEOUT", "30"))


@dataclass(frozen=True)
class OrchestrationDefaults:
    """Orchestration loop defaults."""

    TICK_SECONDS: float = float(os.getenv("TASKFORGE_TICK_SECONDS", "5"))
    STUCK_SWEEP_SECONDS: float = float(os.getenv("TASKFORGE_STUCK_SWEEP_SECONDS", "30"))

    # Ceiling on concurrently in-flight tasks and reasoning-backend calls
    MAX_CONCURRENCY: int = int(os.getenv("TASKFORGE_MAX_CONCURRENCY", "4"))

    # Optional cap on registered workers (primary + spawned specialists);
    # unset means a specialist is always spawned when nothing matches
    MAX_WORKERS: Optional[int] = _env_optional_int("TASKFORGE_MAX_WORKERS")

    # Event replay: buffered events per run, and finished runs that keep a buffer
    EVENT_HISTORY_LIMIT: int = int(os.getenv("TASKFORGE_EVENT_HISTORY_LIMIT", "1000"))
    RETAINED_FINISHED_RUNS: int = int(os.getenv("TASKFORGE_RETAINED_FINISHED_RUNS", "32"))

    # Recovery
    MAX_RECOVERY_ATTEMPTS: int = int(os.getenv("TASKFORGE_MAX_RECOVERY_ATTEMPTS", "3"))
    SKIP_COOLDOWN_TICKS: int = int(os.getenv("TASKFORGE_SKIP_COOLDOWN_TICKS", "3"))

    # Quality gating (review state between in_progress and completed)
    ENABLE_REVIEW: bool = _env_bool("TASKFORGE_ENABLE_REVIEW", "false")


@dataclass(frozen=True)
class GenerationDefaults:
    """Default generation options per backend call purpose.

    Temperatures follow the engine's usage: low for decisions and
    classification, slightly higher for execution and planning.
    """

    EXECUTION_MAX_TOKENS: int = int(os.getenv("TASKFORGE_EXECUTION_MAX_TOKENS", "2000"))
    EXECUTION_TEMPERATURE: float = 0.2
    CLASSIFICATION_MAX_TOKENS: int = 1000
    CLASSIFICATION_TEMPERATURE: float = 0.1
    DECISION_MAX_TOKENS: int = 1500
    DECISION_TEMPERATURE: float = 0.2
    PLANNING_MAX_TOKENS: int = 4000
    PLANNING_TEMPERATURE: float = 0.3


@dataclass(frozen=True)
class KnowledgeConfig:
    """Knowledge store configuration."""

    STORE_DIR: str = os.getenv("TASKFORGE_KNOWLEDGE_DIR", ".taskforge")
    LEDGER_FILENAME: str = "knowledge.jsonl"
    PLANNING_CONTEXT_LIMIT: int = int(os.getenv("TASKFORGE_KNOWLEDGE_CONTEXT_LIMIT", "10"))


@dataclass(frozen=True)
class TracingConfig:
    """Tracing configuration."""

    SERVICE_NAME: str = "taskforge-orchestrator"
    OTLP_ENDPOINT: str = os.getenv("OTLP_ENDPOINT", "http://localhost:4318/v1/traces")
    ENABLED: bool = _env_bool("TASKFORGE_ENABLE_TRACING", "false")


# Global singleton instances
TIMEOUTS = TimeoutConfig()
ORCHESTRATION = OrchestrationDefaults()
GENERATION = GenerationDefaults()
KNOWLEDGE = KnowledgeConfig()
TRACING = TracingConfig()


def get_timeout(operation: str) -> float:
    """Get timeout for a specific operation type.

    Args:
        operation: One of 'backend', 'backend_connect', 'cancel', 'file_lock'

    Returns:
        Timeout in seconds
    """
    mapping = {
        "backend": TIMEOUTS.BACKEND_CALL,
        "backend_connect": TIMEOUTS.BACKEND_CONNECT,
        "cancel": TIMEOUTS.CANCEL_GRACE,
        "file_lock": TIMEOUTS.FILE_LOCK,
    }
    return mapping.get(operation, TIMEOUTS.BACKEND_CALL)
