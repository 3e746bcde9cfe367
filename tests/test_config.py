"""
Tests for Configuration Defaults
================================
"""

from dataclasses import FrozenInstanceError

import pytest

import taskforge.config as config_module
from taskforge.config import GENERATION, KNOWLEDGE, ORCHESTRATION, TIMEOUTS, get_timeout
from taskforge.engine.orchestrator import EngineConfig


class TestDefaults:

    @pytest.mark.unit
    def test_orchestration_intervals(self):
        assert ORCHESTRATION.TICK_SECONDS > 0
        assert ORCHESTRATION.STUCK_SWEEP_SECONDS >= ORCHESTRATION.TICK_SECONDS
        assert ORCHESTRATION.MAX_CONCURRENCY >= 1
        assert ORCHESTRATION.MAX_RECOVERY_ATTEMPTS >= 1

    @pytest.mark.unit
    def test_knowledge_defaults(self):
        assert KNOWLEDGE.STORE_DIR
        assert KNOWLEDGE.LEDGER_FILENAME.endswith(".jsonl")
        assert KNOWLEDGE.PLANNING_CONTEXT_LIMIT > 0

    @pytest.mark.unit
    def test_generation_limits_positive(self):
        assert GENERATION.EXECUTION_MAX_TOKENS > 0
        assert GENERATION.DECISION_MAX_TOKENS > 0

    @pytest.mark.unit
    def test_config_is_frozen(self):
        with pytest.raises(FrozenInstanceError):
            TIMEOUTS.BACKEND_CALL = 1


class TestGetTimeout:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "operation,attr",
        [
            ("backend", "BACKEND_CALL"),
            ("backend_connect", "BACKEND_CONNECT"),
            ("cancel", "CANCEL_GRACE"),
            ("file_lock", "FILE_LOCK"),
        ],
    )
    def test_known_operations(self, operation, attr):
        assert get_timeout(operation) == getattr(TIMEOUTS, attr)

    @pytest.mark.unit
    def test_unknown_operation_falls_back_to_backend(self):
        assert get_timeout("something") == TIMEOUTS.BACKEND_CALL


@pytest.mark.unit
def test_engine_config_takes_module_defaults():
    config = EngineConfig()
    assert config.tick_seconds == ORCHESTRATION.TICK_SECONDS
    assert config.backend_timeout_seconds == TIMEOUTS.BACKEND_CALL
    assert config.cancel_grace_seconds == TIMEOUTS.CANCEL_GRACE
    assert config.event_history_limit == ORCHESTRATION.EVENT_HISTORY_LIMIT
    assert config.retained_runs == ORCHESTRATION.RETAINED_FINISHED_RUNS


@pytest.mark.unit
def test_worker_cap_is_opt_in(monkeypatch):
    monkeypatch.delenv("TASKFORGE_MAX_WORKERS", raising=False)
    assert config_module._env_optional_int("TASKFORGE_MAX_WORKERS") is None
    assert EngineConfig().max_workers == ORCHESTRATION.MAX_WORKERS

    monkeypatch.setenv("TASKFORGE_MAX_WORKERS", "8")
    assert config_module._env_optional_int("TASKFORGE_MAX_WORKERS") == 8
