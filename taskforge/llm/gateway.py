"""
Backend Gateway
===============
Single entry point for every reasoning-backend call made by the engine.

Wraps a ReasoningBackend with:
- a semaphore bounding concurrent calls
- a per-call timeout (BackendTimeout)
- error mapping: transport exceptions and backend-reported errors both
  surface as BackendUnavailable
- usage accounting (calls, tokens, cost, latency) per call purpose
- one tracing span per call
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from loguru import logger

from taskforge.engine.errors import BackendTimeout, BackendUnavailable
from taskforge.llm.backend import GenerationOptions, GenerationResult, ReasoningBackend
from taskforge.tracing import init_tracing, safe_set_span_attributes


@dataclass
class UsageTotals:
    calls: int = 0
    failures: int = 0
    timeouts: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    latency_ms: float = 0.0
    by_purpose: Dict[str, int] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict:
        return {
            "calls": self.calls,
            "failures": self.failures,
            "timeouts": self.timeouts,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "cost": round(self.cost, 6),
            "latency_ms": round(self.latency_ms, 1),
            "by_purpose": dict(self.by_purpose),
        }


class BackendGateway:
    """Concurrency-bounded, timed access to a reasoning backend.

    Args:
        backend: Any object implementing ReasoningBackend.
        max_concurrency: Maximum simultaneous in-flight calls.
        timeout_seconds: Per-call timeout; the wait for a semaphore slot is
            not counted.
    """

    def __init__(self, backend: ReasoningBackend, max_concurrency: int, timeout_seconds: float):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.backend = backend
        self.max_concurrency = max_concurrency
        self.timeout_seconds = timeout_seconds
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._in_flight = 0
        self.usage = UsageTotals()
        self._tracer = init_tracing()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def call(self, prompt: str, options: GenerationOptions, *, purpose: str) -> GenerationResult:
        """Run one backend call.

        Raises:
            BackendTimeout: the call exceeded ``timeout_seconds``.
            BackendUnavailable: the transport failed or the backend reported
                an error.
        """
        async with self._semaphore:
            self._in_flight += 1
            self.usage.calls += 1
            self.usage.by_purpose[purpose] = self.usage.by_purpose.get(purpose, 0) + 1
            started = time.monotonic()
            with self._tracer.start_as_current_span(f"backend.{purpose}") as span:
                safe_set_span_attributes(span, {
                    "backend.purpose": purpose,
                    "backend.max_tokens": options.max_tokens,
                    "backend.temperature": options.temperature,
                    "backend.model_hint": options.model_hint,
                })
                try:
                    result = await asyncio.wait_for(
                        self.backend.generate(prompt, options), timeout=self.timeout_seconds
                    )
                except asyncio.TimeoutError:
                    self.usage.failures += 1
                    self.usage.timeouts += 1
                    safe_set_span_attributes(span, {"backend.outcome": "timeout"})
                    logger.warning(f"Backend call ({purpose}) timed out after {self.timeout_seconds}s")
                    raise BackendTimeout(self.timeout_seconds, purpose)
                except BackendUnavailable:
                    self.usage.failures += 1
                    safe_set_span_attributes(span, {"backend.outcome": "unavailable"})
                    raise
                except Exception as e:
                    self.usage.failures += 1
                    safe_set_span_attributes(span, {"backend.outcome": "transport_error", "backend.error": str(e)})
                    logger.warning(f"Backend call ({purpose}) failed: {type(e).__name__}: {e}")
                    raise BackendUnavailable(f"{type(e).__name__}: {e}") from e
                finally:
                    self._in_flight -= 1
                    self.usage.latency_ms += (time.monotonic() - started) * 1000

                self.usage.prompt_tokens += result.tokens.prompt
                self.usage.completion_tokens += result.tokens.completion
                self.usage.cost += result.cost
                safe_set_span_attributes(span, {
                    "backend.tokens.total": result.tokens.total,
                    "backend.latency_ms": result.latency_ms,
                    "backend.outcome": "error" if result.error else "ok",
                })

            if result.error:
                self.usage.failures += 1
                logger.warning(f"Backend reported error ({purpose}): {result.error}")
                raise BackendUnavailable(f"Backend reported error: {result.error}")
            return result
