"""Reasoning backend interface used by the orchestration engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol


@dataclass
class GenerationOptions:
    """Per-call generation settings."""

    max_tokens: int = 2000
    temperature: float = 0.2
    model_hint: Optional[str] = None  # e.g. "haiku" for cheap classification calls


@dataclass
class TokenCounts:
    prompt: int = 0
    completion: int = 0

    @property
    def total(self) -> int:
        return self.prompt + self.completion

    def to_dict(self) -> Dict[str, int]:
        return {"prompt": self.prompt, "completion": self.completion, "total": self.total}


@dataclass
class GenerationResult:
    """Outcome of one backend call.

    A non-empty ``error`` means the backend answered but reported a failure;
    ``content`` should be ignored in that case.
    """

    content: str
    tokens: TokenCounts = field(default_factory=TokenCounts)
    latency_ms: float = 0.0
    cost: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.error


class ReasoningBackend(Protocol):
    """Protocol implemented by reasoning backends."""

    async def generate(self, prompt: str, options: GenerationOptions) -> GenerationResult:
        """Generate a completion for ``prompt``."""
