"""
Claude Reasoning Backend
========================
ReasoningBackend implementation on top of the Anthropic API with:
- Model tiers (Opus, Sonnet, Haiku) selectable per call through model_hint
- Prompt caching for the stable system prompt
- Retries with exponential backoff on transient API errors
- Token usage tracking and cost estimation

Model Selection Guide:
- Opus: Goal planning on large projects
- Sonnet: Task execution, recovery decisions (default)
- Haiku: Durability classification and other short structured replies
"""

import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

import anthropic
import httpx
from loguru import logger
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from taskforge.config import TIMEOUTS
from taskforge.llm.backend import GenerationOptions, GenerationResult, TokenCounts


class ModelTier(Enum):
    """Model tiers for per-call selection."""
    OPUS = "opus"       # Premium: maximum intelligence, complex planning
    SONNET = "sonnet"   # Balanced: execution and decisions
    HAIKU = "haiku"     # Fast: classification and short structured replies


@dataclass
class ModelInfo:
    """Information about a Claude model."""
    id: str
    tier: ModelTier
    input_price_per_mtok: float
    output_price_per_mtok: float
    max_output: int


MODELS = {
    ModelTier.OPUS: ModelInfo(
        id="claude-opus-4-5-20251101",
        tier=ModelTier.OPUS,
        input_price_per_mtok=5.0,
        output_price_per_mtok=25.0,
        max_output=64_000,
    ),
    ModelTier.SONNET: ModelInfo(
        id="claude-sonnet-4-5-20250929",
        tier=ModelTier.SONNET,
        input_price_per_mtok=3.0,
        output_price_per_mtok=15.0,
        max_output=64_000,
    ),
    ModelTier.HAIKU: ModelInfo(
        id="claude-haiku-4-5-20251001",
        tier=ModelTier.HAIKU,
        input_price_per_mtok=1.0,
        output_price_per_mtok=5.0,
        max_output=64_000,
    ),
}

DEFAULT_SYSTEM_PROMPT = (
    "You are an autonomous software engineering worker inside a task orchestration "
    "engine. Follow the requested output format exactly. When JSON is requested, "
    "reply with a single JSON object and nothing else."
)

# Transient errors worth retrying; anything else surfaces immediately
RETRYABLE_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
)


def resolve_tier(hint: Optional[Union[ModelTier, str]], default: ModelTier) -> ModelTier:
    if hint is None:
        return default
    if isinstance(hint, ModelTier):
        return hint
    tier_map = {"opus": ModelTier.OPUS, "sonnet": ModelTier.SONNET, "haiku": ModelTier.HAIKU}
    return tier_map.get(hint.lower(), default)


def estimate_cost(tier: ModelTier, prompt_tokens: int, completion_tokens: int) -> float:
    """Estimate cost in USD based on model pricing."""
    info = MODELS[tier]
    return (
        (prompt_tokens / 1_000_000) * info.input_price_per_mtok
        + (completion_tokens / 1_000_000) * info.output_price_per_mtok
    )


@dataclass
class TokenUsage:
    """Track token usage across requests."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def cache_savings(self) -> float:
        """Percentage of input tokens served from cache."""
        total_input = self.input_tokens + self.cache_read_tokens
        if total_input == 0:
            return 0.0
        return (self.cache_read_tokens / total_input) * 100

    def add(self, usage: dict, cost: float = 0.0):
        """Add usage from an API response."""
        self.input_tokens += usage.get("input_tokens", 0) or 0
        self.output_tokens += usage.get("output_tokens", 0) or 0
        self.cache_creation_tokens += usage.get("cache_creation_input_tokens", 0) or 0
        self.cache_read_tokens += usage.get("cache_read_input_tokens", 0) or 0
        self.cost_usd += cost


class ClaudeClient:
    """
    Claude reasoning backend.

    Transport failures that survive the retries are raised to the caller;
    API status errors (bad request, permission, overload after retries) are
    returned as a GenerationResult with ``error`` set.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        default_model: Union[ModelTier, str] = ModelTier.SONNET,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        enable_caching: bool = True,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        """
        Initialize Claude client.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            default_model: Default model tier (OPUS, SONNET, HAIKU) or string
            system_prompt: System prompt sent with every request
            enable_caching: Whether to mark the system prompt for caching
            client: Preconfigured async client (mainly for tests)
        """
        if client is None:
            self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
            if not self.api_key:
                raise ValueError("ANTHROPIC_API_KEY not found in environment")
            timeout_config = httpx.Timeout(TIMEOUTS.BACKEND_CALL, connect=TIMEOUTS.BACKEND_CONNECT)
            client = anthropic.AsyncAnthropic(api_key=self.api_key, timeout=timeout_config)
        self.async_client = client

        self.default_model = resolve_tier(default_model, ModelTier.SONNET)
        self.system_prompt = system_prompt
        self.enable_caching = enable_caching
        self.usage = TokenUsage()

        logger.info(f"Claude client initialized with model: {MODELS[self.default_model].id}")

    def _system_content(self):
        if self.enable_caching:
            return [{
                "type": "text",
                "text": self.system_prompt,
                "cache_control": {"type": "ephemeral"},
            }]
        return self.system_prompt

    async def generate(self, prompt: str, options: GenerationOptions) -> GenerationResult:
        tier = resolve_tier(options.model_hint, self.default_model)
        model_id = MODELS[tier].id

        kwargs = {
            "model": model_id,
            "max_tokens": min(options.max_tokens, MODELS[tier].max_output),
            "messages": [{"role": "user", "content": prompt}],
            "temperature": options.temperature,
            "system": self._system_content(),
        }

        @retry(
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            reraise=True,
        )
        async def _make_request():
            return await self.async_client.messages.create(**kwargs)

        started = time.monotonic()
        try:
            response = await _make_request()
        except anthropic.APIStatusError as e:
            latency_ms = (time.monotonic() - started) * 1000
            logger.warning(f"Claude API error [{model_id}]: {e.status_code} {e.message}")
            return GenerationResult(content="", latency_ms=latency_ms, error=f"{e.status_code}: {e.message}")
        latency_ms = (time.monotonic() - started) * 1000

        usage = response.usage.model_dump()
        tokens = TokenCounts(
            prompt=usage.get("input_tokens", 0) or 0,
            completion=usage.get("output_tokens", 0) or 0,
        )
        cost = estimate_cost(tier, tokens.prompt, tokens.completion)
        self.usage.add(usage, cost)

        text = "".join(
            getattr(block, "text", "") for block in response.content if getattr(block, "type", "text") == "text"
        )
        logger.debug(f"Claude response [{model_id}]: {tokens.total} tokens in {latency_ms:.0f}ms")
        return GenerationResult(content=text, tokens=tokens, latency_ms=latency_ms, cost=cost)

    def get_usage_summary(self) -> dict:
        """Get token usage summary with cost estimate."""
        return {
            "input_tokens": self.usage.input_tokens,
            "output_tokens": self.usage.output_tokens,
            "total_tokens": self.usage.total_tokens,
            "cache_creation_tokens": self.usage.cache_creation_tokens,
            "cache_read_tokens": self.usage.cache_read_tokens,
            "cache_savings_percent": f"{self.usage.cache_savings:.1f}%",
            "estimated_cost_usd": f"${self.usage.cost_usd:.4f}",
        }

    def reset_usage(self):
        """Reset token usage counters."""
        self.usage = TokenUsage()
