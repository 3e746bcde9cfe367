"""
Tests for the Claude Reasoning Backend
======================================
The Anthropic client is mocked; no request leaves the process.
"""

import os
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import httpx
import pytest

from taskforge.llm.backend import GenerationOptions
from taskforge.llm.claude_client import (
    MODELS,
    ClaudeClient,
    ModelTier,
    estimate_cost,
    resolve_tier,
)


def _response(text="{\"success\": true}", input_tokens=1000, output_tokens=200):
    usage = MagicMock()
    usage.model_dump.return_value = {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "cache_read_input_tokens": 0,
    }
    return SimpleNamespace(usage=usage, content=[SimpleNamespace(type="text", text=text)])


def _client(response=None, side_effect=None):
    mock = MagicMock()
    mock.messages.create = AsyncMock(return_value=response, side_effect=side_effect)
    return ClaudeClient(client=mock), mock


class TestModelSelection:

    @pytest.mark.unit
    def test_resolve_tier(self):
        assert resolve_tier(None, ModelTier.SONNET) == ModelTier.SONNET
        assert resolve_tier("Haiku", ModelTier.SONNET) == ModelTier.HAIKU
        assert resolve_tier(ModelTier.OPUS, ModelTier.SONNET) == ModelTier.OPUS
        assert resolve_tier("gpt", ModelTier.SONNET) == ModelTier.SONNET

    @pytest.mark.unit
    def test_estimate_cost(self):
        # 1M input at $3 + 1M output at $15
        assert estimate_cost(ModelTier.SONNET, 1_000_000, 1_000_000) == pytest.approx(18.0)


class TestClaudeClient:

    @pytest.mark.unit
    def test_requires_api_key(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ValueError):
                ClaudeClient()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_generate_success(self):
        client, mock = _client(_response())

        result = await client.generate("## taskforge:execution\nTASK: x", GenerationOptions(max_tokens=500))

        assert result.ok
        assert result.content == '{"success": true}'
        assert result.tokens.prompt == 1000
        assert result.tokens.completion == 200
        assert result.cost == pytest.approx(estimate_cost(ModelTier.SONNET, 1000, 200))
        assert client.usage.total_tokens == 1200

        kwargs = mock.messages.create.call_args.kwargs
        assert kwargs["model"] == MODELS[ModelTier.SONNET].id
        assert kwargs["max_tokens"] == 500
        assert kwargs["system"][0]["cache_control"] == {"type": "ephemeral"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_model_hint_selects_tier(self):
        client, mock = _client(_response())
        await client.generate("prompt", GenerationOptions(model_hint="haiku"))
        assert mock.messages.create.call_args.kwargs["model"] == MODELS[ModelTier.HAIKU].id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_api_status_error_is_reported_not_raised(self):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        error = anthropic.BadRequestError(
            message="prompt too long",
            response=httpx.Response(400, request=request),
            body=None,
        )
        client, _ = _client(side_effect=error)

        result = await client.generate("prompt", GenerationOptions())

        assert result.ok is False
        assert result.error.startswith("400")
        assert result.content == ""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_usage_summary_and_reset(self):
        client, _ = _client(_response(input_tokens=10, output_tokens=5))
        await client.generate("prompt", GenerationOptions())

        summary = client.get_usage_summary()
        assert summary["total_tokens"] == 15
        assert summary["estimated_cost_usd"].startswith("$")

        client.reset_usage()
        assert client.usage.total_tokens == 0

    @pytest.mark.unit
    def test_caching_can_be_disabled(self):
        client = ClaudeClient(client=MagicMock(), enable_caching=False, system_prompt="be brief")
        assert client._system_content() == "be brief"
