"""Tests for forktrace.analysis.explainer and forktrace.core.llm_client.

Covers:
- Ollama request shape and availability probe
- Retry on transient failures, no retry on client errors
- AnalysisAvailable / AnalysisUnavailable results (never raising)
- Fallback text
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from forktrace.analysis.explainer import (
    FALLBACK_MODEL,
    AIExplainer,
    AnalysisAvailable,
    AnalysisUnavailable,
)
from forktrace.core.errors import AnalysisError
from forktrace.core.llm_client import LLMClient, is_transient


# ── Fixtures ─────────────────────────────────────────────────────────────────


def ollama_client(settings, handler) -> LLMClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LLMClient(settings, http_client=http)


@pytest.fixture
def no_sleep():
    with patch("forktrace.core.llm_client.asyncio.sleep", new_callable=AsyncMock) as mock:
        yield mock


# ── LLM client ───────────────────────────────────────────────────────────────


class TestLLMClient:
    @pytest.mark.asyncio
    async def test_ollama_generate(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": "  The transfer succeeded.  "})

        text = await ollama_client(settings, handler).complete("explain", system="auditor")
        assert text == "The transfer succeeded."
        assert seen["url"] == "http://localhost:11434/api/generate"
        assert seen["body"]["stream"] is False
        assert seen["body"]["model"] == "llama3.2"
        assert seen["body"]["system"] == "auditor"
        assert seen["body"]["options"]["temperature"] == 0.3
        assert seen["body"]["options"]["top_p"] == 0.9

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, settings, no_sleep):
        responses = [httpx.Response(503), httpx.Response(200, json={"response": "ok"})]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        assert await ollama_client(settings, handler).complete("x") == "ok"
        assert no_sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, settings, no_sleep):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404, json={"error": "model not found"})

        with pytest.raises(AnalysisError, match="ollama request failed"):
            await ollama_client(settings, handler).complete("x")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_empty_response_is_error(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"done": True})

        with pytest.raises(AnalysisError, match="empty response"):
            await ollama_client(settings, handler).complete("x")

    @pytest.mark.asyncio
    async def test_is_available(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/tags"
            return httpx.Response(200, json={"models": []})

        assert await ollama_client(settings, handler).is_available()

    @pytest.mark.asyncio
    async def test_is_available_when_down(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused")

        assert not await ollama_client(settings, handler).is_available()

    @pytest.mark.asyncio
    async def test_hosted_provider_availability_follows_key(self, settings):
        s = settings.model_copy(update={"anthropic_api_key": ""})
        assert not await LLMClient(s, provider="anthropic").is_available()

    def test_unknown_provider(self, settings):
        with pytest.raises(AnalysisError, match="Unsupported AI provider"):
            LLMClient(settings, provider="bard")

    def test_is_transient(self):
        request = httpx.Request("POST", "http://x")
        assert is_transient(httpx.ConnectError("x"))
        assert is_transient(httpx.HTTPStatusError("x", request=request, response=httpx.Response(429)))
        assert not is_transient(httpx.HTTPStatusError("x", request=request, response=httpx.Response(400)))
        assert not is_transient(ValueError("x"))


# ── Explainer ────────────────────────────────────────────────────────────────


class TestAIExplainer:
    @pytest.mark.asyncio
    async def test_analysis_available(self, settings, success_outcome, sample_diff):
        client = AsyncMock()
        client.model = "llama3.2"
        client.complete.return_value = "## Summary\nA plain transfer."

        result = await AIExplainer(settings, client=client).analyze_trace(success_outcome, sample_diff)

        assert isinstance(result, AnalysisAvailable)
        assert result.available
        assert result.model == "llama3.2"
        prompt = client.complete.await_args.args[0]
        assert '"status": "success"' in prompt
        assert '"balance_change": "-1000000000000000000"' in prompt

    @pytest.mark.asyncio
    async def test_analysis_unavailable(self, settings, failed_outcome):
        client = AsyncMock()
        client.complete.side_effect = AnalysisError("ollama request failed: refused")

        result = await AIExplainer(settings, client=client).analyze_trace(failed_outcome)

        assert isinstance(result, AnalysisUnavailable)
        assert not result.available
        assert "refused" in result.reason
        assert "Status: FAILED" in result.fallback
        assert "Insufficient balance" in result.fallback
        data = result.to_dict()
        assert data["available"] is False
        assert data["model"] == FALLBACK_MODEL

    @pytest.mark.asyncio
    async def test_gas_fallback(self, settings, success_outcome):
        client = AsyncMock()
        client.endpoint = "http://localhost:11434"
        client.complete.side_effect = AnalysisError("down")

        result = await AIExplainer(settings, client=client).analyze_gas_usage(success_outcome)

        assert isinstance(result, AnalysisUnavailable)
        assert "Gas Used: 21,000" in result.fallback
        assert "Efficiency: 42.00% of limit used" in result.fallback

    @pytest.mark.asyncio
    async def test_end_to_end_with_ollama_down(self, settings, success_outcome):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused")

        with patch("forktrace.core.llm_client.asyncio.sleep", new_callable=AsyncMock):
            explainer = AIExplainer(settings, client=ollama_client(settings, handler))
            result = await explainer.analyze_trace(success_outcome)
        assert isinstance(result, AnalysisUnavailable)
        assert "Status: SUCCESS" in result.fallback
