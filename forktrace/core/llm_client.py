"""LLM client — one async interface over Ollama, Claude and GPT with retries."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import anthropic
import httpx
import openai

from forktrace.core.config import Settings, get_settings
from forktrace.core.errors import AnalysisError

logger = logging.getLogger(__name__)

_TRANSIENT_SDK_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


def is_transient(exc: BaseException) -> bool:
    """Return True for errors worth another attempt."""
    if isinstance(exc, _TRANSIENT_SDK_ERRORS):
        return True
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


class LLMClient:
    """Unified async client for transaction explanations.

    Features:
    - Local Ollama (default), Anthropic or OpenAI backends
    - Exponential backoff retries on rate limits / transient errors
    - Token usage tracking for the hosted providers
    """

    def __init__(
        self,
        settings: Settings | None = None,
        provider: str | None = None,
        endpoint: str | None = None,
        model: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        s = settings or get_settings()
        self.provider = provider or s.ai_provider
        self.endpoint = (endpoint or s.ai_endpoint).rstrip("/")
        self.model = model or s.ai_model
        self._settings = s
        self._temperature = s.llm_temperature
        self._max_tokens = s.llm_max_tokens
        self._max_retries = max(1, s.llm_max_retries)
        self._retry_base_delay = s.llm_retry_base_delay
        self._http = http_client
        self._anthropic: anthropic.AsyncAnthropic | None = None
        self._openai: openai.AsyncOpenAI | None = None
        self._total_input_tokens = 0
        self._total_output_tokens = 0

        if self.provider not in ("ollama", "anthropic", "openai"):
            raise AnalysisError(f"Unsupported AI provider: {self.provider}")

    @property
    def token_usage(self) -> dict[str, int]:
        return {
            "input_tokens": self._total_input_tokens,
            "output_tokens": self._total_output_tokens,
        }

    async def is_available(self) -> bool:
        """Cheap reachability check; never raises."""
        if self.provider == "anthropic":
            return bool(self._settings.anthropic_api_key)
        if self.provider == "openai":
            return bool(self._settings.openai_api_key)
        try:
            response = await self._client().get(f"{self.endpoint}/api/tags", timeout=5.0)
        except httpx.HTTPError as exc:
            logger.debug("Ollama not reachable at %s: %s", self.endpoint, exc)
            return False
        return response.status_code == 200

    async def complete(self, prompt: str, system: str | None = None) -> str:
        """Send a prompt and return the model's text.

        Raises:
            AnalysisError: the provider failed after retries or returned nothing
        """
        call = {
            "ollama": self._call_ollama,
            "anthropic": self._call_claude,
            "openai": self._call_openai,
        }[self.provider]
        try:
            text = await self._retry(call, prompt, system)
        except AnalysisError:
            raise
        except Exception as e:
            raise AnalysisError(f"{self.provider} request failed: {e}", cause=e) from e
        if not text or not text.strip():
            raise AnalysisError(f"{self.provider} returned an empty response")
        return text.strip()

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def _retry(self, fn, *args, **kwargs) -> str:
        """Retry a function with exponential backoff."""
        last_error: BaseException | None = None
        for attempt in range(self._max_retries):
            try:
                return await fn(*args, **kwargs)
            except Exception as e:
                if not is_transient(e):
                    raise
                last_error = e
                if attempt + 1 < self._max_retries:
                    delay = self._retry_base_delay * (2 ** attempt)
                    logger.warning(
                        "LLM retry %d/%d after %.1fs: %s", attempt + 1, self._max_retries, delay, e,
                        extra={"attempt": attempt + 1},
                    )
                    await asyncio.sleep(delay)
        raise last_error  # type: ignore[misc]

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._settings.ai_timeout)
        return self._http

    async def _call_ollama(self, prompt: str, system: str | None) -> str:
        """Call a local Ollama server (non-streaming)."""
        payload: dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self._temperature,
                "top_p": 0.9,
                "num_predict": self._max_tokens,
            },
        }
        if system:
            payload["system"] = system
        response = await self._client().post(f"{self.endpoint}/api/generate", json=payload)
        response.raise_for_status()
        return response.json().get("response", "")

    async def _call_claude(self, prompt: str, system: str | None) -> str:
        """Call Claude API (async)."""
        if self._anthropic is None:
            self._anthropic = anthropic.AsyncAnthropic(api_key=self._settings.anthropic_api_key)
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system
        message = await self._anthropic.messages.create(**kwargs)
        self._total_input_tokens += message.usage.input_tokens
        self._total_output_tokens += message.usage.output_tokens
        return message.content[0].text

    async def _call_openai(self, prompt: str, system: str | None) -> str:
        """Call OpenAI API (async)."""
        if self._openai is None:
            self._openai = openai.AsyncOpenAI(api_key=self._settings.openai_api_key)
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        response = await self._openai.chat.completions.create(
            model=self.model,
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            messages=messages,
        )
        usage = response.usage
        if usage:
            self._total_input_tokens += usage.prompt_tokens
            self._total_output_tokens += usage.completion_tokens
        return response.choices[0].message.content or ""
