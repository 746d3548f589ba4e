"""OpenRouter LLM client factory with a small text-completion adapter."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Protocol

from recipe_ingest.config import settings
from recipe_ingest.services.logger import log_llm_call


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class MessageResponse:
    text: str
    usage: Usage


class OpenRouterMessagesAdapter:
    def __init__(self, openai_client: Any):
        self._client = openai_client

    @staticmethod
    def _to_openai_messages(system: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        openai_messages: list[dict[str, Any]] = []
        if system:
            openai_messages.append({"role": "system", "content": system})
        for message in messages:
            openai_messages.append({"role": message["role"], "content": str(message["content"])})
        return openai_messages

    @staticmethod
    def _from_openai_response(response: Any) -> MessageResponse:
        message = response.choices[0].message
        usage = getattr(response, "usage", None)
        return MessageResponse(
            text=getattr(message, "content", None) or "",
            usage=Usage(
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
        )

    async def create(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        messages: list[dict[str, Any]],
        temperature: float = 0.0,
    ) -> MessageResponse:
        response = await self._client.chat.completions.create(
            model=model,
            messages=self._to_openai_messages(system, messages),
            max_tokens=max_tokens,
            temperature=temperature,
        )
        return self._from_openai_response(response)


class OpenRouterClientAdapter:
    def __init__(self, openai_client: Any):
        self.messages = OpenRouterMessagesAdapter(openai_client)


class CompletionClient(Protocol):
    async def complete(
        self,
        *,
        system: str,
        messages: list[dict[str, Any]],
        caller: str,
        temperature: float = 0.0,
        max_tokens: int = 4096,
    ) -> str: ...


class LlmClient:
    """Text completion over the OpenRouter adapter with call logging."""

    def __init__(self, adapter: OpenRouterClientAdapter | None = None, model: str | None = None):
        self._adapter = adapter
        self.model = model or get_model()

    @property
    def adapter(self) -> OpenRouterClientAdapter:
        if self._adapter is None:
            self._adapter = client()
        return self._adapter

    async def complete(
        self,
        *,
        system: str,
        messages: list[dict[str, Any]],
        caller: str,
        temperature: float = 0.0,
        max_tokens: int = 4096,
    ) -> str:
        started = time.monotonic()
        try:
            response = await self.adapter.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                system=system,
                messages=messages,
                temperature=temperature,
            )
        except Exception as exc:
            log_llm_call(
                model=self.model,
                caller=caller,
                duration_ms=int((time.monotonic() - started) * 1000),
                status="error",
                error=str(exc),
            )
            raise
        log_llm_call(
            model=self.model,
            caller=caller,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return response.text


def get_client() -> OpenRouterClientAdapter:
    """Get OpenRouter client via OpenAI-compatible SDK."""
    from openai import AsyncOpenAI

    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    openai_client = AsyncOpenAI(
        api_key=settings.openrouter_api_key or "missing-key",
        base_url=base_url,
        timeout=settings.llm_request_timeout_seconds,
    )
    return OpenRouterClientAdapter(openai_client)


def get_model() -> str:
    """Get the active OpenRouter model id."""
    if settings.openrouter_model:
        return settings.openrouter_model
    return settings.default_model


_client: OpenRouterClientAdapter | None = None


def client() -> OpenRouterClientAdapter:
    """Get or create the LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client
