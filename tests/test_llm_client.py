"""Tests for the OpenRouter completion client."""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from recipe_ingest.llm_client import (
    LlmClient,
    OpenRouterClientAdapter,
    OpenRouterMessagesAdapter,
    get_model,
)


def fake_completion(text: str | None, prompt_tokens: int = 12, completion_tokens: int = 34):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def fake_openai(response=None, error: Exception | None = None) -> MagicMock:
    openai_client = MagicMock()
    openai_client.chat.completions.create = AsyncMock(side_effect=error, return_value=response)
    return openai_client


class TestGetModel:
    def test_get_model_returns_default_when_no_override(self):
        with patch("recipe_ingest.llm_client.settings") as mock_settings:
            mock_settings.openrouter_model = ""
            mock_settings.default_model = "openai/gpt-4o-mini"
            assert get_model() == "openai/gpt-4o-mini"

    def test_get_model_returns_openrouter_override(self):
        with patch("recipe_ingest.llm_client.settings") as mock_settings:
            mock_settings.openrouter_model = "openai/gpt-4.1"
            mock_settings.default_model = "openai/gpt-4o-mini"
            assert get_model() == "openai/gpt-4.1"


class TestOpenRouterAdapter:
    def test_system_prompt_leads_the_message_list(self):
        messages = OpenRouterMessagesAdapter._to_openai_messages(
            "be terse",
            [{"role": "user", "content": "hi"}, {"role": "assistant", "content": 42}],
        )
        assert messages == [
            {"role": "system", "content": "be terse"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "42"},
        ]

    def test_empty_choice_maps_to_empty_text(self):
        response = OpenRouterMessagesAdapter._from_openai_response(fake_completion(None))
        assert response.text == ""
        assert response.usage.input_tokens == 12


class TestLlmClient:
    @pytest.mark.asyncio
    async def test_complete_returns_text_and_forwards_parameters(self):
        openai_client = fake_openai(fake_completion('{"name": "Soup"}'))
        llm = LlmClient(OpenRouterClientAdapter(openai_client), model="test/model")

        text = await llm.complete(
            system="extract",
            messages=[{"role": "user", "content": "page"}],
            caller="llm_recipe_extractor",
            temperature=0.1,
            max_tokens=512,
        )

        assert text == '{"name": "Soup"}'
        kwargs = openai_client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "test/model"
        assert kwargs["max_tokens"] == 512
        assert kwargs["temperature"] == 0.1
        assert kwargs["messages"][0] == {"role": "system", "content": "extract"}

    @pytest.mark.asyncio
    async def test_complete_logs_and_reraises_failures(self):
        openai_client = fake_openai(error=RuntimeError("rate limited"))
        llm = LlmClient(OpenRouterClientAdapter(openai_client), model="test/model")

        with patch("recipe_ingest.llm_client.log_llm_call") as log_call:
            with pytest.raises(RuntimeError):
                await llm.complete(system="s", messages=[], caller="normalize_service")

        assert log_call.call_args.kwargs["status"] == "error"
        assert log_call.call_args.kwargs["caller"] == "normalize_service"
