from __future__ import annotations

import pytest

from recipe_ingest.ingest.extract.llm import LlmRecipeExtractor
from recipe_ingest.ingest.extract.service import ExtractionService, compute_url_hash
from recipe_ingest.ingest.sanitize.service import SanitizedContent, SanitizeService

from conftest import PANCAKE_HTML, SOUP_LLM_RESPONSE, SOUP_TEXT_HTML, FakeLlm


def test_url_hash_is_stable_and_case_insensitive():
    first = compute_url_hash("https://Example.com/Soup")
    assert first == compute_url_hash("https://example.com/soup ")
    assert len(first) == 22
    assert first != compute_url_hash("https://example.com/stew")


@pytest.mark.asyncio
async def test_structured_data_wins_without_calling_llm():
    llm = FakeLlm()
    service = ExtractionService(llm_extractor=LlmRecipeExtractor(llm))
    sanitized = SanitizeService().sanitize(PANCAKE_HTML)

    result = await service.extract(sanitized, "https://www.example.com/pancakes")

    assert result.success
    assert llm.calls == []
    draft = result.draft
    assert draft.source.extraction_method == "StructuredData"
    assert draft.source.site_name == "Example Kitchen"
    assert draft.source.author == "Jane Cook"
    assert draft.source.url_hash == compute_url_hash("https://www.example.com/pancakes")
    assert draft.recipe.source is draft.source
    assert draft.source.retrieved_at is not None


@pytest.mark.asyncio
async def test_llm_fallback_when_no_json_ld():
    llm = FakeLlm(SOUP_LLM_RESPONSE)
    service = ExtractionService(llm_extractor=LlmRecipeExtractor(llm))
    sanitized = SanitizeService().sanitize(SOUP_TEXT_HTML)

    result = await service.extract(sanitized, "https://www.example.com/soup")

    assert result.success
    assert result.draft.source.extraction_method == "Llm"
    assert result.draft.source.site_name == "example.com"
    assert len(result.attempts) == 1


@pytest.mark.asyncio
async def test_broken_json_ld_falls_back_to_llm():
    llm = FakeLlm(SOUP_LLM_RESPONSE)
    service = ExtractionService(llm_extractor=LlmRecipeExtractor(llm))
    sanitized = SanitizedContent(text_content="Tomato soup text", recipe_json_ld='{"@type": "Recipe"}')

    result = await service.extract(sanitized, "https://example.com/soup")

    assert result.success
    assert [a.method for a in result.attempts] == [None, "Llm"]
    assert result.attempts[0].error_code == "MAPPING_FAILED"


@pytest.mark.asyncio
async def test_no_llm_and_no_structured_data_fails():
    result = await ExtractionService().extract(SanitizedContent(text_content="just text"), "https://example.com/x")
    assert not result.success
    assert result.error_code == "EXTRACTION_FAILED"


@pytest.mark.asyncio
async def test_llm_failure_is_reported():
    llm = FakeLlm("bad", "bad", "bad")
    service = ExtractionService(llm_extractor=LlmRecipeExtractor(llm, max_repair_attempts=2))
    result = await service.extract(SanitizedContent(text_content="text"), "https://example.com/x")
    assert not result.success
    assert result.error_code == "LLM_EXTRACTION_FAILED"
    assert result.to_dict()["attempts"][0]["repairAttempts"] == 2
