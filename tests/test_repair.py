from __future__ import annotations

import json

import pytest

from recipe_ingest.ingest.guardrail.repair import RepairParaphraseService, apply_section_text, recipe_sections

from conftest import (
    GUARDRAIL_SOURCE as SOURCE,
    REPHRASED_DESCRIPTION as REPHRASED,
    FakeLlm,
    copied_draft,
    make_draft,
    make_recipe,
    strict_detector,
)


def test_recipe_sections_names():
    recipe = make_recipe(description="Short blurb here", instructions=["Step one", "  ", "Step three"])
    assert recipe_sections(recipe) == {
        "description": "Short blurb here",
        "instructions[0]": "Step one",
        "instructions[2]": "Step three",
    }


def test_apply_section_text_bounds():
    recipe = make_recipe()
    assert apply_section_text(recipe, "instructions[1]", "New step")
    assert recipe.instructions[1] == "New step"
    assert not apply_section_text(recipe, "instructions[9]", "Nope")
    assert not apply_section_text(recipe, "title", "Nope")


@pytest.mark.asyncio
async def test_rewrites_offending_sections_only():
    llm = FakeLlm(json.dumps({"sections": [{"name": "description", "rephrased_text": REPHRASED}]}))
    service = RepairParaphraseService(llm, strict_detector())
    draft = copied_draft()

    result = await service.repair(draft, SOURCE)

    assert result.success
    assert not result.still_violates_policy
    assert result.repaired_sections == ["description"]
    assert result.repaired_draft.recipe.description == REPHRASED
    assert result.repaired_draft.recipe.instructions == ["Blend until smooth and serve hot"]
    assert result.repaired_draft.similarity_report is result.new_similarity_report
    # the input draft is left alone
    assert draft.recipe.description == SOURCE

    call = llm.calls[0]
    assert call["caller"] == "repair_paraphrase"
    assert '"name": "description"' in call["messages"][0]["content"]
    assert "instructions[0]" not in call["messages"][0]["content"]


@pytest.mark.asyncio
async def test_clean_draft_needs_no_llm():
    llm = FakeLlm()
    result = await RepairParaphraseService(llm, strict_detector()).repair(make_draft(), SOURCE)
    assert result.success
    assert not result.still_violates_policy
    assert llm.calls == []


@pytest.mark.asyncio
async def test_unparseable_response_fails():
    llm = FakeLlm("I cannot help with that")
    result = await RepairParaphraseService(llm, strict_detector()).repair(copied_draft(), SOURCE)
    assert not result.success
    assert result.still_violates_policy
    assert result.raw_llm_response == "I cannot help with that"


@pytest.mark.asyncio
async def test_llm_error_fails():
    llm = FakeLlm(RuntimeError("quota exceeded"))
    result = await RepairParaphraseService(llm, strict_detector()).repair(copied_draft(), SOURCE)
    assert not result.success
    assert result.error == "quota exceeded"


@pytest.mark.asyncio
async def test_unknown_section_names_are_ignored():
    llm = FakeLlm(json.dumps({"sections": [{"name": "title", "rephrased_text": "Something"}]}))
    result = await RepairParaphraseService(llm, strict_detector()).repair(copied_draft(), SOURCE)
    assert not result.success
    assert result.still_violates_policy
    assert result.error == "LLM returned no usable sections"
    assert result.to_dict()["repairedSections"] == []
