from __future__ import annotations

import pytest

from recipe_ingest.services.prompt_store import get_prompt_template, has_prompt, override_problem, render_prompt


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt(
        "extract.recipe_prompt",
        url="https://example.com/soup",
        content="Tomato soup page text",
    )
    assert "https://example.com/soup" in prompt
    assert "Tomato soup page text" in prompt


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")


def test_render_prompt_reports_missing_values():
    with pytest.raises(KeyError) as exc_info:
        render_prompt("extract.recipe_prompt", url="https://example.com/soup")
    assert "content" in str(exc_info.value)


def test_override_replaces_catalog_text():
    prompt = render_prompt("extract.recipe_prompt", override="Only $url please", url="https://example.com")
    assert prompt == "Only https://example.com please"


def test_group_keys_are_not_prompts():
    with pytest.raises(TypeError):
        get_prompt_template("extract")
    assert not has_prompt("extract")
    assert has_prompt("normalize.patch_prompt")
    assert not has_prompt("normalize.nope")


@pytest.mark.parametrize(
    "key,text,problem",
    [
        ("extract.recipe_prompt", "Recipe at $url:\n$content", None),
        ("extract.recipe_prompt", "Costs $$5, see $url", None),
        ("extract.system_prompt", "Be terse.", None),
        ("extract.recipe_prompt", "Use $nope on $url", "unknown placeholders $nope"),
        ("extract.recipe_prompt", "Costs $5", "invalid '$' placeholder (write '$$' for a literal dollar sign)"),
        ("extract.nope", "anything", "unknown prompt 'extract.nope'"),
    ],
)
def test_override_problem(key, text, problem):
    assert override_problem(key, text) == problem
