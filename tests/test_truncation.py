from __future__ import annotations

from recipe_ingest.ingest.extract.truncation import TRUNCATION_MARKER, score_paragraph, truncate_by_importance

BOILERPLATE = " ".join(["Subscribe to our newsletter and accept cookies."] * 3)
INGREDIENTS = "Ingredients:\n- 2 cups flour\n- 1 tsp salt"
METHOD = "Instructions: preheat the oven, mix and bake for 30 minutes."


def test_short_text_is_untouched():
    assert truncate_by_importance("tiny", 100) == "tiny"
    assert truncate_by_importance("anything at all", 0) == "anything at all"


def test_recipe_paragraphs_outrank_boilerplate():
    assert score_paragraph(INGREDIENTS) > 0
    assert score_paragraph(METHOD) > score_paragraph(BOILERPLATE)


def test_keeps_important_paragraphs_in_original_order():
    text = "\n\n".join([BOILERPLATE, INGREDIENTS, METHOD])
    result = truncate_by_importance(text, 150)

    assert len(result) <= 150
    assert "Subscribe" not in result
    assert result.index("Ingredients") < result.index("Instructions")
    assert result.endswith(TRUNCATION_MARKER)


def test_single_oversized_paragraph_is_cut_to_budget():
    result = truncate_by_importance("x" * 500, 100)
    assert len(result) == 100
    assert result.endswith(TRUNCATION_MARKER)
