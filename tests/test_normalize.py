from __future__ import annotations

import json

import pytest

from recipe_ingest.errors import NormalizeError
from recipe_ingest.ingest.normalize.service import (
    NormalizeService,
    PatchError,
    apply_operation,
    get_value,
    parse_pointer,
    path_exists,
)
from recipe_ingest.models.patches import NormalizePatchOperation, NormalizePatchResponse, RiskCategory

from conftest import FakeLlm, make_recipe


def patch(op: str, path: str, value=None, risk: str = "low") -> NormalizePatchOperation:
    return NormalizePatchOperation(op=op, path=path, value=value, risk_category=RiskCategory.parse(risk))


def test_parse_pointer_unescapes_tokens():
    assert parse_pointer("/a~1b/c~0d/0") == ["a/b", "c~d", "0"]
    with pytest.raises(PatchError):
        parse_pointer("name")
    with pytest.raises(PatchError):
        parse_pointer("")


def test_get_value_and_path_exists():
    document = make_recipe().to_dict()
    assert get_value(document, "/ingredients/2/unit") == "cups"
    assert path_exists(document, "/tags/0")
    assert not path_exists(document, "/tags/5")
    assert not path_exists(document, "/nope")


def test_apply_operation_on_lists():
    document = {"tags": ["a", "c"]}
    apply_operation(document, patch("add", "/tags/1", "b"))
    apply_operation(document, patch("add", "/tags/-", "d"))
    apply_operation(document, patch("remove", "/tags/0"))
    apply_operation(document, patch("replace", "/tags/0", "B"))
    assert document == {"tags": ["B", "c", "d"]}


@pytest.mark.parametrize(
    "operation",
    [
        patch("replace", "/id", "other"),
        patch("replace", "/source/url", "https://elsewhere"),
        patch("remove", "/missing"),
        patch("replace", "/tags/9", "x"),
        patch("move", "/name", "x"),
    ],
)
def test_apply_operation_rejects_invalid_targets(operation):
    with pytest.raises(PatchError):
        apply_operation(make_recipe().to_dict(), operation)


def test_apply_patches_records_original_values():
    recipe = make_recipe()
    patches = [patch("replace", "/ingredients/2/unit", "c"), patch("add", "/tags/-", "vegetarian")]

    result = NormalizeService.apply_patches(recipe, patches)

    assert result.status == "succeeded"
    assert result.applied_count == 2
    assert result.updated_recipe.ingredients[2].unit == "c"
    assert result.updated_recipe.tags == ["soup", "vegetarian"]
    assert patches[0].original_value == "cups"
    assert recipe.ingredients[2].unit == "cups"


def test_apply_patches_partial_failure_keeps_good_patches():
    patches = [
        patch("replace", "/name", "Roasted Tomato Soup"),
        patch("replace", "/createdAt", "2020-01-01"),
        patch("replace", "/name", "   "),
    ]

    result = NormalizeService.apply_patches(make_recipe(), patches)

    assert result.status == "partial"
    assert result.applied_count == 1
    assert result.failed_count == 2
    assert result.updated_recipe.name == "Roasted Tomato Soup"
    assert "read-only" in result.failed[0].error
    assert result.failed[1].error == "Recipe name cannot be empty"


def test_apply_patches_all_failed():
    result = NormalizeService.apply_patches(make_recipe(), [patch("remove", "/nothing")])
    assert result.status == "failed"
    assert result.updated_recipe.name == "Tomato Soup"


def test_validate_patches_reports_each_problem():
    patches = [
        patch("replace", "", "x"),
        patch("replace", "name", "x"),
        patch("copy", "/name", "x"),
        patch("remove", "/nutrition/calories"),
        patch("add", "/dietType", "Vegan"),
    ]
    problems = NormalizeService.validate_patches(make_recipe(), patches)
    assert problems == [
        "Patch 0: path is empty",
        "Patch 1: path must start with '/'",
        "Patch 2: invalid op 'copy'",
        "Patch 3: path '/nutrition/calories' does not exist",
    ]


def test_response_sorts_by_risk_and_treats_unknown_as_high():
    response = NormalizePatchResponse.from_dict(
        {
            "patches": [
                {"op": "replace", "path": "/servings", "value": 6, "riskCategory": "critical"},
                {"op": "REPLACE", "path": "/name", "value": "Soup", "risk_category": "medium"},
                {"op": "add", "path": "/tags/-", "value": "easy", "riskCategory": "low"},
                "not a patch",
            ],
            "summary": "Cleanup",
        }
    )
    assert [p.risk_category for p in response.patches] == [RiskCategory.LOW, RiskCategory.MEDIUM, RiskCategory.HIGH]
    assert response.patches[1].op == "replace"
    assert response.has_high_risk_changes
    assert response.risk_counts() == {"low": 1, "medium": 1, "high": 1}


@pytest.mark.asyncio
async def test_generate_patches_parses_llm_output():
    payload = {
        "patches": [
            {"op": "replace", "path": "/tags/0", "value": "Soup", "riskCategory": "low", "reason": "capitalize"}
        ],
        "summary": "One small fix",
    }
    llm = FakeLlm("```json\n" + json.dumps(payload) + "\n```")

    response = await NormalizeService(llm).generate_patches(make_recipe(), ["tag cleanup"])

    assert response.summary == "One small fix"
    assert response.patches[0].reason == "capitalize"
    assert not response.has_high_risk_changes
    call = llm.calls[0]
    assert call["caller"] == "normalize_service"
    assert "tag cleanup" in call["messages"][0]["content"]
    assert '"name": "Tomato Soup"' in call["messages"][0]["content"]


@pytest.mark.asyncio
async def test_generate_patches_error_codes():
    with pytest.raises(NormalizeError) as exc_info:
        await NormalizeService(FakeLlm("I cannot help with that")).generate_patches(make_recipe())
    assert exc_info.value.code == "NORMALIZE_PARSE_FAILED"
    assert exc_info.value.status_code == 502

    with pytest.raises(NormalizeError) as exc_info:
        await NormalizeService(FakeLlm(RuntimeError("overloaded"))).generate_patches(make_recipe())
    assert exc_info.value.code == "NORMALIZE_LLM_FAILED"


@pytest.mark.parametrize(
    "operation",
    [
        patch("replace", "/servings", "lots"),
        patch("replace", "/instructions", "Mix well"),
        patch("replace", "/ingredients/0", "salt"),
        patch("add", "/ingredients/-", ["1 cup", "water"]),
        patch("replace", "/prepTimeMinutes", True),
        patch("add", "/rating", 5),
    ],
)
def test_apply_patches_rejects_values_of_the_wrong_type(operation):
    recipe = make_recipe()

    result = NormalizeService.apply_patches(recipe, [operation])

    assert result.status == "failed"
    assert result.applied_count == 0
    assert result.updated_recipe.to_dict() == recipe.to_dict()


def test_wrong_type_patch_fails_without_blocking_the_rest():
    patches = [
        patch("replace", "/servings", "lots"),
        patch("replace", "/instructions", "Mix well"),
        patch("replace", "/servings", 6),
        patch("add", "/ingredients/-", {"name": "salt"}),
        patch("replace", "/nutrition", {"calories": 120}),
    ]

    result = NormalizeService.apply_patches(make_recipe(), patches)

    assert result.status == "partial"
    assert [p.path for p in result.applied] == ["/servings", "/ingredients/-", "/nutrition"]
    assert result.failed[0].error == "Value for '/servings' has the wrong type"
    assert result.failed[1].error == "Value for '/instructions' has the wrong type"
    updated = result.updated_recipe
    assert updated.servings == 6
    assert updated.instructions == make_recipe().instructions
    assert updated.ingredients[-1].name == "salt"
    assert updated.nutrition.calories == 120.0
