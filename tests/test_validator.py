from __future__ import annotations

from recipe_ingest.ingest.validate.validator import RecipeValidator
from recipe_ingest.models.recipe import Ingredient

from conftest import make_recipe


def codes(issues: list[str]) -> list[str]:
    return [issue.split("]", 1)[0].lstrip("[") for issue in issues]


def test_complete_recipe_is_clean():
    report = RecipeValidator().validate(make_recipe())
    assert report.is_valid
    assert report.errors == []
    assert report.warnings == []


def test_schema_errors_block():
    recipe = make_recipe(
        name=" ",
        ingredients=[],
        instructions=["ok", "  "],
        servings=0,
        prep_time_minutes=-5,
        image_url="ftp://example.com/a.png",
        tags=["x" * 51],
    )
    report = RecipeValidator().validate(recipe)

    assert not report.is_valid
    assert set(codes(report.errors)) == {
        "REQUIRED_NAME",
        "NO_INGREDIENTS",
        "EMPTY_INSTRUCTION",
        "INVALID_SERVINGS",
        "NEGATIVE_PREP_TIME",
        "INVALID_IMAGE_URL",
        "TAG_TOO_LONG",
    }
    assert "[EMPTY_INSTRUCTION] Instructions[1]: Instruction cannot be empty" in report.errors


def test_ingredient_field_errors():
    recipe = make_recipe(ingredients=[Ingredient(name=""), Ingredient(name="salt", quantity=-1)])
    report = RecipeValidator().validate(recipe)
    assert "INGREDIENT_NO_NAME" in codes(report.errors)
    assert "[NEGATIVE_INGREDIENT_QUANTITY] Ingredients[1].Quantity: Ingredient quantity cannot be negative" in report.errors


def test_business_warnings_are_advisory():
    recipe = make_recipe(
        description=None,
        cuisine=None,
        tags=[],
        image_url=None,
        prep_time_minutes=0,
        cook_time_minutes=0,
        servings=250,
        ingredients=[
            Ingredient(name="Salt", quantity=1),
            Ingredient(name="salt", quantity=0),
            Ingredient(name="pepper", quantity=1),
        ],
    )
    report = RecipeValidator().validate(recipe)

    assert report.is_valid
    assert set(codes(report.warnings)) == {
        "NO_TIME_ESTIMATES",
        "HIGH_SERVINGS",
        "MISSING_DESCRIPTION",
        "MISSING_CUISINE",
        "NO_TAGS",
        "NO_IMAGE",
        "DUPLICATE_INGREDIENTS",
        "ZERO_QUANTITY_INGREDIENTS",
    }


def test_short_description_and_long_times_warn():
    recipe = make_recipe(description="Tasty.", prep_time_minutes=25 * 60, cook_time_minutes=73 * 60)
    warnings = codes(RecipeValidator().validate(recipe).warnings)
    assert "SHORT_DESCRIPTION" in warnings
    assert "LONG_PREP_TIME" in warnings
    assert "LONG_COOK_TIME" in warnings
