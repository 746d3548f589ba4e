from __future__ import annotations

from collections import Counter
from urllib.parse import urlparse

from recipe_ingest.models.recipe import Recipe, ValidationReport

MAX_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 5000
MAX_INGREDIENTS = 100
MAX_INGREDIENT_NAME_LENGTH = 200
MAX_INSTRUCTIONS = 100
MAX_INSTRUCTION_LENGTH = 2000
MAX_TAGS = 20
MAX_TAG_LENGTH = 50

LONG_PREP_MINUTES = 24 * 60
LONG_COOK_MINUTES = 72 * 60
HIGH_SERVINGS = 100
SHORT_DESCRIPTION_LENGTH = 20


def _issue(code: str, field: str, message: str) -> str:
    return f"[{code}] {field}: {message}"


class RecipeValidator:
    """Schema errors block a commit; business warnings are advisory."""

    def validate(self, recipe: Recipe) -> ValidationReport:
        report = ValidationReport()
        self._check_schema(recipe, report.errors)
        self._check_business_rules(recipe, report.warnings)
        return report

    @staticmethod
    def _check_schema(recipe: Recipe, errors: list[str]) -> None:
        name = (recipe.name or "").strip()
        if not name:
            errors.append(_issue("REQUIRED_NAME", "Name", "Recipe name is required"))
        elif len(name) > MAX_NAME_LENGTH:
            errors.append(
                _issue("NAME_TOO_LONG", "Name", f"Name must be at most {MAX_NAME_LENGTH} characters")
            )

        if recipe.description and len(recipe.description) > MAX_DESCRIPTION_LENGTH:
            errors.append(
                _issue(
                    "DESCRIPTION_TOO_LONG",
                    "Description",
                    f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters",
                )
            )

        if recipe.prep_time_minutes < 0:
            errors.append(_issue("NEGATIVE_PREP_TIME", "PrepTimeMinutes", "Prep time cannot be negative"))
        if recipe.cook_time_minutes < 0:
            errors.append(_issue("NEGATIVE_COOK_TIME", "CookTimeMinutes", "Cook time cannot be negative"))
        if recipe.servings <= 0:
            errors.append(_issue("INVALID_SERVINGS", "Servings", "Servings must be greater than zero"))

        if not recipe.ingredients:
            errors.append(_issue("NO_INGREDIENTS", "Ingredients", "At least one ingredient is required"))
        elif len(recipe.ingredients) > MAX_INGREDIENTS:
            errors.append(
                _issue(
                    "TOO_MANY_INGREDIENTS",
                    "Ingredients",
                    f"At most {MAX_INGREDIENTS} ingredients are allowed",
                )
            )
        for i, ingredient in enumerate(recipe.ingredients):
            field = f"Ingredients[{i}]"
            ingredient_name = (ingredient.name or "").strip()
            if not ingredient_name:
                errors.append(_issue("INGREDIENT_NO_NAME", f"{field}.Name", "Ingredient name is required"))
            elif len(ingredient_name) > MAX_INGREDIENT_NAME_LENGTH:
                errors.append(
                    _issue(
                        "INGREDIENT_NAME_TOO_LONG",
                        f"{field}.Name",
                        f"Ingredient name must be at most {MAX_INGREDIENT_NAME_LENGTH} characters",
                    )
                )
            if ingredient.quantity is not None and ingredient.quantity < 0:
                errors.append(
                    _issue(
                        "NEGATIVE_INGREDIENT_QUANTITY",
                        f"{field}.Quantity",
                        "Ingredient quantity cannot be negative",
                    )
                )

        if not recipe.instructions:
            errors.append(_issue("NO_INSTRUCTIONS", "Instructions", "At least one instruction is required"))
        elif len(recipe.instructions) > MAX_INSTRUCTIONS:
            errors.append(
                _issue(
                    "TOO_MANY_INSTRUCTIONS",
                    "Instructions",
                    f"At most {MAX_INSTRUCTIONS} instructions are allowed",
                )
            )
        for i, step in enumerate(recipe.instructions):
            if not step or not step.strip():
                errors.append(_issue("EMPTY_INSTRUCTION", f"Instructions[{i}]", "Instruction cannot be empty"))
            elif len(step) > MAX_INSTRUCTION_LENGTH:
                errors.append(
                    _issue(
                        "INSTRUCTION_TOO_LONG",
                        f"Instructions[{i}]",
                        f"Instruction must be at most {MAX_INSTRUCTION_LENGTH} characters",
                    )
                )

        if len(recipe.tags) > MAX_TAGS:
            errors.append(_issue("TOO_MANY_TAGS", "Tags", f"At most {MAX_TAGS} tags are allowed"))
        for i, tag in enumerate(recipe.tags):
            if len(tag) > MAX_TAG_LENGTH:
                errors.append(
                    _issue("TAG_TOO_LONG", f"Tags[{i}]", f"Tag must be at most {MAX_TAG_LENGTH} characters")
                )

        if recipe.image_url:
            parsed = urlparse(recipe.image_url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append(_issue("INVALID_IMAGE_URL", "ImageUrl", "Image URL must be an absolute http(s) URL"))

    @staticmethod
    def _check_business_rules(recipe: Recipe, warnings: list[str]) -> None:
        if recipe.prep_time_minutes > LONG_PREP_MINUTES:
            warnings.append(_issue("LONG_PREP_TIME", "PrepTimeMinutes", "Prep time exceeds 24 hours"))
        if recipe.cook_time_minutes > LONG_COOK_MINUTES:
            warnings.append(_issue("LONG_COOK_TIME", "CookTimeMinutes", "Cook time exceeds 72 hours"))
        if recipe.prep_time_minutes == 0 and recipe.cook_time_minutes == 0:
            warnings.append(_issue("NO_TIME_ESTIMATES", "Time", "No prep or cook time provided"))
        if recipe.servings > HIGH_SERVINGS:
            warnings.append(_issue("HIGH_SERVINGS", "Servings", f"Servings exceed {HIGH_SERVINGS}"))

        description = (recipe.description or "").strip()
        if not description and len(recipe.ingredients) >= 3:
            warnings.append(_issue("MISSING_DESCRIPTION", "Description", "Recipe has no description"))
        elif description and len(description) < SHORT_DESCRIPTION_LENGTH:
            warnings.append(_issue("SHORT_DESCRIPTION", "Description", "Description is very short"))

        if not (recipe.cuisine or "").strip():
            warnings.append(_issue("MISSING_CUISINE", "Cuisine", "Cuisine is not set"))
        if not recipe.tags:
            warnings.append(_issue("NO_TAGS", "Tags", "Recipe has no tags"))
        if not recipe.image_url:
            warnings.append(_issue("NO_IMAGE", "ImageUrl", "Recipe has no image"))

        if len(recipe.ingredients) < 3 and len(recipe.instructions) > 5:
            warnings.append(
                _issue("FEW_INGREDIENTS", "Ingredients", "Few ingredients for the number of steps")
            )
        if len(recipe.instructions) < 2 and len(recipe.ingredients) > 5:
            warnings.append(
                _issue("FEW_INSTRUCTIONS", "Instructions", "Few steps for the number of ingredients")
            )

        names = Counter(
            (i.name or "").strip().lower() for i in recipe.ingredients if (i.name or "").strip()
        )
        duplicates = sorted(name for name, count in names.items() if count > 1)
        if duplicates:
            warnings.append(
                _issue("DUPLICATE_INGREDIENTS", "Ingredients", f"Duplicate ingredients: {', '.join(duplicates)}")
            )

        zero = sum(1 for i in recipe.ingredients if i.quantity == 0)
        if zero:
            warnings.append(
                _issue("ZERO_QUANTITY_INGREDIENTS", "Ingredients", f"{zero} ingredient(s) have zero quantity")
            )
