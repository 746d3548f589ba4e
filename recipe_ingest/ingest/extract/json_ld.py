"""Maps schema.org Recipe JSON-LD onto the Recipe model."""
from __future__ import annotations

import json
import re
import uuid
from typing import Any

from loguru import logger

from recipe_ingest.ingest.extract.models import ExtractionContext, ExtractionResult
from recipe_ingest.ingest.sanitize.service import find_recipe_node
from recipe_ingest.models.recipe import Ingredient, NutritionInfo, Recipe

STRUCTURED_DATA_CONFIDENCE = 0.95
DEFAULT_SERVINGS = 4

UNICODE_FRACTIONS = {
    "½": 0.5,
    "¼": 0.25,
    "¾": 0.75,
    "⅓": 1 / 3,
    "⅔": 2 / 3,
    "⅛": 0.125,
}

_DURATION_RE = re.compile(r"^P(?:(\d+)D)?T?(?:(\d+)H)?(?:(\d+)M)?", re.IGNORECASE)
_FIRST_INT_RE = re.compile(r"\d+")
_NUMBER_RE = re.compile(r"[\d.]+")
_STEP_SPLIT_RE = re.compile(r"(?:\r?\n)+|(?<=\.)\s*(?=\d+\.)")
_STEP_NUMBER_RE = re.compile(r"^\d+[.)]\s*")
_INGREDIENT_RE = re.compile(
    r"^(?P<qty>[\d\s/½¼¾⅓⅔⅛.]+)?\s*"
    r"(?:(?P<unit>cups?|tablespoons?|tbsp?|teaspoons?|tsp?|ounces?|oz|pounds?|lbs?|grams?|g"
    r"|kilograms?|kg|milliliters?|ml|liters?|l|pinch|dash|cloves?|slices?|pieces?|stalks?"
    r"|heads?|bunches?|cans?|packages?|pkg|large|medium|small)\.?\s+)?"
    r"(?P<name>[^(]+?)"
    r"(?:\s*\((?P<notes>[^)]+)\))?\s*$",
    re.IGNORECASE,
)

NUTRITION_FIELDS = (
    ("calories", "calories"),
    ("proteinContent", "protein_grams"),
    ("carbohydrateContent", "carbs_grams"),
    ("fatContent", "fat_grams"),
    ("fiberContent", "fiber_grams"),
    ("sugarContent", "sugar_grams"),
    ("sodiumContent", "sodium_mg"),
)


def parse_duration_minutes(value: Any) -> int | None:
    """Minutes in an ISO-8601 duration such as PT1H30M, or None when absent."""
    if not isinstance(value, str) or not value.strip():
        return None
    match = _DURATION_RE.match(value.strip())
    if not match or not any(match.groups()):
        return None
    days, hours, minutes = (int(g) if g else 0 for g in match.groups())
    return days * 1440 + hours * 60 + minutes


def parse_quantity(text: str | None) -> float:
    """Parse '2', '1/2', '1 1/2', '½' or '1½'. Unparseable text counts as 1."""
    if not text or not text.strip():
        return 1.0
    total = 0.0
    for part in text.split():
        try:
            if part in UNICODE_FRACTIONS:
                total += UNICODE_FRACTIONS[part]
            elif part[-1] in UNICODE_FRACTIONS:
                total += float(part[:-1] or 0) + UNICODE_FRACTIONS[part[-1]]
            elif "/" in part:
                numerator, denominator = part.split("/", 1)
                total += float(numerator) / float(denominator)
            else:
                total += float(part)
        except (ValueError, ZeroDivisionError):
            return 1.0
    return total


def parse_ingredient(text: str) -> Ingredient:
    raw = " ".join(text.split())
    match = _INGREDIENT_RE.match(raw)
    if not match or not match.group("name").strip():
        return Ingredient(name=raw, quantity=1.0)
    name = match.group("name").strip().rstrip(",")
    unit = match.group("unit")
    notes = match.group("notes")
    return Ingredient(
        name=name,
        quantity=parse_quantity(match.group("qty")),
        unit=unit.lower() if unit else None,
        notes=notes.strip() if notes else None,
    )


def parse_servings(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_SERVINGS
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else DEFAULT_SERVINGS
    if isinstance(value, str):
        match = _FIRST_INT_RE.search(value)
        return int(match.group()) if match and int(match.group()) > 0 else DEFAULT_SERVINGS
    if isinstance(value, list) and value:
        return parse_servings(value[0])
    return DEFAULT_SERVINGS


def _step_text(item: Any) -> str | None:
    if isinstance(item, str):
        return item.strip() or None
    if isinstance(item, dict):
        elements = item.get("itemListElement")
        if isinstance(elements, list):
            texts = [t for t in (_step_text(e) for e in elements) if t]
            return " ".join(texts) or None
        for key in ("text", "description", "name"):
            value = item.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def parse_instructions(value: Any) -> list[str]:
    if isinstance(value, str):
        steps = [_STEP_NUMBER_RE.sub("", part.strip()) for part in _STEP_SPLIT_RE.split(value)]
        return [step for step in steps if step]
    if isinstance(value, dict):
        value = [value]
    if isinstance(value, list):
        steps = []
        for item in value:
            text = _step_text(item)
            if text:
                steps.append(text)
        return steps
    return []


def _number(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        match = _NUMBER_RE.search(value)
        if match:
            try:
                return float(match.group())
            except ValueError:
                return 0.0
    return 0.0


def parse_nutrition(value: Any) -> NutritionInfo | None:
    if not isinstance(value, dict):
        return None
    nutrition = NutritionInfo()
    for key, attr in NUTRITION_FIELDS:
        setattr(nutrition, attr, _number(value.get(key)))
    return nutrition


def parse_image(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        url = value.get("url") or value.get("@id")
        return url.strip() if isinstance(url, str) and url.strip() else None
    if isinstance(value, list):
        for item in value:
            url = parse_image(item)
            if url:
                return url
    return None


def _strings(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [v for v in value if isinstance(v, str)]
    return []


def parse_tags(category: Any, keywords: Any) -> list[str]:
    candidates = list(_strings(category))
    for entry in _strings(keywords):
        candidates.extend(entry.split(","))
    tags: list[str] = []
    seen: set[str] = set()
    for tag in candidates:
        tag = tag.strip()
        if tag and tag.lower() not in seen:
            seen.add(tag.lower())
            tags.append(tag)
    return tags


def _first_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, list):
        for item in value:
            text = _first_text(item)
            if text:
                return text
    if isinstance(value, dict):
        for key in ("name", "url", "@id"):
            if isinstance(value.get(key), str) and value[key].strip():
                return value[key].strip()
    return None


class JsonLdRecipeExtractor:
    """Deterministic extractor for pages that embed schema.org Recipe data."""

    def extract(self, json_ld: str, context: ExtractionContext | None = None) -> ExtractionResult:
        try:
            payload = json.loads(json_ld)
        except (json.JSONDecodeError, TypeError) as exc:
            return ExtractionResult.failed(f"Invalid JSON-LD: {exc}", "INVALID_JSON")

        node = find_recipe_node(payload)
        if node is None and isinstance(payload, dict):
            node = payload
        if not isinstance(node, dict):
            return ExtractionResult.failed("JSON-LD does not contain a recipe object", "MAPPING_FAILED")

        name = node.get("name")
        if not isinstance(name, str) or not name.strip():
            return ExtractionResult.failed("Recipe JSON-LD has no name", "MAPPING_FAILED")

        try:
            recipe = self._map(node, name.strip())
        except (TypeError, ValueError, AttributeError) as exc:
            logger.warning(f"Failed to map recipe JSON-LD: {exc}")
            return ExtractionResult.failed(f"Failed to map JSON-LD: {exc}", "MAPPING_FAILED")

        warnings: list[str] = []
        if not recipe.ingredients:
            warnings.append("JSON-LD has no recipeIngredient entries")
        if not recipe.instructions:
            warnings.append("JSON-LD has no recipeInstructions entries")

        return ExtractionResult(
            success=True,
            recipe=recipe,
            method="StructuredData",
            confidence=STRUCTURED_DATA_CONFIDENCE,
            warnings=warnings,
            license_hint=_first_text(node.get("license")),
            author=_first_text(node.get("author")),
        )

    @staticmethod
    def _map(node: dict[str, Any], name: str) -> Recipe:
        prep = parse_duration_minutes(node.get("prepTime"))
        cook = parse_duration_minutes(node.get("cookTime"))
        total = parse_duration_minutes(node.get("totalTime"))
        if prep is None and cook is None and total:
            prep = total // 3
            cook = total - prep

        ingredients = [
            parse_ingredient(item)
            for item in _strings(node.get("recipeIngredient") or node.get("ingredients"))
            if item.strip()
        ]
        description = node.get("description")

        return Recipe(
            id=f"draft-{uuid.uuid4().hex}",
            name=name,
            description=description.strip() if isinstance(description, str) and description.strip() else None,
            ingredients=ingredients,
            instructions=parse_instructions(node.get("recipeInstructions")),
            cuisine=_first_text(node.get("recipeCuisine")),
            prep_time_minutes=prep or 0,
            cook_time_minutes=cook or 0,
            servings=parse_servings(node.get("recipeYield")),
            nutrition=parse_nutrition(node.get("nutrition")),
            tags=parse_tags(node.get("recipeCategory"), node.get("keywords")),
            image_url=parse_image(node.get("image")),
        )
