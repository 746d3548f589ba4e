from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, Awaitable, Callable

from loguru import logger

from recipe_ingest.config import settings
from recipe_ingest.ingest.extract.json_ld import parse_ingredient, parse_instructions
from recipe_ingest.ingest.extract.models import ExtractionContext, ExtractionResult
from recipe_ingest.ingest.extract.truncation import truncate_by_importance
from recipe_ingest.llm_client import CompletionClient
from recipe_ingest.models.recipe import Ingredient, Recipe
from recipe_ingest.services.cancellation import run_cancellable
from recipe_ingest.services.json_utils import extract_json_object
from recipe_ingest.services.prompt_store import render_prompt
from recipe_ingest.storage.artifacts import repair_attempt_name

LLM_CONFIDENCE = 0.85
LLM_REPAIRED_CONFIDENCE = 0.75
EXTRACT_TEMPERATURE = 0.3
EXTRACT_MAX_TOKENS = 4096

SYSTEM_PROMPT_KEY = "extract.system_prompt"
RECIPE_PROMPT_KEY = "extract.recipe_prompt"
REPAIR_PROMPT_KEY = "extract.repair_prompt"

ArtifactSink = Callable[[str, Any], Awaitable[Any]]


def _pick(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def recipe_from_llm_payload(data: dict[str, Any]) -> Recipe:
    """Build a draft Recipe from the JSON object the model returned."""
    name = data.get("name") or data.get("title")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("response has no recipe name")

    ingredients: list[Ingredient] = []
    for item in data.get("ingredients") or []:
        if isinstance(item, str) and item.strip():
            ingredients.append(parse_ingredient(item))
        elif isinstance(item, dict):
            ingredients.append(Ingredient.from_dict(item))

    normalized = {
        "id": f"draft-{uuid.uuid4().hex}",
        "name": name.strip(),
        "description": data.get("description"),
        "cuisine": data.get("cuisine"),
        "dietType": _pick(data, "dietType", "diet_type"),
        "prepTimeMinutes": _pick(data, "prepTimeMinutes", "prep_time_minutes"),
        "cookTimeMinutes": _pick(data, "cookTimeMinutes", "cook_time_minutes"),
        "servings": data.get("servings"),
        "nutrition": data.get("nutrition"),
        "tags": [t for t in data.get("tags") or [] if isinstance(t, str) and t.strip()],
        "imageUrl": _pick(data, "imageUrl", "image_url"),
    }
    recipe = Recipe.from_dict(normalized)
    recipe.ingredients = ingredients
    recipe.instructions = parse_instructions(data.get("instructions"))
    return recipe


class LlmRecipeExtractor:
    """Extracts a recipe from plain page text with the LLM, repairing malformed JSON."""

    def __init__(
        self,
        llm: CompletionClient,
        *,
        content_budget: int | None = None,
        max_repair_attempts: int | None = None,
    ):
        self.llm = llm
        self.content_budget = content_budget or settings.content_character_budget
        self.max_repair_attempts = (
            settings.max_repair_attempts if max_repair_attempts is None else max_repair_attempts
        )

    async def extract(
        self,
        text: str,
        context: ExtractionContext,
        *,
        artifact_sink: ArtifactSink | None = None,
    ) -> ExtractionResult:
        if not text or not text.strip():
            return ExtractionResult.failed("No content to extract from", "EMPTY_CONTENT")

        content = truncate_by_importance(text, self.content_budget)
        if len(content) < len(text):
            logger.info(f"Truncated content for LLM extraction: {len(text)} -> {len(content)} chars")

        overrides = context.prompt_overrides
        try:
            system = render_prompt(SYSTEM_PROMPT_KEY, override=overrides.get(SYSTEM_PROMPT_KEY))
            prompt = render_prompt(
                RECIPE_PROMPT_KEY,
                override=overrides.get(RECIPE_PROMPT_KEY),
                url=context.source_url,
                content=content,
            )
            # the repair prompt is rendered later; a broken override fails here instead
            render_prompt(
                REPAIR_PROMPT_KEY,
                override=overrides.get(REPAIR_PROMPT_KEY),
                error="",
                previous_response="",
            )
        except (KeyError, ValueError) as exc:
            return ExtractionResult.failed(f"Prompt override cannot be rendered: {exc}", "INVALID_PROMPT_OVERRIDE")
        messages: list[dict[str, Any]] = [{"role": "user", "content": prompt}]

        attempt = 0
        while True:
            try:
                response = await run_cancellable(
                    self.llm.complete(
                        system=system,
                        messages=messages,
                        caller="llm_recipe_extractor",
                        temperature=EXTRACT_TEMPERATURE,
                        max_tokens=EXTRACT_MAX_TOKENS,
                    ),
                    context.cancel,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"LLM extraction call failed: {exc}")
                return ExtractionResult.failed(
                    f"LLM call failed: {exc}",
                    "LLM_EXTRACTION_FAILED",
                    repair_attempts=attempt,
                )

            try:
                payload = extract_json_object(response)
            except json.JSONDecodeError as exc:
                if attempt >= self.max_repair_attempts:
                    logger.warning(f"LLM response still invalid JSON after {attempt} repair attempts")
                    return ExtractionResult.failed(
                        f"LLM returned invalid JSON after {attempt} repair attempts: {exc}",
                        "LLM_EXTRACTION_FAILED",
                        repair_attempts=attempt,
                        raw_response=response,
                    )
                attempt += 1
                logger.info(f"LLM returned invalid JSON, repair attempt {attempt}/{self.max_repair_attempts}")
                if artifact_sink is not None:
                    await artifact_sink(
                        repair_attempt_name(attempt),
                        {"attempt": attempt, "error": str(exc), "previousResponse": response},
                    )
                repair = render_prompt(
                    REPAIR_PROMPT_KEY,
                    override=overrides.get(REPAIR_PROMPT_KEY),
                    error=str(exc),
                    previous_response=response,
                )
                messages = messages + [
                    {"role": "assistant", "content": response},
                    {"role": "user", "content": repair},
                ]
                continue

            try:
                recipe = recipe_from_llm_payload(payload)
            except (TypeError, ValueError) as exc:
                return ExtractionResult.failed(
                    f"LLM response could not be mapped to a recipe: {exc}",
                    "LLM_EXTRACTION_FAILED",
                    repair_attempts=attempt,
                    raw_response=response,
                )

            return ExtractionResult(
                success=True,
                recipe=recipe,
                method="Llm",
                confidence=LLM_REPAIRED_CONFIDENCE if attempt else LLM_CONFIDENCE,
                repair_attempts=attempt,
                raw_response=response,
            )
