from __future__ import annotations

import asyncio
import copy
import json
from typing import Any

from loguru import logger

from recipe_ingest.errors import NormalizeError
from recipe_ingest.llm_client import CompletionClient
from recipe_ingest.models.patches import (
    VALID_OPS,
    FailedPatch,
    NormalizePatchOperation,
    NormalizePatchResponse,
    PatchApplicationResult,
)
from recipe_ingest.models.recipe import Recipe
from recipe_ingest.services.json_utils import extract_json_object
from recipe_ingest.services.prompt_store import get_prompt_template, render_prompt

NORMALIZE_TEMPERATURE = 0.3
NORMALIZE_MAX_TOKENS = 4096
DEFAULT_FOCUS_AREAS = (
    "unit abbreviations",
    "capitalization",
    "ingredient naming consistency",
    "tag cleanup",
)
READ_ONLY_PATHS = ("/id", "/source", "/createdAt", "/updatedAt")


class PatchError(Exception):
    pass


def parse_pointer(path: str) -> list[str]:
    """Split a JSON Pointer into unescaped reference tokens."""
    if not path:
        raise PatchError("Path is empty")
    if not path.startswith("/"):
        raise PatchError("Path must start with '/'")
    return [token.replace("~1", "/").replace("~0", "~") for token in path[1:].split("/")]


def _list_index(container: list[Any], token: str, *, allow_end: bool = False) -> int:
    if allow_end and token == "-":
        return len(container)
    if not token.isdigit():
        raise PatchError(f"Invalid array index '{token}'")
    index = int(token)
    upper = len(container) if allow_end else len(container) - 1
    if index > upper:
        raise PatchError(f"Array index {index} out of range")
    return index


def _resolve_parent(document: Any, tokens: list[str]) -> Any:
    node = document
    for token in tokens[:-1]:
        if isinstance(node, dict):
            if token not in node:
                raise PatchError(f"Path segment '{token}' does not exist")
            node = node[token]
        elif isinstance(node, list):
            node = node[_list_index(node, token)]
        else:
            raise PatchError(f"Cannot traverse into '{token}'")
    return node


def get_value(document: Any, path: str) -> Any:
    tokens = parse_pointer(path)
    parent = _resolve_parent(document, tokens)
    last = tokens[-1]
    if isinstance(parent, dict):
        if last not in parent:
            raise PatchError(f"Path '{path}' does not exist")
        return parent[last]
    if isinstance(parent, list):
        return parent[_list_index(parent, last)]
    raise PatchError(f"Path '{path}' does not exist")


def path_exists(document: Any, path: str) -> bool:
    try:
        get_value(document, path)
    except PatchError:
        return False
    return True


def apply_operation(document: Any, patch: NormalizePatchOperation) -> None:
    """Apply one operation in place. Raises PatchError on failure."""
    if patch.op not in VALID_OPS:
        raise PatchError(f"Unsupported op '{patch.op}'")
    if any(patch.path == p or patch.path.startswith(p + "/") for p in READ_ONLY_PATHS):
        raise PatchError(f"Path '{patch.path}' is read-only")
    tokens = parse_pointer(patch.path)
    parent = _resolve_parent(document, tokens)
    last = tokens[-1]

    if isinstance(parent, dict):
        if patch.op == "add":
            parent[last] = patch.value
            return
        if last not in parent:
            raise PatchError(f"Path '{patch.path}' does not exist")
        if patch.op == "replace":
            parent[last] = patch.value
        else:
            del parent[last]
        return

    if isinstance(parent, list):
        if patch.op == "add":
            parent.insert(_list_index(parent, last, allow_end=True), patch.value)
            return
        index = _list_index(parent, last)
        if patch.op == "replace":
            parent[index] = patch.value
        else:
            del parent[index]
        return

    raise PatchError(f"Cannot apply '{patch.op}' at '{patch.path}'")


def _written_path(document: Any, path: str) -> str:
    """Concrete pointer of a value just written, resolving a trailing '-'."""
    tokens = parse_pointer(path)
    if tokens[-1] != "-":
        return path
    parent = _resolve_parent(document, tokens)
    return path[: -1] + str(len(parent) - 1)


def _conforms(given: Any, stored: Any) -> bool:
    """True when the recipe model keeps ``given`` as written."""
    if given in (None, "") and stored in (None, ""):
        return True
    if isinstance(given, bool) or isinstance(stored, bool):
        return type(given) is type(stored) and given == stored
    if isinstance(given, dict):
        return isinstance(stored, dict) and all(
            key in stored and _conforms(value, stored[key]) for key, value in given.items()
        )
    if isinstance(given, list):
        return (
            isinstance(stored, list)
            and len(given) == len(stored)
            and all(_conforms(a, b) for a, b in zip(given, stored))
        )
    if isinstance(given, (int, float)) and isinstance(stored, (int, float)):
        return given == stored
    return type(given) is type(stored) and given == stored


def check_value_type(candidate: dict[str, Any], updated: Recipe, patch: NormalizePatchOperation) -> None:
    if patch.op == "remove":
        return
    path = _written_path(candidate, patch.path)
    stored = updated.to_dict()
    if not path_exists(stored, path):
        raise PatchError(f"Path '{patch.path}' is not a recipe field")
    if not _conforms(get_value(candidate, path), get_value(stored, path)):
        raise PatchError(f"Value for '{patch.path}' has the wrong type")


class NormalizeService:
    """Proposes and applies LLM-generated JSON Patch edits to committed recipes."""

    def __init__(self, llm: CompletionClient):
        self.llm = llm

    async def generate_patches(
        self,
        recipe: Recipe,
        focus_areas: list[str] | None = None,
    ) -> NormalizePatchResponse:
        prompt = render_prompt(
            "normalize.patch_prompt",
            focus_areas=", ".join(focus_areas or DEFAULT_FOCUS_AREAS),
            recipe_json=json.dumps(recipe.to_dict(), ensure_ascii=False, indent=2),
        )
        try:
            response = await self.llm.complete(
                system=get_prompt_template("normalize.system_prompt"),
                messages=[{"role": "user", "content": prompt}],
                caller="normalize_service",
                temperature=NORMALIZE_TEMPERATURE,
                max_tokens=NORMALIZE_MAX_TOKENS,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"Normalize LLM call failed for recipe {recipe.id}: {exc}")
            raise NormalizeError(f"LLM call failed: {exc}", "NORMALIZE_LLM_FAILED") from exc

        try:
            payload = extract_json_object(response)
        except json.JSONDecodeError as exc:
            raise NormalizeError(
                f"Could not parse normalization patches: {exc}",
                "NORMALIZE_PARSE_FAILED",
            ) from exc

        result = NormalizePatchResponse.from_dict(payload)
        problems = self.validate_patches(recipe, result.patches)
        if problems:
            logger.info(f"Generated patches with {len(problems)} validation issues: {problems}")
        logger.info(
            f"Generated {len(result.patches)} normalization patches for recipe {recipe.id} "
            f"(high risk: {result.has_high_risk_changes})"
        )
        return result

    @staticmethod
    def apply_patches(recipe: Recipe, patches: list[NormalizePatchOperation]) -> PatchApplicationResult:
        document = recipe.to_dict()
        applied: list[NormalizePatchOperation] = []
        failed: list[FailedPatch] = []

        for patch in patches:
            candidate = copy.deepcopy(document)
            try:
                original = get_value(document, patch.path) if path_exists(document, patch.path) else None
                apply_operation(candidate, patch)
                updated = Recipe.from_dict(candidate)
                check_value_type(candidate, updated, patch)
            except (PatchError, TypeError, ValueError, KeyError) as exc:
                failed.append(FailedPatch(patch=patch, error=str(exc)))
                continue
            if not updated.name.strip():
                failed.append(FailedPatch(patch=patch, error="Recipe name cannot be empty"))
                continue
            patch.original_value = copy.deepcopy(original)
            document = candidate
            applied.append(patch)

        if not patches or not failed:
            status = "succeeded"
        elif applied:
            status = "partial"
        else:
            status = "failed"

        return PatchApplicationResult(
            status=status,
            updated_recipe=Recipe.from_dict(document),
            applied=applied,
            failed=failed,
            summary=f"Applied {len(applied)}/{len(patches)} patches, {len(failed)} failed",
        )

    @staticmethod
    def validate_patches(recipe: Recipe, patches: list[NormalizePatchOperation]) -> list[str]:
        document = recipe.to_dict()
        errors: list[str] = []
        for index, patch in enumerate(patches):
            if not patch.path:
                errors.append(f"Patch {index}: path is empty")
                continue
            if not patch.path.startswith("/"):
                errors.append(f"Patch {index}: path must start with '/'")
                continue
            if patch.op not in VALID_OPS:
                errors.append(f"Patch {index}: invalid op '{patch.op}'")
                continue
            if patch.op in ("replace", "remove") and not path_exists(document, patch.path):
                errors.append(f"Patch {index}: path '{patch.path}' does not exist")
        return errors
