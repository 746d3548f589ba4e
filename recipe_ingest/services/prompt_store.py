from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any


PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"
_catalog_cache: dict[str, Any] | None = None
_catalog_mtime_ns: int | None = None


def _load_catalog() -> dict[str, Any]:
    global _catalog_cache, _catalog_mtime_ns
    mtime_ns = PROMPTS_PATH.stat().st_mtime_ns
    if _catalog_cache is not None and _catalog_mtime_ns == mtime_ns:
        return _catalog_cache

    payload = json.loads(PROMPTS_PATH.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Prompt catalog must be a JSON object.")
    _catalog_cache = payload
    _catalog_mtime_ns = mtime_ns
    return payload


def get_prompt_template(key: str) -> str:
    node: Any = _load_catalog()
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            raise KeyError(f"Prompt key not found: {key}")
        node = node[part]
    if not isinstance(node, str):
        raise TypeError(f"Prompt key must map to a string: {key}")
    return node


def has_prompt(key: str) -> bool:
    try:
        get_prompt_template(key)
    except (KeyError, TypeError):
        return False
    return True


def override_problem(key: str, text: str) -> str | None:
    """Describe why ``text`` cannot replace the catalog prompt ``key``, or None when it can."""
    try:
        expected = set(Template(get_prompt_template(key)).get_identifiers())
    except (KeyError, TypeError):
        return f"unknown prompt '{key}'"
    template = Template(text)
    if not template.is_valid():
        return "invalid '$' placeholder (write '$$' for a literal dollar sign)"
    unknown = sorted(set(template.get_identifiers()) - expected)
    if unknown:
        return "unknown placeholders " + ", ".join("$" + name for name in unknown)
    return None


def render_template(template_text: str, key: str, **values: Any) -> str:
    try:
        return Template(template_text).substitute(**values)
    except KeyError as exc:
        missing = str(exc.args[0])
        raise KeyError(f"Missing template value '{missing}' for prompt '{key}'") from exc


def render_prompt(key: str, *, override: str | None = None, **values: Any) -> str:
    """Render a catalog prompt. A per-task override replaces the catalog template text."""
    template_text = override if override else get_prompt_template(key)
    return render_template(template_text, key, **values)


def clear_prompt_cache() -> None:
    global _catalog_cache, _catalog_mtime_ns
    _catalog_cache = None
    _catalog_mtime_ns = None
