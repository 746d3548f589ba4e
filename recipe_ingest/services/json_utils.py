from __future__ import annotations

import json
from typing import Any


def strip_code_fences(raw_text: str) -> str:
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    return text


def extract_json_object(raw_text: str) -> dict[str, Any]:
    """Parse an LLM response into a JSON object.

    Tries the fenced/stripped text as-is first, then the outermost ``{...}``.
    Raises json.JSONDecodeError when neither parses to an object.
    """
    text = strip_code_fences(raw_text or "")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start < 0 or end <= start:
            raise json.JSONDecodeError("object not found", text, 0)
        parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed
