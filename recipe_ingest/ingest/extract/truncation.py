"""Importance-ranked truncation of page text to an LLM character budget."""
from __future__ import annotations

import re

TRUNCATION_MARKER = "[content truncated]"

RECIPE_KEYWORDS = (
    "ingredient",
    "ingredients",
    "direction",
    "directions",
    "instruction",
    "instructions",
    "method",
    "steps",
    "step",
    "cup",
    "cups",
    "tbsp",
    "tablespoon",
    "tsp",
    "teaspoon",
    "gram",
    "grams",
    "ounce",
    "oz",
    "minutes",
    "minute",
    "hour",
    "preheat",
    "oven",
    "bake",
    "boil",
    "simmer",
    "stir",
    "whisk",
    "mix",
    "chop",
    "serve",
    "servings",
    "yield",
    "prep",
    "cook",
)

BOILERPLATE_MARKERS = (
    "cookie",
    "cookies",
    "subscribe",
    "newsletter",
    "privacy",
    "copyright",
    "all rights reserved",
    "advertisement",
    "sign up",
    "log in",
    "comments",
    "follow us",
    "share this",
    "terms of use",
)

_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_WORD_RE = re.compile(r"[a-z]+")
_LIST_LINE_RE = re.compile(r"^\s*(?:[•\-*]|\d+[.)])\s+", re.MULTILINE)
_QUANTITY_RE = re.compile(r"\d+\s*(?:/\s*\d+)?\s*(?:g|kg|ml|l|oz|lb|cups?|tbsp|tsp)\b", re.IGNORECASE)


def score_paragraph(paragraph: str) -> float:
    lowered = paragraph.lower()
    words = set(_WORD_RE.findall(lowered))
    score = 0.0
    score += 2.0 * sum(1 for keyword in RECIPE_KEYWORDS if keyword in words)
    score += 1.5 * len(_LIST_LINE_RE.findall(paragraph))
    score += 1.0 * len(_QUANTITY_RE.findall(paragraph))
    score -= 4.0 * sum(1 for marker in BOILERPLATE_MARKERS if marker in lowered)
    return score


def truncate_by_importance(text: str, budget: int) -> str:
    """Keep the highest-scoring paragraphs that fit in ``budget`` characters.

    Kept paragraphs stay in their original order. A marker is appended when
    anything was dropped.
    """
    if budget <= 0 or len(text) <= budget:
        return text

    paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT_RE.split(text) if p.strip()]
    available = budget - len(TRUNCATION_MARKER) - 2
    if available <= 0:
        return text[:budget]

    ranked = sorted(
        range(len(paragraphs)),
        key=lambda i: (-score_paragraph(paragraphs[i]), i),
    )
    selected: set[int] = set()
    used = 0
    for index in ranked:
        cost = len(paragraphs[index]) + (2 if selected else 0)
        if used + cost > available:
            continue
        selected.add(index)
        used += cost

    if not selected:
        # a single paragraph larger than the budget
        return text[:available].rstrip() + "\n\n" + TRUNCATION_MARKER

    kept = "\n\n".join(paragraphs[i] for i in sorted(selected))
    if len(selected) == len(paragraphs):
        return kept
    return f"{kept}\n\n{TRUNCATION_MARKER}"
