"""Search query building and BM25 ranking of discovery candidates."""
from __future__ import annotations

import re

from rank_bm25 import BM25Okapi

from recipe_ingest.models.task import IngestConstraints
from recipe_ingest.tools.search_provider import SearchCandidate
from recipe_ingest.tools.web_utils import clean_url_for_scoring

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def _tokens(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def build_search_query(query: str, constraints: IngestConstraints | None) -> str:
    parts = [query.strip()]
    if constraints is not None:
        for extra in (constraints.cuisine, constraints.diet_type):
            if extra and extra.strip() and extra.strip().lower() not in query.lower():
                parts.append(extra.strip())
    if "recipe" not in query.lower():
        parts.append("recipe")
    return " ".join(parts)


def compute_bm25_scores(query: str, documents: list[str]) -> list[float]:
    """BM25 scores normalized to the 0-1 range."""
    if not documents:
        return []
    tokenized_docs = [_tokens(doc) or [""] for doc in documents]
    bm25 = BM25Okapi(tokenized_docs)
    scores = [float(s) for s in bm25.get_scores(_tokens(query))]
    max_score = max(scores) if scores else 1.0
    if max_score > 0:
        scores = [s / max_score for s in scores]
    return scores


def rank_candidates(
    query: str,
    candidates: list[SearchCandidate],
    max_candidates: int,
) -> list[tuple[SearchCandidate, float]]:
    """Order candidates by BM25 over title, snippet and URL; provider order breaks ties."""
    documents = [
        f"{c.title} {c.snippet} {clean_url_for_scoring(c.url)}" for c in candidates
    ]
    scores = compute_bm25_scores(query, documents)
    seen: set[str] = set()
    ranked: list[tuple[SearchCandidate, float]] = []
    for candidate, score in sorted(
        zip(candidates, scores),
        key=lambda pair: (-pair[1], pair[0].position),
    ):
        key = candidate.url.rstrip("/").lower()
        if key in seen:
            continue
        seen.add(key)
        ranked.append((candidate, score))
    return ranked[: max(max_candidates, 0)]
