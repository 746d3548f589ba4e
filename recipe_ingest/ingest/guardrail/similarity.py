"""Verbatim-copy detection between source page text and extracted recipe text."""
from __future__ import annotations

import re
from collections import defaultdict

from recipe_ingest.config import settings
from recipe_ingest.models.recipe import SectionSimilarity, SimilarityReport

_WORD_RE = re.compile(r"\w+")

LEVEL_OK = "OK"
LEVEL_WARNING = "WARNING"
LEVEL_VIOLATION = "VIOLATION"


def tokenize(text: str | None, min_token_length: int = 2) -> list[str]:
    if not text:
        return []
    return [t for t in _WORD_RE.findall(text.lower()) if len(t) >= min_token_length]


def max_contiguous_overlap(source_tokens: list[str], target_tokens: list[str]) -> int:
    """Length of the longest run of target tokens found verbatim in the source."""
    if not source_tokens or not target_tokens:
        return 0
    positions: dict[str, list[int]] = defaultdict(list)
    for index, token in enumerate(source_tokens):
        positions[token].append(index)

    best = 0
    n_source = len(source_tokens)
    n_target = len(target_tokens)
    for j, token in enumerate(target_tokens):
        if n_target - j <= best:
            break
        for i in positions.get(token, ()):
            # only start at the left edge of a run
            if i > 0 and j > 0 and source_tokens[i - 1] == target_tokens[j - 1]:
                continue
            length = 0
            while (
                i + length < n_source
                and j + length < n_target
                and source_tokens[i + length] == target_tokens[j + length]
            ):
                length += 1
            if length > best:
                best = length
    return best


def ngrams(tokens: list[str], n: int) -> set[tuple[str, ...]]:
    if n <= 0 or len(tokens) < n:
        return set()
    return {tuple(tokens[i : i + n]) for i in range(len(tokens) - n + 1)}


def ngram_jaccard(a_tokens: list[str], b_tokens: list[str], n: int = 5) -> float:
    a = ngrams(a_tokens, n)
    b = ngrams(b_tokens, n)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


class SimilarityDetector:
    """Scores extracted text against its source with two metrics.

    Policy is violated when either the longest shared token run or the
    n-gram Jaccard similarity reaches its error threshold.
    """

    def __init__(
        self,
        *,
        token_overlap_warning: int | None = None,
        token_overlap_error: int | None = None,
        ngram_warning: float | None = None,
        ngram_error: float | None = None,
        ngram_size: int | None = None,
        min_token_length: int | None = None,
    ):
        self.token_overlap_warning = token_overlap_warning or settings.guardrail_token_overlap_warning
        self.token_overlap_error = token_overlap_error or settings.guardrail_token_overlap_error
        self.ngram_warning = ngram_warning if ngram_warning is not None else settings.guardrail_ngram_warning
        self.ngram_error = ngram_error if ngram_error is not None else settings.guardrail_ngram_error
        self.ngram_size = ngram_size or settings.guardrail_ngram_size
        self.min_token_length = (
            settings.guardrail_min_token_length if min_token_length is None else min_token_length
        )

    def tokenize(self, text: str | None) -> list[str]:
        return tokenize(text, self.min_token_length)

    def level(self, overlap: int, similarity: float) -> str:
        if overlap >= self.token_overlap_error or similarity >= self.ngram_error:
            return LEVEL_VIOLATION
        if overlap >= self.token_overlap_warning or similarity >= self.ngram_warning:
            return LEVEL_WARNING
        return LEVEL_OK

    def _details(self, overlap: int, similarity: float, suffix: str = "") -> str:
        status = self.level(overlap, similarity)
        text = (
            f"Status: {status} - max contiguous overlap {overlap} tokens "
            f"(warning {self.token_overlap_warning}, error {self.token_overlap_error}), "
            f"{self.ngram_size}-gram similarity {similarity:.3f} "
            f"(warning {self.ngram_warning:.2f}, error {self.ngram_error:.2f})"
        )
        return text + suffix

    def _report(self, overlap: int, similarity: float, suffix: str = "") -> SimilarityReport:
        return SimilarityReport(
            max_contiguous_token_overlap=overlap,
            max_ngram_similarity=similarity,
            violates_policy=self.level(overlap, similarity) == LEVEL_VIOLATION,
            details=self._details(overlap, similarity, suffix),
        )

    def score(self, source: str | None, extracted: str | None) -> SimilarityReport:
        source_tokens = self.tokenize(source)
        target_tokens = self.tokenize(extracted)
        if not source_tokens or not target_tokens:
            return SimilarityReport(details="Status: OK - nothing to compare")
        overlap = max_contiguous_overlap(source_tokens, target_tokens)
        similarity = ngram_jaccard(source_tokens, target_tokens, self.ngram_size)
        return self._report(overlap, similarity)

    def analyze_sections(self, source: str | None, sections: dict[str, str]) -> SimilarityReport:
        """Score each named section separately and report the maxima."""
        source_tokens = self.tokenize(source)
        if not source_tokens or not sections:
            return SimilarityReport(details="Status: OK - nothing to compare")

        scored: dict[str, SectionSimilarity] = {}
        for name, text in sections.items():
            tokens = self.tokenize(text)
            if not tokens:
                continue
            scored[name] = SectionSimilarity(
                token_overlap=max_contiguous_overlap(source_tokens, tokens),
                ngram_similarity=ngram_jaccard(source_tokens, tokens, self.ngram_size),
            )

        overlap = max((s.token_overlap for s in scored.values()), default=0)
        similarity = max((s.ngram_similarity for s in scored.values()), default=0.0)
        flagged = self.offending_sections_of(scored)
        suffix = f"; sections: {', '.join(flagged)}" if flagged else ""
        report = self._report(overlap, similarity, suffix)
        report.sections = scored
        return report

    def offending_sections_of(self, sections: dict[str, SectionSimilarity]) -> list[str]:
        return [
            name
            for name, s in sections.items()
            if self.level(s.token_overlap, s.ngram_similarity) != LEVEL_OK
        ]
