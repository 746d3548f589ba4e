from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from loguru import logger

from recipe_ingest.config import settings
from recipe_ingest.ingest.guardrail.repair import (
    RepairParaphraseResult,
    RepairParaphraseService,
    recipe_sections,
)
from recipe_ingest.ingest.guardrail.similarity import (
    LEVEL_VIOLATION,
    LEVEL_WARNING,
    SimilarityDetector,
)
from recipe_ingest.models.recipe import RecipeDraft, SimilarityReport


@dataclass(slots=True)
class GuardrailOutcome:
    draft: RecipeDraft
    report: SimilarityReport
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    repair_result: RepairParaphraseResult | None = None

    @property
    def blocked(self) -> bool:
        return self.draft.guardrail_blocked


def similarity_issues(
    detector: SimilarityDetector,
    report: SimilarityReport,
) -> tuple[list[str], list[str]]:
    level = detector.level(report.max_contiguous_token_overlap, report.max_ngram_similarity)
    if level == LEVEL_VIOLATION:
        return [f"[SIMILARITY_VIOLATION] Similarity: {report.details}"], []
    if level == LEVEL_WARNING:
        return [], [f"[SIMILARITY_WARNING] Similarity: {report.details}"]
    return [], []


class GuardrailService:
    """Scores a draft against its source and runs one auto-repair when it violates policy."""

    def __init__(
        self,
        detector: SimilarityDetector | None = None,
        repair: RepairParaphraseService | None = None,
        *,
        auto_repair: bool | None = None,
    ):
        self.detector = detector or SimilarityDetector()
        self.repair = repair
        self.auto_repair = settings.guardrail_auto_repair if auto_repair is None else auto_repair

    async def check(
        self,
        draft: RecipeDraft,
        source_text: str,
        *,
        cancel: asyncio.Event | None = None,
    ) -> GuardrailOutcome:
        report = self.detector.analyze_sections(source_text, recipe_sections(draft.recipe))
        draft.similarity_report = report
        repair_result: RepairParaphraseResult | None = None

        if report.violates_policy and self.auto_repair and self.repair is not None:
            logger.info("Similarity policy violated, running auto repair")
            repair_result = await self.repair.repair(draft, source_text, report, cancel=cancel)
            if repair_result.repaired_draft is not None and repair_result.new_similarity_report is not None:
                draft = repair_result.repaired_draft
                report = repair_result.new_similarity_report
                draft.similarity_report = report

        errors, warnings = similarity_issues(self.detector, report)
        if report.violates_policy:
            draft.guardrail_blocked = True
            errors.append(
                "[GUARDRAIL_BLOCKED] Similarity: Draft is too similar to its source and cannot be committed"
            )
            logger.warning(f"Draft guardrail-blocked: {report.details}")
        else:
            draft.guardrail_blocked = False

        return GuardrailOutcome(
            draft=draft,
            report=report,
            errors=errors,
            warnings=warnings,
            repair_result=repair_result,
        )
