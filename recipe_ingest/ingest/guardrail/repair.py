from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from recipe_ingest.ingest.guardrail.similarity import SimilarityDetector
from recipe_ingest.llm_client import CompletionClient
from recipe_ingest.models.recipe import Recipe, RecipeDraft, SimilarityReport
from recipe_ingest.services.cancellation import run_cancellable
from recipe_ingest.services.json_utils import extract_json_object
from recipe_ingest.services.prompt_store import render_prompt

PARAPHRASE_PROMPT_KEY = "repair.paraphrase_prompt"
REPAIR_SYSTEM_PROMPT = (
    "You are a recipe content editor. You rewrite recipe text in your own words "
    "while keeping every fact. Return only JSON."
)
REPAIR_TEMPERATURE = 0.7
REPAIR_MAX_TOKENS = 2000
SOURCE_EXCERPT_CHARS = 2000

_INSTRUCTION_SECTION_RE = re.compile(r"^instructions\[(\d+)\]$")


def recipe_sections(recipe: Recipe) -> dict[str, str]:
    """Named free-text sections checked by the guardrail."""
    sections: dict[str, str] = {}
    if recipe.description:
        sections["description"] = recipe.description
    for index, step in enumerate(recipe.instructions):
        if step and step.strip():
            sections[f"instructions[{index}]"] = step
    return sections


def apply_section_text(recipe: Recipe, name: str, text: str) -> bool:
    if name == "description":
        recipe.description = text
        return True
    match = _INSTRUCTION_SECTION_RE.match(name)
    if match:
        index = int(match.group(1))
        if 0 <= index < len(recipe.instructions):
            recipe.instructions[index] = text
            return True
    return False


@dataclass(slots=True)
class RepairParaphraseResult:
    success: bool
    repaired_draft: RecipeDraft | None = None
    new_similarity_report: SimilarityReport | None = None
    still_violates_policy: bool = True
    raw_llm_response: str | None = None
    details: str = ""
    error: str | None = None
    repaired_sections: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "stillViolatesPolicy": self.still_violates_policy,
            "repairedSections": list(self.repaired_sections),
            "newSimilarityReport": (
                self.new_similarity_report.to_dict() if self.new_similarity_report else None
            ),
            "details": self.details,
            "error": self.error,
            "rawLlmResponse": self.raw_llm_response,
        }


class RepairParaphraseService:
    """Rewrites the sections that are too close to the source, then re-scores."""

    def __init__(self, llm: CompletionClient, detector: SimilarityDetector | None = None):
        self.llm = llm
        self.detector = detector or SimilarityDetector()

    async def repair(
        self,
        draft: RecipeDraft,
        source_text: str,
        report: SimilarityReport | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> RepairParaphraseResult:
        sections = recipe_sections(draft.recipe)
        report = report if report is not None and report.sections else self.detector.analyze_sections(
            source_text, sections
        )
        offending = [name for name in self.detector.offending_sections_of(report.sections) if name in sections]
        if not offending and report.violates_policy:
            offending = list(sections)
        if not offending:
            return RepairParaphraseResult(
                success=True,
                repaired_draft=draft,
                new_similarity_report=report,
                still_violates_policy=report.violates_policy,
                details="No offending sections to repair",
            )

        excerpt = source_text or ""
        if len(excerpt) > SOURCE_EXCERPT_CHARS:
            excerpt = excerpt[:SOURCE_EXCERPT_CHARS] + "..."
        section_payload = [
            {
                "name": name,
                "original_text": sections[name],
                "similarity_score": round(report.sections[name].ngram_similarity, 4)
                if name in report.sections
                else None,
                "token_overlap": report.sections[name].token_overlap if name in report.sections else None,
            }
            for name in offending
        ]
        prompt = render_prompt(
            PARAPHRASE_PROMPT_KEY,
            source_excerpt=excerpt,
            sections_json=json.dumps(section_payload, ensure_ascii=False, indent=2),
        )

        try:
            response = await run_cancellable(
                self.llm.complete(
                    system=REPAIR_SYSTEM_PROMPT,
                    messages=[{"role": "user", "content": prompt}],
                    caller="repair_paraphrase",
                    temperature=REPAIR_TEMPERATURE,
                    max_tokens=REPAIR_MAX_TOKENS,
                ),
                cancel,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"Repair-paraphrase LLM call failed: {exc}")
            return RepairParaphraseResult(
                success=False,
                still_violates_policy=True,
                details="LLM call failed",
                error=str(exc),
            )

        try:
            payload = extract_json_object(response)
        except json.JSONDecodeError as exc:
            logger.warning(f"Repair-paraphrase response was not valid JSON: {exc}")
            return RepairParaphraseResult(
                success=False,
                still_violates_policy=True,
                raw_llm_response=response,
                details="Could not parse rephrased sections",
                error=str(exc),
            )

        rephrased: dict[str, str] = {}
        for item in payload.get("sections") or []:
            if not isinstance(item, dict):
                continue
            name = item.get("name")
            text = item.get("rephrased_text")
            if isinstance(name, str) and isinstance(text, str) and text.strip():
                rephrased[name] = text.strip()

        repaired = RecipeDraft.from_dict(draft.to_dict())
        applied = [
            name
            for name in offending
            if name in rephrased and apply_section_text(repaired.recipe, name, rephrased[name])
        ]

        new_report = self.detector.analyze_sections(source_text, recipe_sections(repaired.recipe))
        repaired.similarity_report = new_report
        logger.info(
            f"Repair-paraphrase rewrote {len(applied)}/{len(offending)} sections, "
            f"violates_policy={new_report.violates_policy}"
        )
        return RepairParaphraseResult(
            success=bool(applied),
            repaired_draft=repaired,
            new_similarity_report=new_report,
            still_violates_policy=new_report.violates_policy,
            raw_llm_response=response,
            details=f"Rephrased {len(applied)} of {len(offending)} offending sections",
            error=None if applied else "LLM returned no usable sections",
            repaired_sections=applied,
        )
