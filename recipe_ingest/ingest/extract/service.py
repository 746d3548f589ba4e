from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from recipe_ingest.ingest.extract.json_ld import JsonLdRecipeExtractor
from recipe_ingest.ingest.extract.llm import ArtifactSink, LlmRecipeExtractor
from recipe_ingest.ingest.extract.models import ExtractionContext, ExtractionResult
from recipe_ingest.ingest.sanitize.service import SanitizedContent
from recipe_ingest.models.recipe import RecipeDraft, RecipeSource, ValidationReport
from recipe_ingest.tools.web_utils import site_name_from_url


def compute_url_hash(url: str) -> str:
    """Stable 22-char identifier for a source URL (case-insensitive)."""
    digest = hashlib.sha256(url.strip().lower().encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")[:22]


@dataclass(slots=True)
class RecipeExtractionResult:
    success: bool
    draft: RecipeDraft | None = None
    extraction: ExtractionResult | None = None
    attempts: list[ExtractionResult] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "errorCode": self.error_code,
            "attempts": [a.to_dict() for a in self.attempts],
        }


class ExtractionService:
    """Structured data first, LLM as fallback."""

    def __init__(
        self,
        json_ld_extractor: JsonLdRecipeExtractor | None = None,
        llm_extractor: LlmRecipeExtractor | None = None,
    ):
        self.json_ld_extractor = json_ld_extractor or JsonLdRecipeExtractor()
        self.llm_extractor = llm_extractor

    async def extract(
        self,
        sanitized: SanitizedContent,
        source_url: str,
        *,
        context: ExtractionContext | None = None,
        artifact_sink: ArtifactSink | None = None,
    ) -> RecipeExtractionResult:
        context = context or ExtractionContext(source_url=source_url)
        attempts: list[ExtractionResult] = []

        if sanitized.recipe_json_ld:
            structured = self.json_ld_extractor.extract(sanitized.recipe_json_ld, context)
            attempts.append(structured)
            if structured.success:
                logger.info(f"Extracted recipe from JSON-LD for {source_url}")
                return self._build(structured, sanitized, source_url, attempts)
            logger.info(
                f"JSON-LD extraction failed for {source_url} ({structured.error_code}), falling back to LLM"
            )

        if self.llm_extractor is None:
            last = attempts[-1] if attempts else None
            reason = f": {last.error}" if last and last.error else ""
            return RecipeExtractionResult(
                success=False,
                attempts=attempts,
                error=f"No extraction method succeeded and no LLM is configured{reason}",
                error_code="EXTRACTION_FAILED",
            )

        llm_result = await self.llm_extractor.extract(
            sanitized.text_content,
            context,
            artifact_sink=artifact_sink,
        )
        attempts.append(llm_result)
        if not llm_result.success:
            return RecipeExtractionResult(
                success=False,
                extraction=llm_result,
                attempts=attempts,
                error=llm_result.error,
                error_code=llm_result.error_code or "EXTRACTION_FAILED",
            )
        logger.info(f"Extracted recipe with LLM for {source_url} (repairs={llm_result.repair_attempts})")
        return self._build(llm_result, sanitized, source_url, attempts)

    @staticmethod
    def _build(
        extraction: ExtractionResult,
        sanitized: SanitizedContent,
        source_url: str,
        attempts: list[ExtractionResult],
    ) -> RecipeExtractionResult:
        metadata = sanitized.metadata
        source = RecipeSource(
            url=source_url,
            url_hash=compute_url_hash(source_url),
            site_name=metadata.site_name or site_name_from_url(source_url),
            author=metadata.author or extraction.author,
            retrieved_at=datetime.now(timezone.utc),
            extraction_method=extraction.method,
            license_hint=extraction.license_hint,
        )
        recipe = extraction.recipe
        recipe.source = source
        draft = RecipeDraft(recipe=recipe, source=source, validation_report=ValidationReport())
        return RecipeExtractionResult(
            success=True,
            draft=draft,
            extraction=extraction,
            attempts=attempts,
        )
