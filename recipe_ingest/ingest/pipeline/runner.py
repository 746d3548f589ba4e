"""Drives an ingest task through its fixed phase plan.

Each phase handler reads and extends a per-run PipelineState, stores its
artifacts through the task's ArtifactWriter and signals expected failures by
raising IngestPipelineError. The runner owns every task write until the task
reaches ReviewReady or Failed.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from loguru import logger

from recipe_ingest.config import settings
from recipe_ingest.errors import IngestPipelineError, NormalizeError, SearchProviderNotFoundError
from recipe_ingest.ingest.extract.models import ExtractionContext
from recipe_ingest.ingest.extract.service import ExtractionService
from recipe_ingest.ingest.fetch.service import FetchResult, FetchService
from recipe_ingest.ingest.guardrail.service import GuardrailService
from recipe_ingest.ingest.normalize.service import NormalizeService
from recipe_ingest.ingest.pipeline.discover import build_search_query, rank_candidates
from recipe_ingest.ingest.pipeline.phases import Phase, plan_for
from recipe_ingest.ingest.sanitize.service import SanitizedContent, SanitizeService
from recipe_ingest.ingest.validate.validator import RecipeValidator
from recipe_ingest.models.events import SSEEvent
from recipe_ingest.models.recipe import RecipeDraft
from recipe_ingest.models.task import Task, TaskStatus, utcnow
from recipe_ingest.services import streaming
from recipe_ingest.services.cancellation import run_cancellable
from recipe_ingest.services.logger import log_phase
from recipe_ingest.services.prompt_store import get_prompt_template, has_prompt
from recipe_ingest.storage import artifacts
from recipe_ingest.storage.artifacts import ArtifactWriter
from recipe_ingest.storage.base import ArtifactStore, RecipeStore, TaskStore
from recipe_ingest.tools.search_provider import (
    SearchProviderResolver,
    SearchRequest,
    search_with_fallback,
)

ProgressPublisher = Callable[[str, SSEEvent], None]
PhaseHandler = Callable[["PipelineState"], Awaitable[None]]


@dataclass
class PipelineState:
    task: Task
    writer: ArtifactWriter
    cancel: asyncio.Event | None = None
    target_url: str | None = None
    fetch_result: FetchResult | None = None
    sanitized: SanitizedContent | None = None
    draft: RecipeDraft | None = None


@dataclass(slots=True)
class IngestPipelineResult:
    success: bool
    draft: RecipeDraft | None = None
    error: str | None = None
    error_code: str | None = None
    failed_phase: str | None = None


def resolve_prompt_overrides(task: Task) -> dict[str, str]:
    """Template text per catalog slot, from prompt selection then explicit overrides."""
    overrides: dict[str, str] = {}
    for slot, key in task.payload.prompt_selection.items():
        if key and key != slot and has_prompt(key):
            overrides[slot] = get_prompt_template(key)
    for slot, text in task.payload.prompt_overrides.items():
        if text and text.strip():
            overrides[slot] = text
    return overrides


class IngestPhaseRunner:
    def __init__(
        self,
        *,
        task_store: TaskStore,
        artifact_store: ArtifactStore,
        fetch_service: FetchService,
        extraction_service: ExtractionService,
        guardrail: GuardrailService,
        sanitize_service: SanitizeService | None = None,
        validator: RecipeValidator | None = None,
        recipe_store: RecipeStore | None = None,
        search_resolver: SearchProviderResolver | None = None,
        normalize_service: NormalizeService | None = None,
        publish: ProgressPublisher | None = None,
        max_discovery_candidates: int | None = None,
        allow_search_fallback: bool | None = None,
    ):
        self.task_store = task_store
        self.artifact_store = artifact_store
        self.fetch_service = fetch_service
        self.extraction_service = extraction_service
        self.guardrail = guardrail
        self.sanitize_service = sanitize_service or SanitizeService()
        self.validator = validator or RecipeValidator()
        self.recipe_store = recipe_store
        self.search_resolver = search_resolver
        self.normalize_service = normalize_service
        self._publish = publish
        self.max_discovery_candidates = max_discovery_candidates or settings.max_discovery_candidates
        self.allow_search_fallback = (
            settings.search_allow_fallback if allow_search_fallback is None else allow_search_fallback
        )
        self._handlers: dict[Phase, PhaseHandler] = {
            Phase.DISCOVER: self._discover,
            Phase.FETCH: self._fetch,
            Phase.SANITIZE: self._sanitize,
            Phase.EXTRACT: self._extract,
            Phase.VALIDATE: self._validate,
            Phase.REVIEW_READY: self._review_ready,
            Phase.NORMALIZE: self._normalize,
        }

    def publish(self, task_id: str, event: SSEEvent) -> None:
        if self._publish is None:
            return
        try:
            self._publish(task_id, event)
        except Exception as exc:
            logger.warning(f"Progress publish failed for task {task_id}: {exc}")

    async def _save(self, task: Task) -> None:
        task.touch()
        await self.task_store.save(task)

    async def run(self, task: Task, cancel: asyncio.Event | None = None) -> IngestPipelineResult:
        plan = plan_for(task.payload.mode)
        state = PipelineState(
            task=task,
            writer=ArtifactWriter(self.artifact_store, task.thread_id, task.task_id),
            cancel=cancel,
            target_url=task.payload.url,
        )

        task.status = TaskStatus.RUNNING
        task.progress = 0
        await self._save(task)
        logger.info(f"Starting {task.payload.mode.value} ingest task {task.task_id}")

        previous: Phase | None = None
        phase: Phase | None = None
        try:
            for phase in plan.phases:
                plan.check_transition(previous, phase)
                if cancel is not None and cancel.is_set():
                    raise asyncio.CancelledError("task cancelled")

                task.current_phase = phase.value
                await self._save(task)
                log_phase(task.task_id, phase.value, "started")
                self.publish(
                    task.task_id,
                    streaming.progress(task.task_id, phase.value, task.progress, "started"),
                )

                await self._handlers[phase](state)

                task.progress = plan.progress_after(phase)
                await self._save(task)
                log_phase(task.task_id, phase.value, "completed", {"progress": task.progress})
                self.publish(
                    task.task_id,
                    streaming.progress(task.task_id, phase.value, task.progress, "completed"),
                )
                previous = phase
        except IngestPipelineError as exc:
            return await self._fail(state, exc.message, exc.code, exc.phase)
        except asyncio.CancelledError:
            failed_phase = phase.value if phase is not None else None
            await self._fail(state, "Task was cancelled", "CANCELLED", failed_phase)
            if cancel is None or not cancel.is_set():
                raise
            return IngestPipelineResult(
                success=False,
                error="Task was cancelled",
                error_code="CANCELLED",
                failed_phase=failed_phase,
            )
        except Exception as exc:
            logger.exception(f"Unexpected error in ingest task {task.task_id}")
            failed_phase = phase.value if phase is not None else None
            return await self._fail(state, f"Unexpected error: {exc}", "INTERNAL_ERROR", failed_phase)

        method = state.draft.source.extraction_method if state.draft else None
        self.publish(task.task_id, streaming.review_ready(task.task_id, method))
        logger.info(f"Ingest task {task.task_id} is ready for review")
        return IngestPipelineResult(success=True, draft=state.draft)

    async def _fail(
        self,
        state: PipelineState,
        message: str,
        code: str,
        failed_phase: str | None,
    ) -> IngestPipelineResult:
        task = state.task
        task.status = TaskStatus.FAILED
        task.error = message
        task.error_code = code
        task.failed_phase = failed_phase
        await self._save(task)
        log_phase(task.task_id, failed_phase or "unknown", "failed", {"error_code": code, "error": message})
        self.publish(task.task_id, streaming.phase_failed(task.task_id, failed_phase or "", code, message))
        self.publish(task.task_id, streaming.task_failed(task.task_id, failed_phase or "", code, message))
        return IngestPipelineResult(
            success=False,
            draft=state.draft,
            error=message,
            error_code=code,
            failed_phase=failed_phase,
        )

    async def _discover(self, state: PipelineState) -> None:
        task = state.task
        payload = task.payload
        phase = Phase.DISCOVER.value
        if self.search_resolver is None:
            raise IngestPipelineError("No search providers are configured", "SEARCH_FAILED", phase)

        provider_id = task.metadata.get("searchProviderId") or payload.search_provider_id
        query = build_search_query(payload.query or "", payload.constraints)
        request = SearchRequest(query=query, max_results=self.max_discovery_candidates)
        try:
            response = await run_cancellable(
                search_with_fallback(
                    self.search_resolver,
                    provider_id,
                    request,
                    allow_fallback=self.allow_search_fallback,
                ),
                state.cancel,
            )
        except SearchProviderNotFoundError as exc:
            raise IngestPipelineError(exc.message, exc.code, phase) from exc

        if response.fallback_from:
            task.metadata["searchFallbackFrom"] = response.fallback_from
            task.metadata["searchFallbackReason"] = response.fallback_reason or ""
            await state.writer.put_json(
                artifacts.SEARCH_FALLBACK,
                {
                    "provider": response.provider,
                    "fallbackFrom": response.fallback_from,
                    "fallbackReason": response.fallback_reason,
                },
            )
            self.publish(
                task.task_id,
                streaming.search_fallback(
                    task.task_id, response.provider, response.fallback_from, response.fallback_reason or ""
                ),
            )

        result = response.result
        if not result.success:
            raise IngestPipelineError(
                f"Search failed ({result.error_code}): {result.error}",
                "SEARCH_FAILED",
                phase,
            )

        ranked = rank_candidates(query, result.candidates, self.max_discovery_candidates)
        await state.writer.put_json(
            artifacts.SEARCH_CANDIDATES,
            {
                "query": query,
                "provider": response.provider,
                "totalResults": result.total_results,
                "candidates": [{**c.to_dict(), "score": round(score, 4)} for c, score in ranked],
            },
        )
        if not ranked:
            raise IngestPipelineError(f"No search results for '{query}'", "NO_SEARCH_RESULTS", phase)

        state.target_url = ranked[0][0].url
        task.metadata["discoveredUrl"] = state.target_url
        task.metadata["searchProvider"] = response.provider
        logger.info(f"Discovered {len(ranked)} candidates, fetching {state.target_url}")

    async def _fetch(self, state: PipelineState) -> None:
        phase = Phase.FETCH.value
        if not state.target_url:
            raise IngestPipelineError("No URL to fetch", "MISSING_URL", phase)

        result = await self.fetch_service.fetch(state.target_url, cancel=state.cancel)
        state.fetch_result = result
        if not result.success:
            raise IngestPipelineError(result.error or "Fetch failed", result.error_code or "FETCH_FAILED", phase)

        await state.writer.put_text(
            artifacts.RAW_HTML,
            result.content or "",
            content_type=result.content_type or "text/html",
        )
        if result.final_url and result.final_url != state.target_url:
            state.task.metadata["finalUrl"] = result.final_url

    async def _sanitize(self, state: PipelineState) -> None:
        html = state.fetch_result.content if state.fetch_result else None
        sanitized = self.sanitize_service.sanitize(html)
        state.sanitized = sanitized
        if not sanitized.text_content.strip() and not sanitized.has_recipe_json_ld:
            raise IngestPipelineError("Page has no readable content", "EMPTY_CONTENT", Phase.SANITIZE.value)

        await state.writer.put_text(artifacts.SANITIZED_TEXT, sanitized.text_content)
        await state.writer.put_json(
            artifacts.PAGE_METADATA,
            {
                **sanitized.metadata.to_dict(),
                "originalLength": sanitized.original_length,
                "sanitizedLength": sanitized.sanitized_length,
                "jsonLdBlocks": len(sanitized.json_ld_snippets),
            },
        )
        if sanitized.recipe_json_ld:
            await state.writer.put_text(
                artifacts.JSON_LD,
                sanitized.recipe_json_ld,
                content_type="application/ld+json",
            )

    async def _extract(self, state: PipelineState) -> None:
        task = state.task
        context = ExtractionContext(
            source_url=state.target_url or "",
            task_id=task.task_id,
            prompt_overrides=resolve_prompt_overrides(task),
            cancel=state.cancel,
        )

        async def sink(name: str, payload: Any) -> None:
            await state.writer.put_json(name, payload)

        result = await self.extraction_service.extract(
            state.sanitized or SanitizedContent(),
            state.target_url or "",
            context=context,
            artifact_sink=sink,
        )
        await state.writer.put_json(artifacts.EXTRACTION_RESULT, result.to_dict())
        if not result.success or result.draft is None:
            raise IngestPipelineError(
                result.error or "Extraction failed",
                result.error_code or "EXTRACTION_FAILED",
                Phase.EXTRACT.value,
            )
        state.draft = result.draft
        task.metadata["extractionMethod"] = result.draft.source.extraction_method or ""

    async def _validate(self, state: PipelineState) -> None:
        task = state.task
        source_text = state.sanitized.text_content if state.sanitized else ""
        outcome = await self.guardrail.check(state.draft, source_text, cancel=state.cancel)
        draft = outcome.draft

        report = self.validator.validate(draft.recipe)
        report.errors.extend(outcome.errors)
        report.warnings.extend(outcome.warnings)
        if self.recipe_store is not None and draft.source.url_hash:
            existing = await self.recipe_store.find_by_url_hash(draft.source.url_hash)
            if existing is not None:
                report.warnings.append(
                    f"[DUPLICATE_URL] Source: A recipe from this URL already exists (ID: {existing.id})"
                )
        draft.validation_report = report
        state.draft = draft

        await state.writer.put_json(artifacts.VALIDATION_REPORT, report.to_dict())
        await state.writer.put_json(artifacts.SIMILARITY_REPORT, outcome.report.to_dict())
        if outcome.repair_result is not None:
            await state.writer.put_json(artifacts.REPAIR_REPORT, outcome.repair_result.to_dict())
        task.metadata["guardrailBlocked"] = "true" if draft.guardrail_blocked else "false"

    async def _review_ready(self, state: PipelineState) -> None:
        task = state.task
        draft = state.draft
        draft.artifacts = list(state.writer.refs)
        await state.writer.put_json(artifacts.DRAFT_RECIPE, draft.to_dict())
        draft.artifacts = list(state.writer.refs)

        task.status = TaskStatus.REVIEW_READY
        task.result = json.dumps(draft.to_dict(), ensure_ascii=False)
        task.metadata["reviewReadyAt"] = utcnow().isoformat()

    async def _normalize(self, state: PipelineState) -> None:
        task = state.task
        phase = Phase.NORMALIZE.value
        recipe_id = task.payload.recipe_id or ""
        if self.recipe_store is None or self.normalize_service is None:
            raise IngestPipelineError("Normalization is not configured", "NORMALIZE_UNAVAILABLE", phase)

        recipe = await self.recipe_store.get(recipe_id)
        if recipe is None:
            raise IngestPipelineError(f"Recipe not found: {recipe_id}", "RECIPE_NOT_FOUND", phase)

        try:
            response = await run_cancellable(
                self.normalize_service.generate_patches(recipe),
                state.cancel,
            )
        except NormalizeError as exc:
            raise IngestPipelineError(exc.message, exc.code, phase) from exc

        await state.writer.put_json(artifacts.NORMALIZE_PATCHES, response.to_dict())
        task.status = TaskStatus.REVIEW_READY
        task.result = json.dumps(response.to_dict(), ensure_ascii=False)
        task.metadata["reviewReadyAt"] = utcnow().isoformat()
        task.metadata["patchCount"] = str(len(response.patches))
