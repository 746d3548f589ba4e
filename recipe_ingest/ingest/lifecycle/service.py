from __future__ import annotations

import asyncio
import json
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from loguru import logger

from recipe_ingest.config import settings
from recipe_ingest.errors import LifecycleError, TaskNotFoundError
from recipe_ingest.ingest.extract.service import compute_url_hash
from recipe_ingest.ingest.guardrail.repair import RepairParaphraseService
from recipe_ingest.ingest.guardrail.service import similarity_issues
from recipe_ingest.models.recipe import RecipeDraft
from recipe_ingest.models.task import IngestMode, Task, TaskStatus, utcnow
from recipe_ingest.services.logger import log_event
from recipe_ingest.storage import artifacts
from recipe_ingest.storage.artifacts import ArtifactWriter
from recipe_ingest.storage.base import ArtifactStore, RecipeStore, TaskStore

SIMILARITY_ISSUE_PREFIXES = ("[SIMILARITY_VIOLATION]", "[SIMILARITY_WARNING]", "[GUARDRAIL_BLOCKED]")


@dataclass(slots=True)
class CommitOverrides:
    name: str | None = None
    description: str | None = None
    cuisine: str | None = None
    diet_type: str | None = None
    tags: list[str] | None = None


@dataclass(slots=True)
class CommitOutcome:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def review_ready_at(task: Task) -> datetime:
    raw = task.metadata.get("reviewReadyAt")
    if raw:
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.warning(f"Task {task.task_id} has malformed reviewReadyAt: {raw!r}")
    return task.last_updated


def review_window_elapsed(task: Task, expiration_days: int, now: datetime) -> bool:
    return review_ready_at(task) + timedelta(days=expiration_days) < now


def parse_draft(task: Task) -> RecipeDraft | None:
    if not task.result:
        return None
    try:
        return RecipeDraft.from_dict(json.loads(task.result))
    except (json.JSONDecodeError, TypeError, KeyError, ValueError, AttributeError):
        return None


class DraftLifecycleService:
    """Commit, reject and manual repair of ReviewReady drafts."""

    def __init__(
        self,
        task_store: TaskStore,
        recipe_store: RecipeStore,
        *,
        artifact_store: ArtifactStore | None = None,
        repair_service: RepairParaphraseService | None = None,
        expiration_days: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.task_store = task_store
        self.recipe_store = recipe_store
        self.artifact_store = artifact_store
        self.repair_service = repair_service
        self.expiration_days = (
            settings.draft_expiration_days if expiration_days is None else expiration_days
        )
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _get_task(self, task_id: str) -> Task:
        task = await self.task_store.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def _save(self, task: Task, now: datetime) -> None:
        task.touch(now)
        await self.task_store.save(task)

    async def commit(
        self,
        task_id: str,
        etag: str | None = None,
        overrides: CommitOverrides | None = None,
    ) -> CommitOutcome:
        async with self._locks[task_id]:
            return await self._commit(task_id, etag, overrides)

    async def _commit(
        self,
        task_id: str,
        etag: str | None,
        overrides: CommitOverrides | None,
    ) -> CommitOutcome:
        task = await self._get_task(task_id)

        if task.status is TaskStatus.COMMITTED:
            return CommitOutcome(
                status_code=200,
                body={
                    "recipeId": task.metadata.get("committedRecipeId"),
                    "taskId": task_id,
                    "taskStatus": task.status.value,
                    "warnings": ["Task was already committed"],
                    "duplicateDetected": False,
                },
            )
        if task.status is TaskStatus.REJECTED:
            raise LifecycleError("Task was rejected and cannot be committed", "TASK_REJECTED")
        if task.status is TaskStatus.EXPIRED:
            raise LifecycleError(
                f"Draft expired after {self.expiration_days} days",
                "DRAFT_EXPIRED",
                410,
            )
        if task.status is not TaskStatus.REVIEW_READY:
            raise LifecycleError(
                f"Task must be ReviewReady to commit (current: {task.status.value})",
                "INVALID_TASK_STATE",
            )
        if task.payload.mode is IngestMode.NORMALIZE:
            raise LifecycleError(
                "Normalization tasks are applied through the normalize endpoints",
                "INVALID_TASK_STATE",
            )

        now = self._clock()
        if review_window_elapsed(task, self.expiration_days, now):
            await self._expire(task, now)
            raise LifecycleError(
                f"Draft expired after {self.expiration_days} days",
                "DRAFT_EXPIRED",
                410,
            )

        if etag is not None and etag.strip('"') != task.etag:
            raise LifecycleError(
                "Task was modified by another request; reload and retry",
                "CONCURRENCY_CONFLICT",
                409,
            )

        draft = parse_draft(task)
        if draft is None:
            raise LifecycleError("Task result does not contain a valid draft", "INVALID_DRAFT")
        if draft.guardrail_blocked:
            raise LifecycleError(
                "Draft is too similar to its source; repair it before committing",
                "GUARDRAIL_BLOCKED",
            )

        source = draft.source
        if not source.url_hash and source.url:
            source.url_hash = compute_url_hash(source.url)

        warnings: list[str] = []
        duplicate_id: str | None = None
        if source.url_hash:
            existing = await self.recipe_store.find_by_url_hash(source.url_hash)
            if existing is not None:
                duplicate_id = existing.id
                warnings.append(f"A recipe from this URL already exists (ID: {existing.id})")

        recipe = draft.recipe
        recipe.id = str(uuid.uuid4())
        recipe.created_at = now
        recipe.updated_at = now
        recipe.source = source
        if overrides is not None:
            if overrides.name:
                recipe.name = overrides.name
            if overrides.description is not None:
                recipe.description = overrides.description
            if overrides.cuisine is not None:
                recipe.cuisine = overrides.cuisine
            if overrides.diet_type is not None:
                recipe.diet_type = overrides.diet_type
            if overrides.tags is not None:
                recipe.tags = list(overrides.tags)

        try:
            await self.recipe_store.save(recipe)
        except Exception as exc:
            logger.error(f"Failed to persist recipe for task {task_id}: {exc}")
            raise LifecycleError(f"Failed to save recipe: {exc}", "PERSISTENCE_FAILED", 500) from exc

        task.metadata["committedRecipeId"] = recipe.id
        task.metadata["committedAt"] = now.isoformat()
        task.status = TaskStatus.COMMITTED
        task.current_phase = "Committed"
        task.progress = 100
        await self._save(task, now)

        log_event(
            "draft_committed",
            f"Committed recipe {recipe.id} from task {task_id}",
            task_id=task_id,
            recipe_id=recipe.id,
            duplicate=duplicate_id is not None,
        )
        return CommitOutcome(
            status_code=201,
            body={
                "recipeId": recipe.id,
                "taskId": task_id,
                "taskStatus": task.status.value,
                "recipeName": recipe.name,
                "urlHash": source.url_hash,
                "warnings": warnings,
                "duplicateDetected": duplicate_id is not None,
                "duplicateRecipeId": duplicate_id,
                "createdAt": now.isoformat(),
            },
        )

    async def expire_if_stale(self, task_id: str, now: datetime | None = None) -> bool:
        """Expire a ReviewReady draft whose review window has elapsed.

        Holds the per-task lock shared with commit and reject.
        """
        async with self._locks[task_id]:
            task = await self.task_store.get(task_id)
            if task is None or task.status is not TaskStatus.REVIEW_READY:
                return False
            now = now or self._clock()
            if not review_window_elapsed(task, self.expiration_days, now):
                return False
            await self._expire(task, now)
            return True

    async def _expire(self, task: Task, now: datetime) -> None:
        task.status = TaskStatus.EXPIRED
        task.current_phase = "Expired"
        task.result = (
            f"Draft expired after {self.expiration_days} days "
            f"(ReviewReady at {review_ready_at(task).isoformat()})"
        )
        task.metadata["expiredAt"] = now.isoformat()
        await self._save(task, now)
        logger.info(f"Task {task.task_id} expired")

    async def reject(self, task_id: str, reason: str | None = None) -> dict[str, Any]:
        async with self._locks[task_id]:
            task = await self._get_task(task_id)
            if task.status is TaskStatus.REJECTED:
                return {
                    "taskId": task_id,
                    "status": task.status.value,
                    "reason": task.metadata.get("rejectionReason"),
                }
            if task.status in (TaskStatus.COMMITTED, TaskStatus.EXPIRED):
                raise LifecycleError(f"Task is already {task.status.value}", "ALREADY_TERMINAL")
            if task.status is not TaskStatus.REVIEW_READY:
                raise LifecycleError(
                    f"Task must be ReviewReady to reject (current: {task.status.value})",
                    "INVALID_TASK_STATE",
                )

            now = self._clock()
            task.status = TaskStatus.REJECTED
            task.current_phase = "Rejected"
            task.result = reason
            task.metadata["rejectedAt"] = now.isoformat()
            if reason:
                task.metadata["rejectionReason"] = reason
            await self._save(task, now)
            log_event("draft_rejected", f"Rejected task {task_id}", task_id=task_id, reason=reason)
            return {"taskId": task_id, "status": task.status.value, "reason": reason}

    async def repair(self, task_id: str) -> dict[str, Any]:
        async with self._locks[task_id]:
            return await self._repair(task_id)

    async def _repair(self, task_id: str) -> dict[str, Any]:
        task = await self._get_task(task_id)
        if task.status is not TaskStatus.REVIEW_READY:
            raise LifecycleError(
                f"Task must be ReviewReady to repair (current: {task.status.value})",
                "INVALID_TASK_STATE",
            )
        draft = parse_draft(task) if task.payload.mode is not IngestMode.NORMALIZE else None
        if draft is None:
            raise LifecycleError("Task has no recipe draft", "NO_DRAFT_FOUND")
        report = draft.similarity_report
        if report is None or not report.violates_policy:
            raise LifecycleError("Draft does not violate the similarity policy", "NO_REPAIR_NEEDED")
        if self.repair_service is None or self.artifact_store is None:
            raise LifecycleError("Repair is not configured", "REPAIR_FAILED", 500)

        writer = ArtifactWriter(self.artifact_store, task.thread_id, task.task_id)
        writer.refs = list(draft.artifacts)
        source_text = await writer.get_text(artifacts.SANITIZED_TEXT)
        if source_text is None:
            raise LifecycleError("Sanitized source text is not available", "NO_DRAFT_FOUND")

        result = await self.repair_service.repair(draft, source_text, report)
        await writer.put_json(artifacts.MANUAL_REPAIR_REPORT, result.to_dict())
        if not result.success or result.repaired_draft is None or result.new_similarity_report is None:
            raise LifecycleError(
                f"Repair failed: {result.error or result.details}",
                "REPAIR_FAILED",
                500,
            )

        repaired = result.repaired_draft
        new_report = result.new_similarity_report
        errors, warnings = similarity_issues(self.repair_service.detector, new_report)
        validation = repaired.validation_report
        validation.errors = [e for e in validation.errors if not e.startswith(SIMILARITY_ISSUE_PREFIXES)]
        validation.warnings = [w for w in validation.warnings if not w.startswith(SIMILARITY_ISSUE_PREFIXES)]
        validation.errors.extend(errors)
        validation.warnings.extend(warnings)
        repaired.guardrail_blocked = new_report.violates_policy
        if repaired.guardrail_blocked:
            validation.errors.append(
                "[GUARDRAIL_BLOCKED] Similarity: Draft is too similar to its source and cannot be committed"
            )
        repaired.artifacts = list(writer.refs)

        now = self._clock()
        task.result = json.dumps(repaired.to_dict(), ensure_ascii=False)
        task.metadata["guardrailBlocked"] = "true" if repaired.guardrail_blocked else "false"
        task.metadata["manualRepairAt"] = now.isoformat()
        await self._save(task, now)

        logger.info(
            f"Manual repair for task {task_id}: violates_policy={new_report.violates_policy}, "
            f"sections={result.repaired_sections}"
        )
        return {
            "taskId": task_id,
            "success": True,
            "stillViolatesPolicy": new_report.violates_policy,
            "guardrailBlocked": repaired.guardrail_blocked,
            "repairedSections": result.repaired_sections,
            "similarityReport": new_report.to_dict(),
            "etag": task.etag,
        }
