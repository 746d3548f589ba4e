from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable

from loguru import logger

from recipe_ingest.errors import LifecycleError, RecipeNotFoundError, TaskNotFoundError
from recipe_ingest.ingest.normalize.service import NormalizeService
from recipe_ingest.models.patches import NormalizePatchResponse, RiskCategory
from recipe_ingest.models.task import IngestMode, Task, TaskStatus, utcnow
from recipe_ingest.services.logger import log_event
from recipe_ingest.storage.base import RecipeStore, TaskStore


class PatchApplicationService:
    """Applies or rejects the patch set produced by a Normalize task."""

    def __init__(
        self,
        task_store: TaskStore,
        recipe_store: RecipeStore,
        normalize: NormalizeService,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.task_store = task_store
        self.recipe_store = recipe_store
        self.normalize = normalize
        self._clock = clock

    async def _load_normalize_task(self, task_id: str) -> Task:
        task = await self.task_store.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.payload.mode is not IngestMode.NORMALIZE:
            raise LifecycleError(
                f"Task {task_id} is not a normalization task",
                "INVALID_TASK_STATE",
            )
        return task

    async def apply(
        self,
        task_id: str,
        recipe_id: str,
        patch_indices: list[int] | None = None,
        max_risk: RiskCategory | str | None = None,
    ) -> dict[str, Any]:
        task = await self._load_normalize_task(task_id)
        if task.status is not TaskStatus.REVIEW_READY:
            raise LifecycleError(
                f"Task must be ReviewReady to apply patches (current: {task.status.value})",
                "INVALID_TASK_STATE",
            )
        if task.payload.recipe_id and task.payload.recipe_id != recipe_id:
            raise LifecycleError(
                f"Task {task_id} normalizes recipe {task.payload.recipe_id}, not {recipe_id}",
                "RECIPE_MISMATCH",
            )

        recipe = await self.recipe_store.get(recipe_id)
        if recipe is None:
            raise RecipeNotFoundError(recipe_id)

        try:
            response = NormalizePatchResponse.from_dict(json.loads(task.result or "{}"))
        except (json.JSONDecodeError, TypeError, AttributeError):
            response = NormalizePatchResponse()
        if not response.patches:
            raise LifecycleError("Task has no patches to apply", "NO_PATCHES")

        selected = list(enumerate(response.patches))
        if patch_indices is not None:
            wanted = set(patch_indices)
            selected = [(i, p) for i, p in selected if i in wanted]
        if max_risk is not None:
            ceiling = RiskCategory.parse(max_risk).rank
            selected = [(i, p) for i, p in selected if p.risk_category.rank <= ceiling]
        skipped = len(response.patches) - len(selected)

        if not selected:
            return {
                "success": True,
                "recipeId": recipe_id,
                "appliedCount": 0,
                "failedCount": 0,
                "skippedCount": skipped,
                "summary": "No patches matched the selection",
                "errors": [],
            }

        result = self.normalize.apply_patches(recipe, [p for _, p in selected])
        updated = result.updated_recipe
        now = self._clock()
        updated.updated_at = now
        try:
            await self.recipe_store.save(updated)
        except Exception as exc:
            logger.error(f"Failed to persist normalized recipe {recipe_id}: {exc}")
            raise LifecycleError(f"Failed to save recipe: {exc}", "PERSIST_FAILED", 500) from exc

        task.status = TaskStatus.COMMITTED
        task.current_phase = "Committed"
        task.progress = 100
        task.metadata["appliedAt"] = now.isoformat()
        task.metadata["appliedPatchCount"] = str(result.applied_count)
        task.touch(now)
        await self.task_store.save(task)

        log_event(
            "normalize_patches_applied",
            f"Applied normalization patches to recipe {recipe_id}",
            task_id=task_id,
            applied=result.applied_count,
            failed=result.failed_count,
            skipped=skipped,
        )
        return {
            "success": result.status != "failed",
            "recipeId": recipe_id,
            "appliedCount": result.applied_count,
            "failedCount": result.failed_count,
            "skippedCount": skipped,
            "summary": result.summary,
            "errors": [f"{f.patch.path}: {f.error}" for f in result.failed],
        }

    async def reject(self, task_id: str, reason: str | None = None) -> dict[str, Any]:
        task = await self._load_normalize_task(task_id)
        if task.status is TaskStatus.REJECTED:
            return {"taskId": task_id, "status": task.status.value}
        if task.is_terminal:
            raise LifecycleError(
                f"Task is already {task.status.value}",
                "ALREADY_TERMINAL",
            )
        if task.status is not TaskStatus.REVIEW_READY:
            raise LifecycleError(
                f"Task must be ReviewReady to reject patches (current: {task.status.value})",
                "INVALID_TASK_STATE",
            )

        now = self._clock()
        task.status = TaskStatus.REJECTED
        task.current_phase = "Rejected"
        task.metadata["rejectedAt"] = now.isoformat()
        if reason:
            task.metadata["rejectionReason"] = reason
        task.touch(now)
        await self.task_store.save(task)
        logger.info(f"Normalization patches rejected for task {task_id}")
        return {"taskId": task_id, "status": task.status.value}
