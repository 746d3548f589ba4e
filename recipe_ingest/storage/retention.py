"""
Background cleanup of task artifacts.

Artifacts live under "{thread_id}/{task_id}/". A task's artifacts are deleted once
the task is older than its retention period: committed tasks keep theirs longer
than rejected, expired or failed ones. Tasks that are still in flight or awaiting
review are never touched. Artifact groups whose task no longer exists are
treated as past retention.
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable

from loguru import logger

from recipe_ingest.config import settings
from recipe_ingest.models.task import TERMINAL_STATUSES, TaskStatus, utcnow
from recipe_ingest.services.cancellation import run_periodically
from recipe_ingest.services.logger import log_event
from recipe_ingest.storage.base import ArtifactStore, TaskStore


def group_by_task(paths: list[str]) -> dict[tuple[str, str], list[str]]:
    groups: dict[tuple[str, str], list[str]] = defaultdict(list)
    for path in paths:
        parts = path.split("/")
        if len(parts) < 3:
            continue
        groups[(parts[0], parts[1])].append(path)
    return groups


class ArtifactRetentionSweeper:
    def __init__(
        self,
        artifact_store: ArtifactStore,
        task_store: TaskStore,
        *,
        committed_days: int | None = None,
        non_committed_days: int | None = None,
        max_deletes_per_run: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.artifact_store = artifact_store
        self.task_store = task_store
        self.committed_days = (
            settings.artifact_retention_committed_days if committed_days is None else committed_days
        )
        self.non_committed_days = (
            settings.artifact_retention_non_committed_days
            if non_committed_days is None
            else non_committed_days
        )
        self.max_deletes_per_run = (
            settings.artifact_retention_max_deletes_per_run
            if max_deletes_per_run is None
            else max_deletes_per_run
        )
        self._clock = clock

    async def _past_retention(self, task_id: str, now: datetime) -> bool:
        task = await self.task_store.get(task_id)
        if task is None:
            return True
        if task.status not in TERMINAL_STATUSES:
            return False
        days = self.committed_days if task.status is TaskStatus.COMMITTED else self.non_committed_days
        return task.created_at + timedelta(days=days) < now

    async def sweep(self, cancel: asyncio.Event | None = None) -> int:
        """Delete artifacts past retention. Returns the number of blobs removed."""
        now = self._clock()
        groups = group_by_task(await self.artifact_store.list(""))
        deleted = 0
        for (thread_id, task_id), paths in groups.items():
            if cancel is not None and cancel.is_set():
                logger.info("Artifact retention sweep cancelled")
                break
            if deleted >= self.max_deletes_per_run:
                logger.info(f"Artifact retention reached {self.max_deletes_per_run} deletes, stopping")
                break
            try:
                if not await self._past_retention(task_id, now):
                    continue
                for path in paths:
                    if await self.artifact_store.delete(path):
                        deleted += 1
                logger.debug(f"Deleted {len(paths)} artifacts for {thread_id}/{task_id}")
            except Exception as exc:
                logger.warning(f"Artifact retention failed for {thread_id}/{task_id}: {exc}")
                continue

        if deleted:
            log_event("artifacts_deleted", f"Deleted {deleted} expired artifacts", count=deleted)
        return deleted

    async def run_forever(self, cancel: asyncio.Event | None = None) -> None:
        await run_periodically(
            "Artifact retention sweeper",
            self.sweep,
            settings.artifact_retention_interval_hours * 3600,
            settings.artifact_retention_initial_delay_seconds,
            cancel,
        )
