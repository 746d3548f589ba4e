from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable

from loguru import logger

from recipe_ingest.config import settings
from recipe_ingest.ingest.lifecycle.service import DraftLifecycleService
from recipe_ingest.models.task import TaskStatus, utcnow
from recipe_ingest.services.cancellation import run_periodically
from recipe_ingest.services.logger import log_event


class DraftExpirationSweeper:
    """Moves ReviewReady drafts past their review window to Expired."""

    def __init__(
        self,
        lifecycle: DraftLifecycleService,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.lifecycle = lifecycle
        self._clock = clock

    @property
    def expiration_days(self) -> int:
        return self.lifecycle.expiration_days

    async def sweep(self, cancel: asyncio.Event | None = None) -> int:
        now = self._clock()
        candidates = await self.lifecycle.task_store.list_by_status(TaskStatus.REVIEW_READY)
        expired = 0
        for task in candidates:
            if cancel is not None and cancel.is_set():
                logger.info("Expiration sweep cancelled")
                break
            try:
                if await self.lifecycle.expire_if_stale(task.task_id, now):
                    expired += 1
            except Exception as exc:
                logger.error(f"Failed to expire task {task.task_id}: {exc}")
                continue

        if expired:
            log_event("drafts_expired", f"Expired {expired} drafts", count=expired)
        else:
            logger.debug("Expiration sweep found nothing to expire")
        return expired

    async def run_forever(
        self,
        interval_seconds: float | None = None,
        initial_delay_seconds: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        await run_periodically(
            "Draft expiration sweeper",
            self.sweep,
            interval_seconds or settings.expiration_sweep_interval_minutes * 60,
            (
                settings.expiration_sweep_initial_delay_seconds
                if initial_delay_seconds is None
                else initial_delay_seconds
            ),
            cancel,
        )
