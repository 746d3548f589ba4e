from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    REVIEW_READY = "ReviewReady"
    COMMITTED = "Committed"
    REJECTED = "Rejected"
    EXPIRED = "Expired"
    FAILED = "Failed"


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMMITTED, TaskStatus.REJECTED, TaskStatus.EXPIRED, TaskStatus.FAILED}
)


class IngestMode(str, Enum):
    URL = "Url"
    QUERY = "Query"
    NORMALIZE = "Normalize"


INGEST_AGENT_TYPE = "Ingest"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_etag() -> str:
    return uuid.uuid4().hex


@dataclass(slots=True)
class IngestConstraints:
    diet_type: str | None = None
    cuisine: str | None = None
    max_prep_minutes: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "dietType": self.diet_type,
            "cuisine": self.cuisine,
            "maxPrepMinutes": self.max_prep_minutes,
        }


@dataclass(slots=True)
class IngestPayload:
    mode: IngestMode
    url: str | None = None
    query: str | None = None
    recipe_id: str | None = None
    constraints: IngestConstraints | None = None
    prompt_selection: dict[str, str] = field(default_factory=dict)
    prompt_overrides: dict[str, str] = field(default_factory=dict)
    search_provider_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "url": self.url,
            "query": self.query,
            "recipeId": self.recipe_id,
            "constraints": self.constraints.to_dict() if self.constraints else None,
            "promptSelection": dict(self.prompt_selection),
            "promptOverrides": dict(self.prompt_overrides),
            "search": {"providerId": self.search_provider_id},
        }


@dataclass(slots=True)
class Task:
    task_id: str
    thread_id: str
    payload: IngestPayload
    agent_type: str = INGEST_AGENT_TYPE
    status: TaskStatus = TaskStatus.PENDING
    current_phase: str | None = None
    progress: int = 0
    result: str | None = None
    error: str | None = None
    error_code: str | None = None
    failed_phase: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    etag: str = field(default_factory=new_etag)
    created_at: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def touch(self, now: datetime | None = None) -> None:
        """Refresh the modification time and issue a new etag."""
        self.last_updated = now or utcnow()
        self.etag = new_etag()

    def to_state(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "threadId": self.thread_id,
            "agentType": self.agent_type,
            "mode": self.payload.mode.value,
            "status": self.status.value,
            "currentPhase": self.current_phase,
            "progress": self.progress,
            "result": self.result,
            "error": self.error,
            "errorCode": self.error_code,
            "failedPhase": self.failed_phase,
            "etag": self.etag,
            "metadata": dict(self.metadata),
            "createdAt": self.created_at.isoformat(),
            "lastUpdated": self.last_updated.isoformat(),
        }
