from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    PROGRESS = "ingest.progress"
    PHASE_FAILED = "ingest.phase_failed"
    REVIEW_READY = "ingest.review_ready"
    TASK_FAILED = "ingest.failed"
    SEARCH_FALLBACK = "ingest.search_fallback"


TERMINAL_EVENTS = frozenset({EventType.REVIEW_READY, EventType.TASK_FAILED})


@dataclass
class SSEEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.data)}\n\n"
