from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from recipe_ingest.models.recipe import Recipe


@dataclass(slots=True)
class ExtractionContext:
    source_url: str
    task_id: str | None = None
    prompt_overrides: dict[str, str] = field(default_factory=dict)
    cancel: asyncio.Event | None = None


@dataclass(slots=True)
class ExtractionResult:
    success: bool
    recipe: Recipe | None = None
    method: str | None = None
    confidence: float = 0.0
    error: str | None = None
    error_code: str | None = None
    warnings: list[str] = field(default_factory=list)
    license_hint: str | None = None
    author: str | None = None
    repair_attempts: int = 0
    raw_response: str | None = None

    @classmethod
    def failed(cls, error: str, error_code: str, **kwargs: Any) -> "ExtractionResult":
        return cls(success=False, error=error, error_code=error_code, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "method": self.method,
            "confidence": self.confidence,
            "error": self.error,
            "errorCode": self.error_code,
            "warnings": list(self.warnings),
            "repairAttempts": self.repair_attempts,
            "recipe": self.recipe.to_dict() if self.recipe else None,
        }
