from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from recipe_ingest.models.recipe import Recipe


PatchOp = Literal["replace", "add", "remove"]
PatchStatus = Literal["succeeded", "partial", "failed"]

VALID_OPS = ("replace", "add", "remove")


class RiskCategory(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> "RiskCategory":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        # unknown tiers are treated as the riskiest
        return cls.HIGH


_RISK_RANK = {RiskCategory.LOW: 0, RiskCategory.MEDIUM: 1, RiskCategory.HIGH: 2}


@dataclass(slots=True)
class NormalizePatchOperation:
    op: str
    path: str
    value: Any = None
    risk_category: RiskCategory = RiskCategory.LOW
    reason: str = ""
    original_value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "op": self.op,
            "path": self.path,
            "value": self.value,
            "riskCategory": self.risk_category.value,
            "reason": self.reason,
            "originalValue": self.original_value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NormalizePatchOperation":
        return cls(
            op=str(data.get("op") or "").strip().lower(),
            path=str(data.get("path") or ""),
            value=data.get("value"),
            risk_category=RiskCategory.parse(data.get("riskCategory") or data.get("risk_category")),
            reason=str(data.get("reason") or ""),
            original_value=data.get("originalValue"),
        )


def sort_by_risk(patches: list[NormalizePatchOperation]) -> list[NormalizePatchOperation]:
    """Stable sort, low risk first."""
    return sorted(patches, key=lambda p: p.risk_category.rank)


@dataclass(slots=True)
class NormalizePatchResponse:
    patches: list[NormalizePatchOperation] = field(default_factory=list)
    summary: str = ""
    has_high_risk_changes: bool = False

    def risk_counts(self) -> dict[str, int]:
        counts = {risk.value: 0 for risk in RiskCategory}
        for patch in self.patches:
            counts[patch.risk_category.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "patches": [p.to_dict() for p in self.patches],
            "summary": self.summary,
            "hasHighRiskChanges": self.has_high_risk_changes,
            "riskCounts": self.risk_counts(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NormalizePatchResponse":
        patches = sort_by_risk(
            [
                NormalizePatchOperation.from_dict(item)
                for item in data.get("patches") or []
                if isinstance(item, dict)
            ]
        )
        return cls(
            patches=patches,
            summary=str(data.get("summary") or ""),
            has_high_risk_changes=any(p.risk_category is RiskCategory.HIGH for p in patches),
        )


@dataclass(slots=True)
class FailedPatch:
    patch: NormalizePatchOperation
    error: str


@dataclass(slots=True)
class PatchApplicationResult:
    status: PatchStatus
    updated_recipe: Recipe | None
    applied: list[NormalizePatchOperation] = field(default_factory=list)
    failed: list[FailedPatch] = field(default_factory=list)
    summary: str = ""

    @property
    def applied_count(self) -> int:
        return len(self.applied)

    @property
    def failed_count(self) -> int:
        return len(self.failed)
