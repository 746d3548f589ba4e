from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal


ExtractionMethod = Literal["StructuredData", "Llm"]


def _dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt_from_str(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _opt_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _opt_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(slots=True)
class Ingredient:
    name: str
    quantity: float | None = None
    unit: str | None = None
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "quantity": self.quantity,
            "unit": self.unit,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Ingredient":
        return cls(
            name=str(data.get("name") or ""),
            quantity=_opt_float(data.get("quantity")),
            unit=data.get("unit") or None,
            notes=data.get("notes") or None,
        )


@dataclass(slots=True)
class NutritionInfo:
    calories: float = 0.0
    protein_grams: float = 0.0
    carbs_grams: float = 0.0
    fat_grams: float = 0.0
    fiber_grams: float = 0.0
    sugar_grams: float = 0.0
    sodium_mg: float = 0.0

    _KEYS = (
        ("calories", "calories"),
        ("protein_grams", "proteinGrams"),
        ("carbs_grams", "carbsGrams"),
        ("fat_grams", "fatGrams"),
        ("fiber_grams", "fiberGrams"),
        ("sugar_grams", "sugarGrams"),
        ("sodium_mg", "sodiumMg"),
    )

    def to_dict(self) -> dict[str, float]:
        return {key: getattr(self, attr) for attr, key in self._KEYS}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NutritionInfo":
        values = {attr: _opt_float(data.get(key)) or 0.0 for attr, key in cls._KEYS}
        return cls(**values)


@dataclass(slots=True)
class RecipeSource:
    url: str
    url_hash: str = ""
    site_name: str | None = None
    author: str | None = None
    retrieved_at: datetime | None = None
    extraction_method: str | None = None
    license_hint: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "urlHash": self.url_hash,
            "siteName": self.site_name,
            "author": self.author,
            "retrievedAt": _dt_to_str(self.retrieved_at),
            "extractionMethod": self.extraction_method,
            "licenseHint": self.license_hint,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecipeSource":
        return cls(
            url=str(data.get("url") or ""),
            url_hash=str(data.get("urlHash") or ""),
            site_name=data.get("siteName"),
            author=data.get("author"),
            retrieved_at=_dt_from_str(data.get("retrievedAt")),
            extraction_method=data.get("extractionMethod"),
            license_hint=data.get("licenseHint"),
        )


@dataclass(slots=True)
class Recipe:
    id: str
    name: str
    description: str | None = None
    ingredients: list[Ingredient] = field(default_factory=list)
    instructions: list[str] = field(default_factory=list)
    cuisine: str | None = None
    diet_type: str | None = None
    prep_time_minutes: int = 0
    cook_time_minutes: int = 0
    servings: int = 4
    nutrition: NutritionInfo | None = None
    tags: list[str] = field(default_factory=list)
    image_url: str | None = None
    source: RecipeSource | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "ingredients": [i.to_dict() for i in self.ingredients],
            "instructions": list(self.instructions),
            "cuisine": self.cuisine,
            "dietType": self.diet_type,
            "prepTimeMinutes": self.prep_time_minutes,
            "cookTimeMinutes": self.cook_time_minutes,
            "servings": self.servings,
            "nutrition": self.nutrition.to_dict() if self.nutrition else None,
            "tags": list(self.tags),
            "imageUrl": self.image_url,
            "source": self.source.to_dict() if self.source else None,
            "createdAt": _dt_to_str(self.created_at),
            "updatedAt": _dt_to_str(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recipe":
        ingredients = [
            Ingredient.from_dict(item)
            for item in data.get("ingredients") or []
            if isinstance(item, dict)
        ]
        instructions = [str(step) for step in data.get("instructions") or [] if step is not None]
        nutrition = data.get("nutrition")
        source = data.get("source")
        servings = _opt_int(data.get("servings"))
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            description=data.get("description"),
            ingredients=ingredients,
            instructions=instructions,
            cuisine=data.get("cuisine"),
            diet_type=data.get("dietType"),
            prep_time_minutes=_opt_int(data.get("prepTimeMinutes")) or 0,
            cook_time_minutes=_opt_int(data.get("cookTimeMinutes")) or 0,
            servings=servings if servings is not None else 4,
            nutrition=NutritionInfo.from_dict(nutrition) if isinstance(nutrition, dict) else None,
            tags=[str(t) for t in data.get("tags") or []],
            image_url=data.get("imageUrl"),
            source=RecipeSource.from_dict(source) if isinstance(source, dict) else None,
            created_at=_dt_from_str(data.get("createdAt")),
            updated_at=_dt_from_str(data.get("updatedAt")),
        )


@dataclass(slots=True)
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "isValid": self.is_valid,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ValidationReport":
        # isValid is derived, never read back
        return cls(
            errors=[str(e) for e in data.get("errors") or []],
            warnings=[str(w) for w in data.get("warnings") or []],
        )


@dataclass(slots=True)
class SectionSimilarity:
    token_overlap: int
    ngram_similarity: float

    def to_dict(self) -> dict[str, Any]:
        return {"tokenOverlap": self.token_overlap, "ngramSimilarity": self.ngram_similarity}


@dataclass(slots=True)
class SimilarityReport:
    max_contiguous_token_overlap: int = 0
    max_ngram_similarity: float = 0.0
    violates_policy: bool = False
    details: str = ""
    sections: dict[str, SectionSimilarity] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "maxContiguousTokenOverlap": self.max_contiguous_token_overlap,
            "maxNgramSimilarity": self.max_ngram_similarity,
            "violatesPolicy": self.violates_policy,
            "details": self.details,
            "sections": {name: s.to_dict() for name, s in self.sections.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SimilarityReport":
        sections = {
            name: SectionSimilarity(
                token_overlap=int(item.get("tokenOverlap", 0)),
                ngram_similarity=float(item.get("ngramSimilarity", 0.0)),
            )
            for name, item in (data.get("sections") or {}).items()
            if isinstance(item, dict)
        }
        return cls(
            max_contiguous_token_overlap=int(data.get("maxContiguousTokenOverlap", 0)),
            max_ngram_similarity=float(data.get("maxNgramSimilarity", 0.0)),
            violates_policy=bool(data.get("violatesPolicy", False)),
            details=str(data.get("details") or ""),
            sections=sections,
        )


@dataclass(slots=True)
class ArtifactRef:
    type: str
    uri: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "uri": self.uri}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArtifactRef":
        return cls(type=str(data.get("type") or ""), uri=str(data.get("uri") or ""))


@dataclass(slots=True)
class RecipeDraft:
    recipe: Recipe
    source: RecipeSource
    validation_report: ValidationReport = field(default_factory=ValidationReport)
    similarity_report: SimilarityReport | None = None
    artifacts: list[ArtifactRef] = field(default_factory=list)
    guardrail_blocked: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipe": self.recipe.to_dict(),
            "source": self.source.to_dict(),
            "validationReport": self.validation_report.to_dict(),
            "similarityReport": (
                self.similarity_report.to_dict() if self.similarity_report else None
            ),
            "artifacts": [a.to_dict() for a in self.artifacts],
            "guardrailBlocked": self.guardrail_blocked,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecipeDraft":
        similarity = data.get("similarityReport")
        return cls(
            recipe=Recipe.from_dict(data["recipe"]),
            source=RecipeSource.from_dict(data.get("source") or {}),
            validation_report=ValidationReport.from_dict(data.get("validationReport") or {}),
            similarity_report=(
                SimilarityReport.from_dict(similarity) if isinstance(similarity, dict) else None
            ),
            artifacts=[ArtifactRef.from_dict(a) for a in data.get("artifacts") or []],
            guardrail_blocked=bool(data.get("guardrailBlocked", False)),
        )
