from __future__ import annotations

import json
from typing import Any

from recipe_ingest.models.recipe import ArtifactRef
from recipe_ingest.storage.base import ArtifactStore

RAW_HTML = "raw.html"
SANITIZED_TEXT = "sanitized.txt"
PAGE_METADATA = "page.meta.json"
JSON_LD = "recipe.jsonld"
EXTRACTION_RESULT = "extraction.json"
VALIDATION_REPORT = "validation.json"
SIMILARITY_REPORT = "similarity.json"
REPAIR_REPORT = "repair.json"
MANUAL_REPAIR_REPORT = "repair.manual.json"
DRAFT_RECIPE = "draft.recipe.json"
SEARCH_CANDIDATES = "candidates.json"
SEARCH_FALLBACK = "search.fallback.json"
NORMALIZE_PATCHES = "normalize.patches.json"


def repair_attempt_name(attempt: int) -> str:
    return f"repair_attempt_{attempt}.json"


def task_prefix(thread_id: str, task_id: str) -> str:
    return f"{thread_id}/{task_id}/"


class ArtifactWriter:
    """Writes artifacts for one task and keeps the refs it produced."""

    def __init__(self, store: ArtifactStore, thread_id: str, task_id: str):
        self.store = store
        self.prefix = task_prefix(thread_id, task_id)
        self.refs: list[ArtifactRef] = []

    def path_for(self, name: str) -> str:
        return self.prefix + name

    async def put_text(self, name: str, text: str, content_type: str = "text/plain") -> ArtifactRef:
        uri = await self.store.put(self.path_for(name), text.encode("utf-8"), content_type)
        ref = ArtifactRef(type=name, uri=uri)
        self.refs = [r for r in self.refs if r.type != name]
        self.refs.append(ref)
        return ref

    async def put_json(self, name: str, payload: Any, content_type: str = "application/json") -> ArtifactRef:
        return await self.put_text(
            name,
            json.dumps(payload, ensure_ascii=False, indent=2, default=str),
            content_type,
        )

    async def get_text(self, name: str) -> str | None:
        data = await self.store.get(self.path_for(name))
        return data.decode("utf-8") if data is not None else None
