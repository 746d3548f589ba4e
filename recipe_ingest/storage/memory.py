from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Optional

from recipe_ingest.models.recipe import Recipe
from recipe_ingest.models.task import Task, TaskStatus
from recipe_ingest.services.logger import log_store_operation
from recipe_ingest.storage.base import ArtifactStore, RecipeStore, TaskStore


class InMemoryArtifactStore(ArtifactStore):
    def __init__(self):
        self._blobs: dict[str, tuple[bytes, str]] = {}

    async def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        self._blobs[path] = (bytes(data), content_type)
        log_store_operation("put", "artifacts", "success", details=f"{path} ({len(data)} bytes)")
        return f"memory://{path}"

    async def get(self, path: str) -> Optional[bytes]:
        entry = self._blobs.get(path)
        return entry[0] if entry else None

    async def list(self, prefix: str) -> list[str]:
        return sorted(p for p in self._blobs if p.startswith(prefix))

    async def delete(self, path: str) -> bool:
        removed = self._blobs.pop(path, None) is not None
        if removed:
            log_store_operation("delete", "artifacts", "success", details=path)
        return removed

    def content_type(self, path: str) -> Optional[str]:
        entry = self._blobs.get(path)
        return entry[1] if entry else None


class InMemoryTaskStore(TaskStore):
    """Dict-backed task store. Stored objects are copies so callers cannot mutate state in place."""

    def __init__(self):
        self._tasks: dict[str, Task] = {}
        self._lock = asyncio.Lock()

    async def get(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return copy.deepcopy(task) if task else None

    async def save(self, task: Task) -> Task:
        async with self._lock:
            self._tasks[task.task_id] = copy.deepcopy(task)
        log_store_operation("save", "tasks", "success", details=f"{task.task_id} -> {task.status.value}")
        return task

    async def list_by_status(
        self,
        status: TaskStatus,
        created_before: Optional[datetime] = None,
    ) -> list[Task]:
        matches = [
            copy.deepcopy(t)
            for t in self._tasks.values()
            if t.status == status and (created_before is None or t.created_at < created_before)
        ]
        return sorted(matches, key=lambda t: t.created_at)


class InMemoryRecipeStore(RecipeStore):
    def __init__(self):
        self._recipes: dict[str, Recipe] = {}

    async def get(self, recipe_id: str) -> Optional[Recipe]:
        recipe = self._recipes.get(recipe_id)
        return copy.deepcopy(recipe) if recipe else None

    async def save(self, recipe: Recipe) -> Recipe:
        self._recipes[recipe.id] = copy.deepcopy(recipe)
        log_store_operation("save", "recipes", "success", details=recipe.id)
        return recipe

    async def find_by_url_hash(self, url_hash: str) -> Optional[Recipe]:
        if not url_hash:
            return None
        for recipe in self._recipes.values():
            if recipe.source is not None and recipe.source.url_hash == url_hash:
                return copy.deepcopy(recipe)
        return None

    def count(self) -> int:
        return len(self._recipes)
