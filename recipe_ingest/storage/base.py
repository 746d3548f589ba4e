"""
Abstract storage interfaces for the ingest service.
Artifact blobs and task/recipe documents are external collaborators; these
interfaces let the pipeline run against any backend.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from recipe_ingest.models.recipe import Recipe
from recipe_ingest.models.task import Task, TaskStatus


class ArtifactStore(ABC):
    """
    Abstract interface for named, typed artifact blobs.

    Implementations:
    - InMemoryArtifactStore: process-local dict (tests, single node)
    - LocalArtifactStore: files under a root directory
    """

    @abstractmethod
    async def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """
        Store a blob.

        Args:
            path: Slash-separated key, e.g. "{thread_id}/{task_id}/raw.html"
            data: Raw bytes to store
            content_type: MIME type recorded alongside the blob

        Returns:
            The URI of the stored blob
        """
        pass

    @abstractmethod
    async def get(self, path: str) -> Optional[bytes]:
        """
        Read a blob.

        Returns:
            The stored bytes, or None when nothing exists at path
        """
        pass

    @abstractmethod
    async def list(self, prefix: str) -> list[str]:
        """
        List stored paths starting with prefix, sorted.
        """
        pass

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """
        Remove a blob. Returns False when nothing existed at path.
        """
        pass


class TaskStore(ABC):
    """
    Abstract interface for task documents keyed by task id.
    Reads after writes on a single key must be consistent.
    """

    @abstractmethod
    async def get(self, task_id: str) -> Optional[Task]:
        pass

    @abstractmethod
    async def save(self, task: Task) -> Task:
        pass

    @abstractmethod
    async def list_by_status(
        self,
        status: TaskStatus,
        created_before: Optional[datetime] = None,
    ) -> list[Task]:
        """
        Query tasks by status, optionally restricted to those created
        before a cutoff. Used by the expiration sweep.
        """
        pass


class RecipeStore(ABC):
    """
    Abstract interface for committed recipes keyed by recipe id.
    """

    @abstractmethod
    async def get(self, recipe_id: str) -> Optional[Recipe]:
        pass

    @abstractmethod
    async def save(self, recipe: Recipe) -> Recipe:
        pass

    @abstractmethod
    async def find_by_url_hash(self, url_hash: str) -> Optional[Recipe]:
        """
        Return any committed recipe whose source carries this url hash.
        """
        pass
