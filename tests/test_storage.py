from __future__ import annotations

import json
from datetime import timedelta

import pytest

from recipe_ingest.models.recipe import RecipeSource
from recipe_ingest.models.task import TaskStatus, utcnow
from recipe_ingest.storage.artifacts import ArtifactWriter, task_prefix
from recipe_ingest.storage.filesystem import LocalArtifactStore
from recipe_ingest.storage.memory import InMemoryArtifactStore, InMemoryRecipeStore, InMemoryTaskStore

from conftest import make_recipe, review_ready_task


@pytest.mark.asyncio
async def test_task_store_returns_copies():
    store = InMemoryTaskStore()
    await store.save(review_ready_task())

    loaded = await store.get("task-1")
    loaded.metadata["mutated"] = "yes"

    assert "mutated" not in (await store.get("task-1")).metadata
    assert await store.get("missing") is None


@pytest.mark.asyncio
async def test_list_by_status_filters_and_orders_by_creation():
    now = utcnow()
    store = InMemoryTaskStore()
    newer = review_ready_task(task_id="newer", ready_at=now - timedelta(hours=1))
    older = review_ready_task(task_id="older", ready_at=now - timedelta(days=3))
    failed = review_ready_task(task_id="failed", ready_at=now - timedelta(days=5))
    failed.status = TaskStatus.FAILED
    for task in (newer, older, failed):
        await store.save(task)

    ready = await store.list_by_status(TaskStatus.REVIEW_READY)
    old_only = await store.list_by_status(TaskStatus.REVIEW_READY, created_before=now - timedelta(days=1))

    assert [t.task_id for t in ready] == ["older", "newer"]
    assert [t.task_id for t in old_only] == ["older"]


@pytest.mark.asyncio
async def test_recipe_store_finds_by_url_hash():
    store = InMemoryRecipeStore()
    recipe = make_recipe()
    recipe.source = RecipeSource(url="https://example.com/soup", url_hash="abc123")
    await store.save(recipe)

    assert (await store.find_by_url_hash("abc123")).id == "recipe-1"
    assert await store.find_by_url_hash("other") is None
    assert await store.find_by_url_hash("") is None
    assert store.count() == 1


@pytest.mark.asyncio
async def test_local_artifact_store_round_trips_with_content_type(tmp_path):
    store = LocalArtifactStore(str(tmp_path))

    uri = await store.put("thread-1/task-1/raw.html", b"<html></html>", "text/html")

    assert uri.startswith("file://")
    assert await store.get("thread-1/task-1/raw.html") == b"<html></html>"
    assert store.content_type("thread-1/task-1/raw.html") == "text/html"
    assert await store.list("thread-1/task-1/") == ["thread-1/task-1/raw.html"]
    assert await store.get("thread-1/task-1/absent.txt") is None


@pytest.mark.asyncio
async def test_local_artifact_store_keeps_paths_inside_root(tmp_path):
    root = tmp_path / "artifacts"
    store = LocalArtifactStore(str(root))

    await store.put("../../etc/passwd", b"nope")

    assert not (tmp_path / "etc").exists()
    assert (root / "etc" / "passwd").read_bytes() == b"nope"
    with pytest.raises(ValueError):
        await store.put("../..", b"x")


@pytest.mark.asyncio
async def test_artifact_writer_replaces_refs_by_name():
    store = InMemoryArtifactStore()
    writer = ArtifactWriter(store, "thread-1", "task-1")

    await writer.put_text("sanitized.txt", "first")
    await writer.put_json("validation.json", {"errors": []})
    await writer.put_text("sanitized.txt", "second")

    assert task_prefix("thread-1", "task-1") == "thread-1/task-1/"
    assert [r.type for r in writer.refs] == ["validation.json", "sanitized.txt"]
    assert writer.refs[-1].uri == "memory://thread-1/task-1/sanitized.txt"
    assert await writer.get_text("sanitized.txt") == "second"
    assert json.loads(await writer.get_text("validation.json")) == {"errors": []}
    assert store.content_type("thread-1/task-1/validation.json") == "application/json"
    assert await writer.get_text("missing.json") is None


@pytest.mark.asyncio
async def test_local_artifact_store_delete_removes_blob_and_sidecar(tmp_path):
    store = LocalArtifactStore(str(tmp_path))
    await store.put("thread-1/task-1/raw.html", b"<html></html>", "text/html")

    assert await store.delete("thread-1/task-1/raw.html")

    assert await store.get("thread-1/task-1/raw.html") is None
    assert store.content_type("thread-1/task-1/raw.html") is None
    assert await store.list("") == []
    assert not await store.delete("thread-1/task-1/raw.html")


@pytest.mark.asyncio
async def test_memory_artifact_store_delete_reports_missing_paths():
    store = InMemoryArtifactStore()
    await store.put("thread-1/task-1/raw.html", b"x")

    assert await store.delete("thread-1/task-1/raw.html")
    assert not await store.delete("thread-1/task-1/raw.html")
    assert await store.list("thread-1/") == []
