from __future__ import annotations

import json

import pytest

from recipe_ingest.errors import LifecycleError, RecipeNotFoundError, TaskNotFoundError
from recipe_ingest.ingest.normalize.application import PatchApplicationService
from recipe_ingest.ingest.normalize.service import NormalizeService
from recipe_ingest.models.task import IngestMode, IngestPayload, Task, TaskStatus
from recipe_ingest.storage.memory import InMemoryRecipeStore, InMemoryTaskStore

from conftest import FakeLlm, make_recipe, review_ready_task

PROPOSAL = {
    "patches": [
        {"op": "replace", "path": "/ingredients/2/unit", "value": "c", "riskCategory": "low"},
        {"op": "add", "path": "/tags/-", "value": "vegetarian", "riskCategory": "medium"},
        {"op": "replace", "path": "/servings", "value": 6, "riskCategory": "high"},
    ],
    "summary": "Tidy units and tags",
}


def normalize_task(proposal=None, *, recipe_id="recipe-1", status=TaskStatus.REVIEW_READY) -> Task:
    return Task(
        task_id="task-n",
        thread_id="thread-1",
        payload=IngestPayload(mode=IngestMode.NORMALIZE, recipe_id=recipe_id),
        status=status,
        result=json.dumps(PROPOSAL if proposal is None else proposal),
    )


async def setup(task: Task | None = None):
    tasks, recipes = InMemoryTaskStore(), InMemoryRecipeStore()
    await tasks.save(task or normalize_task())
    await recipes.save(make_recipe())
    service = PatchApplicationService(tasks, recipes, NormalizeService(FakeLlm()))
    return service, tasks, recipes


@pytest.mark.asyncio
async def test_apply_all_patches_updates_recipe_and_commits_task():
    service, tasks, recipes = await setup()

    body = await service.apply("task-n", "recipe-1")

    assert body["success"]
    assert body["appliedCount"] == 3
    assert body["skippedCount"] == 0
    assert body["errors"] == []
    recipe = await recipes.get("recipe-1")
    assert recipe.ingredients[2].unit == "c"
    assert recipe.tags == ["soup", "vegetarian"]
    assert recipe.servings == 6
    assert recipe.updated_at is not None
    task = await tasks.get("task-n")
    assert task.status is TaskStatus.COMMITTED
    assert task.metadata["appliedPatchCount"] == "3"


@pytest.mark.asyncio
async def test_max_risk_skips_riskier_patches():
    service, _, recipes = await setup()

    body = await service.apply("task-n", "recipe-1", max_risk="medium")

    assert body["appliedCount"] == 2
    assert body["skippedCount"] == 1
    assert (await recipes.get("recipe-1")).servings == 4


@pytest.mark.asyncio
async def test_patch_indices_select_subset():
    service, _, recipes = await setup()

    body = await service.apply("task-n", "recipe-1", patch_indices=[2])

    assert body["appliedCount"] == 1
    assert body["skippedCount"] == 2
    recipe = await recipes.get("recipe-1")
    assert recipe.servings == 6
    assert recipe.ingredients[2].unit == "cups"


@pytest.mark.asyncio
async def test_empty_selection_changes_nothing():
    service, tasks, _ = await setup()

    body = await service.apply("task-n", "recipe-1", patch_indices=[7])

    assert body["appliedCount"] == 0
    assert body["skippedCount"] == 3
    assert (await tasks.get("task-n")).status is TaskStatus.REVIEW_READY


@pytest.mark.asyncio
async def test_failed_patches_are_reported():
    proposal = {
        "patches": [
            {"op": "replace", "path": "/name", "value": "Roasted Tomato Soup", "riskCategory": "low"},
            {"op": "replace", "path": "/id", "value": "hijack", "riskCategory": "low"},
        ]
    }
    service, _, recipes = await setup(normalize_task(proposal))

    body = await service.apply("task-n", "recipe-1")

    assert body["success"]
    assert body["appliedCount"] == 1
    assert body["failedCount"] == 1
    assert body["errors"][0].startswith("/id:")
    assert (await recipes.get("recipe-1")).name == "Roasted Tomato Soup"
    assert await recipes.get("hijack") is None


@pytest.mark.asyncio
async def test_apply_validates_task_and_recipe():
    service, tasks, _ = await setup()

    with pytest.raises(LifecycleError) as exc_info:
        await service.apply("task-n", "recipe-2")
    assert exc_info.value.code == "RECIPE_MISMATCH"

    with pytest.raises(TaskNotFoundError):
        await service.apply("missing", "recipe-1")

    await tasks.save(review_ready_task())
    with pytest.raises(LifecycleError) as exc_info:
        await service.apply("task-1", "recipe-1")
    assert exc_info.value.code == "INVALID_TASK_STATE"


@pytest.mark.asyncio
async def test_apply_requires_review_ready_and_patches():
    service, _, _ = await setup(normalize_task(status=TaskStatus.RUNNING))
    with pytest.raises(LifecycleError) as exc_info:
        await service.apply("task-n", "recipe-1")
    assert exc_info.value.code == "INVALID_TASK_STATE"

    service, _, _ = await setup(normalize_task({"patches": []}))
    with pytest.raises(LifecycleError) as exc_info:
        await service.apply("task-n", "recipe-1")
    assert exc_info.value.code == "NO_PATCHES"


@pytest.mark.asyncio
async def test_missing_recipe_is_not_found():
    tasks, recipes = InMemoryTaskStore(), InMemoryRecipeStore()
    await tasks.save(normalize_task())
    service = PatchApplicationService(tasks, recipes, NormalizeService(FakeLlm()))

    with pytest.raises(RecipeNotFoundError):
        await service.apply("task-n", "recipe-1")


@pytest.mark.asyncio
async def test_reject_is_idempotent_and_blocks_apply():
    service, tasks, _ = await setup()

    first = await service.reject("task-n", "Too aggressive")
    second = await service.reject("task-n")

    assert first == {"taskId": "task-n", "status": "Rejected"}
    assert second == first
    task = await tasks.get("task-n")
    assert task.metadata["rejectionReason"] == "Too aggressive"
    with pytest.raises(LifecycleError):
        await service.apply("task-n", "recipe-1")


@pytest.mark.asyncio
async def test_reject_after_apply_is_refused():
    service, _, _ = await setup()
    await service.apply("task-n", "recipe-1")

    with pytest.raises(LifecycleError) as exc_info:
        await service.reject("task-n")
    assert exc_info.value.code == "ALREADY_TERMINAL"
