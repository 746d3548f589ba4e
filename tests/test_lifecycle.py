from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest

from recipe_ingest.errors import LifecycleError, TaskNotFoundError
from recipe_ingest.ingest.guardrail.repair import RepairParaphraseService, recipe_sections
from recipe_ingest.ingest.lifecycle.service import CommitOverrides, DraftLifecycleService
from recipe_ingest.models.recipe import RecipeDraft, RecipeSource
from recipe_ingest.models.task import TaskStatus, utcnow
from recipe_ingest.storage.memory import InMemoryArtifactStore, InMemoryRecipeStore, InMemoryTaskStore

from conftest import (
    GUARDRAIL_SOURCE,
    REPHRASED_DESCRIPTION,
    FakeLlm,
    copied_draft,
    make_draft,
    make_recipe,
    review_ready_task,
    strict_detector,
)


class FailingRecipeStore(InMemoryRecipeStore):
    async def save(self, recipe):
        raise RuntimeError("disk full")


def lifecycle(task_store, recipe_store=None, *, llm=None, artifact_store=None, clock=None):
    detector = strict_detector()
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    return DraftLifecycleService(
        task_store,
        recipe_store or InMemoryRecipeStore(),
        artifact_store=artifact_store or InMemoryArtifactStore(),
        repair_service=RepairParaphraseService(llm or FakeLlm(), detector),
        expiration_days=7,
        **kwargs,
    )


async def stored(task_store, task):
    await task_store.save(task)
    return task


@pytest.mark.asyncio
async def test_commit_creates_recipe_and_marks_task():
    tasks, recipes = InMemoryTaskStore(), InMemoryRecipeStore()
    await stored(tasks, review_ready_task())

    outcome = await lifecycle(tasks, recipes).commit("task-1")

    assert outcome.status_code == 201
    body = outcome.body
    assert body["taskStatus"] == "Committed"
    assert body["recipeName"] == "Tomato Soup"
    assert body["urlHash"] == "hash-soup"
    assert body["duplicateDetected"] is False
    recipe = await recipes.get(body["recipeId"])
    assert recipe.source.url == "https://example.com/soup"
    assert recipe.created_at is not None
    task = await tasks.get("task-1")
    assert task.status is TaskStatus.COMMITTED
    assert task.metadata["committedRecipeId"] == body["recipeId"]


@pytest.mark.asyncio
async def test_second_commit_is_idempotent():
    tasks, recipes = InMemoryTaskStore(), InMemoryRecipeStore()
    await stored(tasks, review_ready_task())
    service = lifecycle(tasks, recipes)

    first = await service.commit("task-1")
    second = await service.commit("task-1")

    assert second.status_code == 200
    assert second.body["recipeId"] == first.body["recipeId"]
    assert second.body["warnings"] == ["Task was already committed"]
    assert recipes.count() == 1


@pytest.mark.asyncio
async def test_concurrent_commits_create_one_recipe():
    tasks, recipes = InMemoryTaskStore(), InMemoryRecipeStore()
    await stored(tasks, review_ready_task())
    service = lifecycle(tasks, recipes)

    outcomes = await asyncio.gather(service.commit("task-1"), service.commit("task-1"))

    assert sorted(o.status_code for o in outcomes) == [200, 201]
    assert recipes.count() == 1


@pytest.mark.asyncio
async def test_stale_etag_conflicts_without_writing():
    tasks, recipes = InMemoryTaskStore(), InMemoryRecipeStore()
    await stored(tasks, review_ready_task())

    with pytest.raises(LifecycleError) as exc_info:
        await lifecycle(tasks, recipes).commit("task-1", etag='"stale"')

    assert exc_info.value.code == "CONCURRENCY_CONFLICT"
    assert exc_info.value.status_code == 409
    assert recipes.count() == 0
    assert (await tasks.get("task-1")).status is TaskStatus.REVIEW_READY


@pytest.mark.asyncio
async def test_matching_quoted_etag_commits():
    tasks = InMemoryTaskStore()
    task = await stored(tasks, review_ready_task())
    outcome = await lifecycle(tasks).commit("task-1", etag=f'"{task.etag}"')
    assert outcome.status_code == 201


@pytest.mark.asyncio
async def test_commit_after_review_window_expires_task():
    tasks, recipes = InMemoryTaskStore(), InMemoryRecipeStore()
    ready_at = utcnow()
    await stored(tasks, review_ready_task(ready_at=ready_at))
    service = lifecycle(tasks, recipes, clock=lambda: ready_at + timedelta(days=7, minutes=1))

    with pytest.raises(LifecycleError) as exc_info:
        await service.commit("task-1")

    assert exc_info.value.code == "DRAFT_EXPIRED"
    assert exc_info.value.status_code == 410
    assert recipes.count() == 0
    task = await tasks.get("task-1")
    assert task.status is TaskStatus.EXPIRED
    assert "expiredAt" in task.metadata


@pytest.mark.asyncio
async def test_commit_just_inside_review_window_succeeds():
    tasks = InMemoryTaskStore()
    ready_at = utcnow()
    await stored(tasks, review_ready_task(ready_at=ready_at))
    service = lifecycle(tasks, clock=lambda: ready_at + timedelta(days=6, hours=23))
    assert (await service.commit("task-1")).status_code == 201


@pytest.mark.asyncio
async def test_commit_rejects_wrong_states():
    tasks = InMemoryTaskStore()
    rejected = review_ready_task(task_id="rejected")
    rejected.status = TaskStatus.REJECTED
    running = review_ready_task(task_id="running")
    running.status = TaskStatus.RUNNING
    await stored(tasks, rejected)
    await stored(tasks, running)
    service = lifecycle(tasks)

    with pytest.raises(LifecycleError) as exc_info:
        await service.commit("rejected")
    assert exc_info.value.code == "TASK_REJECTED"

    with pytest.raises(LifecycleError) as exc_info:
        await service.commit("running")
    assert exc_info.value.code == "INVALID_TASK_STATE"

    with pytest.raises(TaskNotFoundError):
        await service.commit("missing")


@pytest.mark.asyncio
async def test_guardrail_blocked_draft_cannot_be_committed():
    tasks, recipes = InMemoryTaskStore(), InMemoryRecipeStore()
    draft = copied_draft()
    draft.guardrail_blocked = True
    await stored(tasks, review_ready_task(draft))

    with pytest.raises(LifecycleError) as exc_info:
        await lifecycle(tasks, recipes).commit("task-1")

    assert exc_info.value.code == "GUARDRAIL_BLOCKED"
    assert recipes.count() == 0


@pytest.mark.asyncio
async def test_commit_reports_duplicate_source_url():
    tasks, recipes = InMemoryTaskStore(), InMemoryRecipeStore()
    existing = make_recipe(id="recipe-old")
    existing.source = RecipeSource(url="https://example.com/soup", url_hash="hash-soup")
    await recipes.save(existing)
    await stored(tasks, review_ready_task())

    outcome = await lifecycle(tasks, recipes).commit("task-1")

    assert outcome.status_code == 201
    assert outcome.body["duplicateDetected"] is True
    assert outcome.body["duplicateRecipeId"] == "recipe-old"
    assert recipes.count() == 2


@pytest.mark.asyncio
async def test_commit_applies_overrides():
    tasks, recipes = InMemoryTaskStore(), InMemoryRecipeStore()
    await stored(tasks, review_ready_task())

    outcome = await lifecycle(tasks, recipes).commit(
        "task-1",
        overrides=CommitOverrides(name="Roasted Tomato Soup", diet_type="Vegan", tags=["soup", "vegan"]),
    )

    recipe = await recipes.get(outcome.body["recipeId"])
    assert recipe.name == "Roasted Tomato Soup"
    assert recipe.diet_type == "Vegan"
    assert recipe.tags == ["soup", "vegan"]
    assert recipe.cuisine == "European"


@pytest.mark.asyncio
async def test_persistence_failure_leaves_task_reviewable():
    tasks = InMemoryTaskStore()
    await stored(tasks, review_ready_task())

    with pytest.raises(LifecycleError) as exc_info:
        await lifecycle(tasks, FailingRecipeStore()).commit("task-1")

    assert exc_info.value.code == "PERSISTENCE_FAILED"
    assert exc_info.value.status_code == 500
    assert (await tasks.get("task-1")).status is TaskStatus.REVIEW_READY


@pytest.mark.asyncio
async def test_reject_records_reason_and_is_idempotent():
    tasks = InMemoryTaskStore()
    await stored(tasks, review_ready_task())
    service = lifecycle(tasks)

    first = await service.reject("task-1", "Not a real recipe")
    second = await service.reject("task-1")

    assert first == {"taskId": "task-1", "status": "Rejected", "reason": "Not a real recipe"}
    assert second["reason"] == "Not a real recipe"
    task = await tasks.get("task-1")
    assert task.status is TaskStatus.REJECTED
    assert task.metadata["rejectionReason"] == "Not a real recipe"


@pytest.mark.asyncio
async def test_reject_after_commit_is_refused():
    tasks = InMemoryTaskStore()
    await stored(tasks, review_ready_task())
    service = lifecycle(tasks)
    await service.commit("task-1")

    with pytest.raises(LifecycleError) as exc_info:
        await service.reject("task-1")
    assert exc_info.value.code == "ALREADY_TERMINAL"


async def blocked_task_with_source(tasks, artifact_store):
    draft = copied_draft()
    draft.similarity_report = strict_detector().analyze_sections(GUARDRAIL_SOURCE, recipe_sections(draft.recipe))
    draft.guardrail_blocked = True
    draft.validation_report.errors.append(
        "[GUARDRAIL_BLOCKED] Similarity: Draft is too similar to its source and cannot be committed"
    )
    await artifact_store.put("thread-1/task-1/sanitized.txt", GUARDRAIL_SOURCE.encode("utf-8"), "text/plain")
    return await stored(tasks, review_ready_task(draft))


@pytest.mark.asyncio
async def test_manual_repair_unblocks_then_commit_succeeds():
    tasks, recipes, artifact_store = InMemoryTaskStore(), InMemoryRecipeStore(), InMemoryArtifactStore()
    before = await blocked_task_with_source(tasks, artifact_store)
    llm = FakeLlm(json.dumps({"sections": [{"name": "description", "rephrased_text": REPHRASED_DESCRIPTION}]}))
    service = lifecycle(tasks, recipes, llm=llm, artifact_store=artifact_store)

    result = await service.repair("task-1")

    assert result["success"]
    assert result["guardrailBlocked"] is False
    assert result["stillViolatesPolicy"] is False
    assert result["repairedSections"] == ["description"]
    assert result["etag"] != before.etag
    task = await tasks.get("task-1")
    assert task.metadata["guardrailBlocked"] == "false"
    draft = RecipeDraft.from_dict(json.loads(task.result))
    assert draft.recipe.description == REPHRASED_DESCRIPTION
    assert not any(e.startswith("[GUARDRAIL_BLOCKED]") for e in draft.validation_report.errors)
    assert await artifact_store.get("thread-1/task-1/repair.manual.json") is not None

    outcome = await service.commit("task-1", etag=result["etag"])
    assert outcome.status_code == 201


@pytest.mark.asyncio
async def test_repair_that_still_copies_keeps_the_block():
    tasks, artifact_store = InMemoryTaskStore(), InMemoryArtifactStore()
    await blocked_task_with_source(tasks, artifact_store)
    llm = FakeLlm(json.dumps({"sections": [{"name": "description", "rephrased_text": GUARDRAIL_SOURCE}]}))

    result = await lifecycle(tasks, llm=llm, artifact_store=artifact_store).repair("task-1")

    assert result["stillViolatesPolicy"] is True
    assert result["guardrailBlocked"] is True
    draft = RecipeDraft.from_dict(json.loads((await tasks.get("task-1")).result))
    blocked = [e for e in draft.validation_report.errors if e.startswith("[GUARDRAIL_BLOCKED]")]
    assert len(blocked) == 1


@pytest.mark.asyncio
async def test_repair_llm_failure_is_reported():
    tasks, artifact_store = InMemoryTaskStore(), InMemoryArtifactStore()
    await blocked_task_with_source(tasks, artifact_store)

    with pytest.raises(LifecycleError) as exc_info:
        await lifecycle(tasks, llm=FakeLlm(RuntimeError("timeout")), artifact_store=artifact_store).repair("task-1")

    assert exc_info.value.code == "REPAIR_FAILED"
    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_repair_requires_a_violation():
    tasks = InMemoryTaskStore()
    await stored(tasks, review_ready_task(make_draft()))

    with pytest.raises(LifecycleError) as exc_info:
        await lifecycle(tasks).repair("task-1")
    assert exc_info.value.code == "NO_REPAIR_NEEDED"
