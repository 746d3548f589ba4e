from __future__ import annotations

import json
import uuid

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from recipe_ingest.api.deps import IngestServices, get_services
from recipe_ingest.errors import (
    LifecycleError,
    SearchProviderNotFoundError,
    TaskNotFoundError,
    TaskValidationError,
)
from recipe_ingest.models.events import EventType
from recipe_ingest.models.schemas import CreateTaskRequest, IngestPayloadRequest, TaskCreatedResponse
from recipe_ingest.models.task import (
    INGEST_AGENT_TYPE,
    IngestConstraints,
    IngestMode,
    IngestPayload,
    Task,
    TaskStatus,
)
from recipe_ingest.services import streaming
from recipe_ingest.services.logger import log_event
from recipe_ingest.services.prompt_store import get_prompt_template, has_prompt, override_problem
from recipe_ingest.storage.artifacts import task_prefix
from recipe_ingest.tools.web_utils import is_valid_url

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


def _parse_mode(raw: str) -> IngestMode:
    for mode in IngestMode:
        if mode.value.lower() == (raw or "").strip().lower():
            return mode
    raise TaskValidationError(f"Unknown ingest mode '{raw}'", "INVALID_MODE")


def build_payload(request: IngestPayloadRequest, services: IngestServices) -> IngestPayload:
    """Validate the mode-specific fields and convert to the domain payload."""
    mode = _parse_mode(request.mode)
    url = (request.url or "").strip() or None
    query = (request.query or "").strip() or None
    recipe_id = (request.recipe_id or "").strip() or None
    provider_id = None
    if request.search is not None:
        provider_id = (request.search.provider_id or "").strip() or None

    if mode is IngestMode.URL:
        if url is None:
            raise TaskValidationError("URL is required for Url mode", "MISSING_URL")
        if not is_valid_url(url):
            raise TaskValidationError(f"Invalid URL: {url}", "INVALID_URL")
    elif mode is IngestMode.QUERY:
        if query is None:
            raise TaskValidationError("Query is required for Query mode", "MISSING_QUERY")
        if provider_id is not None:
            try:
                services.search_resolver.resolve(provider_id)
            except SearchProviderNotFoundError as exc:
                raise TaskValidationError(exc.message, "INVALID_SEARCH_PROVIDER") from exc
    elif recipe_id is None:
        raise TaskValidationError("Recipe id is required for Normalize mode", "MISSING_RECIPE_ID")

    for slot, key in request.prompt_selection.items():
        if not key:
            continue
        if not has_prompt(key):
            raise TaskValidationError(f"Unknown prompt '{key}' for slot '{slot}'", "INVALID_PROMPT_ID")
        problem = override_problem(slot, get_prompt_template(key))
        if problem:
            raise TaskValidationError(f"Prompt '{key}' cannot fill slot '{slot}': {problem}", "INVALID_PROMPT_ID")
    for slot, text in request.prompt_overrides.items():
        if not text or not text.strip():
            continue
        problem = override_problem(slot, text)
        if problem:
            raise TaskValidationError(f"Prompt override for '{slot}': {problem}", "INVALID_PROMPT_OVERRIDE")

    constraints = None
    if request.constraints is not None:
        constraints = IngestConstraints(
            diet_type=request.constraints.diet_type,
            cuisine=request.constraints.cuisine,
            max_prep_minutes=request.constraints.max_prep_minutes,
        )
    return IngestPayload(
        mode=mode,
        url=url,
        query=query,
        recipe_id=recipe_id,
        constraints=constraints,
        prompt_selection={k: v for k, v in request.prompt_selection.items() if v},
        prompt_overrides={k: v for k, v in request.prompt_overrides.items() if v and v.strip()},
        search_provider_id=provider_id,
    )


def initial_metadata(payload: IngestPayload) -> dict[str, str]:
    metadata = {"ingestMode": payload.mode.value}
    if payload.url:
        metadata["sourceUrl"] = payload.url
    if payload.query:
        metadata["searchQuery"] = payload.query
    if payload.recipe_id:
        metadata["recipeId"] = payload.recipe_id
    if payload.search_provider_id:
        metadata["searchProviderId"] = payload.search_provider_id
    for slot, key in payload.prompt_selection.items():
        metadata[f"promptId:{slot}"] = key
    return metadata


async def _load_task(services: IngestServices, task_id: str) -> Task:
    task = await services.task_store.get(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task


@router.post("", status_code=201, response_model=TaskCreatedResponse, response_model_by_alias=True)
async def create_task(request: CreateTaskRequest, services: IngestServices = Depends(get_services)):
    """Create an ingest task and start its pipeline in the background."""
    if request.agent_type != INGEST_AGENT_TYPE:
        raise TaskValidationError(
            f"Unsupported agent type '{request.agent_type}'; expected '{INGEST_AGENT_TYPE}'",
            "INVALID_AGENT_TYPE",
        )
    payload = build_payload(request.payload, services)
    task = Task(
        task_id=str(uuid.uuid4()),
        thread_id=request.thread_id or str(uuid.uuid4()),
        payload=payload,
        metadata=initial_metadata(payload),
    )
    await services.task_store.save(task)
    log_event("task_created", f"Created {payload.mode.value} task {task.task_id}", task_id=task.task_id)
    services.schedule(task)

    return TaskCreatedResponse(
        task_id=task.task_id,
        thread_id=task.thread_id,
        agent_type=task.agent_type,
        status=TaskStatus.PENDING.value,
    )


@router.get("/{task_id}")
async def get_task(task_id: str, services: IngestServices = Depends(get_services)):
    task = await _load_task(services, task_id)
    return JSONResponse(content=task.to_state(), headers={"ETag": f'"{task.etag}"'})


@router.get("/{task_id}/stream")
async def stream_task(task_id: str, services: IngestServices = Depends(get_services)):
    """SSE endpoint that streams pipeline progress for a task."""
    await _load_task(services, task_id)
    queue = services.broker.open(task_id)

    async def event_generator():
        try:
            # state after subscribing, so no event between the read and the queue is lost
            task = await _load_task(services, task_id)
            snapshot = streaming.progress(
                task.task_id,
                task.current_phase or "",
                task.progress,
                task.status.value,
            )
            yield {"event": EventType.PROGRESS.value, "data": json.dumps(snapshot.data)}
            if task.status is TaskStatus.REVIEW_READY or task.is_terminal:
                return
            async for event in services.broker.drain(queue):
                yield {"event": event.event.value, "data": json.dumps(event.data)}
        finally:
            services.broker.close(task_id, queue)

    return EventSourceResponse(event_generator())


@router.get("/{task_id}/artifacts")
async def list_artifacts(task_id: str, services: IngestServices = Depends(get_services)):
    task = await _load_task(services, task_id)
    prefix = task_prefix(task.thread_id, task.task_id)
    paths = await services.artifact_store.list(prefix)
    return {
        "taskId": task.task_id,
        "artifacts": [{"name": path[len(prefix):], "path": path} for path in paths],
    }


@router.post("/{task_id}/cancel", status_code=202)
async def cancel_task(task_id: str, services: IngestServices = Depends(get_services)):
    """Ask a running pipeline to stop. The task then fails with CANCELLED."""
    task = await _load_task(services, task_id)
    if services.cancel(task_id) is None:
        raise LifecycleError(f"Task is not running (current: {task.status.value})", "TASK_NOT_RUNNING", 409)
    return {"taskId": task_id, "cancellationRequested": True}
