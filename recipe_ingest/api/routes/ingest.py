from __future__ import annotations

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from recipe_ingest.api.deps import IngestServices, get_services
from recipe_ingest.ingest.lifecycle.service import CommitOverrides
from recipe_ingest.models.schemas import CommitRequest, RejectRequest

router = APIRouter(prefix="/api/ingest", tags=["ingest"])


@router.get("/providers/search")
async def list_search_providers(services: IngestServices = Depends(get_services)):
    """Registered search providers and which one is the default."""
    resolver = services.search_resolver
    return {
        "providers": [d.to_dict() for d in resolver.list_all()],
        "defaultProviderId": resolver.default_provider_id,
    }


@router.post("/{task_id}/commit")
async def commit_draft(
    task_id: str,
    request: CommitRequest | None = None,
    if_match: str | None = Header(default=None),
    services: IngestServices = Depends(get_services),
):
    """Persist a ReviewReady draft as a recipe."""
    request = request or CommitRequest()
    overrides = None
    if request.overrides is not None:
        overrides = CommitOverrides(
            name=request.overrides.name,
            description=request.overrides.description,
            cuisine=request.overrides.cuisine,
            diet_type=request.overrides.diet_type,
            tags=request.overrides.tags,
        )
    outcome = await services.lifecycle.commit(task_id, request.etag or if_match, overrides)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@router.post("/{task_id}/reject")
async def reject_draft(
    task_id: str,
    request: RejectRequest | None = None,
    services: IngestServices = Depends(get_services),
):
    reason = request.reason if request else None
    return await services.lifecycle.reject(task_id, reason)


@router.post("/{task_id}/repair")
async def repair_draft(task_id: str, services: IngestServices = Depends(get_services)):
    """Re-run the paraphrase repair on a guardrail-flagged draft."""
    return await services.lifecycle.repair(task_id)
