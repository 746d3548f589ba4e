from __future__ import annotations

from fastapi import APIRouter, Depends

from recipe_ingest.api.deps import IngestServices, get_services
from recipe_ingest.errors import RecipeNotFoundError
from recipe_ingest.models.schemas import ApplyPatchesRequest, RejectPatchesRequest

router = APIRouter(prefix="/api/recipes", tags=["recipes"])


@router.get("/{recipe_id}")
async def get_recipe(recipe_id: str, services: IngestServices = Depends(get_services)):
    recipe = await services.recipe_store.get(recipe_id)
    if recipe is None:
        raise RecipeNotFoundError(recipe_id)
    return recipe.to_dict()


@router.post("/{recipe_id}/normalize/apply")
async def apply_normalize_patches(
    recipe_id: str,
    request: ApplyPatchesRequest,
    services: IngestServices = Depends(get_services),
):
    """Apply the patches proposed by a Normalize task, optionally a subset."""
    return await services.patches.apply(
        request.task_id,
        recipe_id,
        patch_indices=request.patch_indices,
        max_risk=request.max_risk_category,
    )


@router.post("/{recipe_id}/normalize/reject")
async def reject_normalize_patches(
    recipe_id: str,
    request: RejectPatchesRequest,
    services: IngestServices = Depends(get_services),
):
    return await services.patches.reject(request.task_id, request.reason)
