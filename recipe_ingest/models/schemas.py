from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# --- Task creation ---

class ConstraintsPayload(_CamelModel):
    diet_type: str | None = Field(default=None, alias="dietType")
    cuisine: str | None = None
    max_prep_minutes: int | None = Field(default=None, alias="maxPrepMinutes")


class SearchOptionsPayload(_CamelModel):
    provider_id: str | None = Field(default=None, alias="providerId")


class IngestPayloadRequest(_CamelModel):
    mode: str = "Url"
    url: str | None = None
    query: str | None = None
    recipe_id: str | None = Field(default=None, alias="recipeId")
    constraints: ConstraintsPayload | None = None
    prompt_selection: dict[str, str] = Field(default_factory=dict, alias="promptSelection")
    prompt_overrides: dict[str, str] = Field(default_factory=dict, alias="promptOverrides")
    search: SearchOptionsPayload | None = None


class CreateTaskRequest(_CamelModel):
    agent_type: str = Field(alias="agentType")
    thread_id: str | None = Field(default=None, alias="threadId")
    payload: IngestPayloadRequest


class TaskCreatedResponse(_CamelModel):
    task_id: str = Field(alias="taskId")
    thread_id: str = Field(alias="threadId")
    agent_type: str = Field(alias="agentType")
    status: str


# --- Draft lifecycle ---

class CommitOverridesPayload(_CamelModel):
    name: str | None = None
    description: str | None = None
    cuisine: str | None = None
    diet_type: str | None = Field(default=None, alias="dietType")
    tags: list[str] | None = None


class CommitRequest(_CamelModel):
    etag: str | None = None
    overrides: CommitOverridesPayload | None = None


class RejectRequest(_CamelModel):
    reason: str | None = None


# --- Normalize patches ---

class ApplyPatchesRequest(_CamelModel):
    task_id: str = Field(alias="taskId")
    patch_indices: list[int] | None = Field(default=None, alias="patchIndices")
    max_risk_category: str | None = Field(default=None, alias="maxRiskCategory")


class RejectPatchesRequest(_CamelModel):
    task_id: str = Field(alias="taskId")
    reason: str | None = None
