"""Pydantic request/response schemas for the HackJury API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class TriggerRequest(BaseModel):
    options: dict[str, Any] = {}


class TriggerOut(BaseModel):
    job_id: int
    status: str
    layer_type: str
    project_id: int


class ProgressOut(BaseModel):
    job_id: int | None = None
    status: str
    progress: int
    current_stage: str | None = None
    is_complete: bool
    has_error: bool
    error_message: str | None = None


class JobOut(BaseModel):
    id: int
    project_id: int
    layer_type: str
    status: str
    progress: int
    current_stage: str | None = None
    options: dict[str, Any] = {}
    result: dict[str, Any] = {}
    score: float | None = None
    error_message: str | None = None
    elapsed_ms: int | None = None
    created_at: str | None = None
    updated_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


class DeleteJobsOut(BaseModel):
    deleted: int


# ---------------------------------------------------------------------------
# Jury
# ---------------------------------------------------------------------------


class EligibilityCriteria(BaseModel):
    submission_deadline: bool = False
    repository_access: bool = False
    repository_public: bool = False
    scoring_configuration: str | None = None
    custom_weights: dict[str, float] | None = None

    model_config = {"extra": "allow"}


class JurySessionCreate(BaseModel):
    hackathon_id: int
    eligibility_criteria: EligibilityCriteria = Field(default_factory=EligibilityCriteria)


class ExecuteLayerRequest(BaseModel):
    layer: int

    @field_validator("layer")
    @classmethod
    def layer_in_range(cls, v: int) -> int:
        if not 1 <= v <= 4:
            raise ValueError("layer must be between 1 and 4")
        return v


class JurySessionOut(BaseModel):
    id: int
    hackathon_id: int
    status: str
    current_layer: int
    total_layers: int
    total_projects: int
    eliminated_projects: int
    active_projects: int
    eligibility_criteria: dict[str, Any] = {}
    final_results: dict[str, Any] | None = None
    created_at: str | None = None
    updated_at: str | None = None


class LayerProgressOut(BaseModel):
    layer: int
    name: str
    total: int
    processed: int
    eliminated: int
    advanced: int
    status: str


class JuryProgressOut(BaseModel):
    session_id: int
    status: str
    current_layer: int
    total_layers: int
    total_projects: int
    eliminated_projects: int
    active_projects: int
    is_executing: bool
    layers: list[LayerProgressOut]


class ExecuteLayerOut(BaseModel):
    session_id: int
    layer: int
    layer_name: str
    processed: int
    eliminated: int
    advanced: int
    session: JurySessionOut


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class LayerScoresIn(BaseModel):
    code_quality: float | None = None
    innovation: float | None = None
    coherence: float | None = None
    hedera: float | None = None


class UnifiedScoreRequest(BaseModel):
    scores: LayerScoresIn
    configuration: str | None = None
    custom_weights: dict[str, float] | None = None
    apply_quality_adjustments: bool = False


class CompareScoresRequest(BaseModel):
    a: UnifiedScoreRequest
    b: UnifiedScoreRequest
