# Copyright (c) Syntropy Systems
"""Pydantic models for journalbench API requests and responses.

Request models keep enum-valued fields as plain strings so that bad values
reach the experiment parsers and come back as ``invalid configuration``
errors rather than schema errors.
"""

from __future__ import annotations

from typing import Optional, Union

from pydantic import Field

from .base import JSONObject, LabBaseModel
from .db import ClaimRecord, PositionTestRecord, PresetRecord, RunRecord
from .preset import PresetConfig, decode_preset_config


class RunRequest(LabBaseModel):
    """Request to start a single experiment run."""

    athlete_id: int
    experiment_type: str = "persona"
    provider: str
    model: str
    persona: str = "lasso"
    compare_persona: Optional[str] = None
    temperature: float = 0.7
    max_entries: Optional[int] = None
    entry_order: str = "reverse"
    needle_fact: Optional[str] = None
    prompt_version: Optional[str] = None


class BatchRunRequest(LabBaseModel):
    """Request to start one run per provider:model pair."""

    athlete_id: int
    experiment_type: str = "persona"
    providers: Union[list[str], list[JSONObject], str]
    persona: str = "lasso"
    compare_persona: Optional[str] = None
    temperature: float = 0.7
    max_entries: Optional[int] = None
    entry_order: str = "reverse"
    needle_fact: Optional[str] = None
    prompt_version: Optional[str] = None


class RunStartedResponse(LabBaseModel):
    run_id: int
    status: str = "running"


class BatchStartedResponse(LabBaseModel):
    batch_id: str
    run_ids: list[int]
    status: str = "running"


class RunSummary(LabBaseModel):
    """Run information response."""

    id: int
    batch_id: Optional[str] = None
    athlete_id: int
    provider: str
    model: str
    experiment_type: str
    persona: str
    compare_persona: Optional[str] = None
    temperature: float
    prompt_version: str
    entry_order: str
    max_entries: Optional[int] = None
    needle_fact: Optional[str] = None
    status: str
    entries_used: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    tokens_used: int = 0
    estimated_cost: float = 0.0
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_seconds: Optional[float] = None
    error_message: Optional[str] = None

    @classmethod
    def from_record(cls, run: RunRecord) -> RunSummary:
        data = run.model_dump(mode="json")
        data["duration_seconds"] = run.duration_seconds
        return cls.model_validate(data)


class RunListResponse(LabBaseModel):
    runs: list[RunSummary]
    count: int


class RunDetailResponse(LabBaseModel):
    """A run with its claims grouped by persona tag and its position tests."""

    run: RunSummary
    claims_by_persona: dict[str, list[ClaimRecord]] = Field(default_factory=dict)
    position_results: list[PositionTestRecord] = Field(default_factory=list)
    total_claims: int = 0
    supported_claims: int = 0
    conclusion: Optional[str] = None


class StatsResponse(LabBaseModel):
    total_runs: int
    total_tokens: int
    total_cost: float
    runs_by_status: dict[str, int]
    runs_by_type: dict[str, int]
    total_claims: int
    supported_claims: int


class CancelResponse(LabBaseModel):
    batch_id: str
    cancelled: bool
    message: str


class PresetCreate(LabBaseModel):
    """Request to create a preset."""

    name: str
    description: Optional[str] = None
    config: JSONObject = Field(default_factory=dict)


class PresetApply(LabBaseModel):
    """Request to start an experiment from a preset."""

    athlete_id: int
    overrides: Optional[JSONObject] = None


class PresetApplyResponse(LabBaseModel):
    preset: str
    run_id: Optional[int] = None
    batch_id: Optional[str] = None
    run_ids: list[int] = Field(default_factory=list)
    status: str = "running"


class PresetResponse(LabBaseModel):
    """Preset information response, config decoded to the current schema."""

    id: int
    name: str
    description: Optional[str] = None
    config: PresetConfig
    is_default: bool = False
    created_at: Optional[str] = None

    @classmethod
    def from_record(cls, preset: PresetRecord) -> PresetResponse:
        return cls(
            id=preset.id,
            name=preset.name,
            description=preset.description,
            config=decode_preset_config(preset.config, preset_name=preset.name),
            is_default=preset.is_default,
            created_at=preset.created_at,
        )


class PresetListResponse(LabBaseModel):
    presets: list[PresetResponse]


class HealthResponse(LabBaseModel):
    status: str = "healthy"
    version: str


class MessageResponse(LabBaseModel):
    """Generic message response."""

    message: str
    success: bool = True


class ErrorResponse(LabBaseModel):
    """Error response."""

    detail: str
