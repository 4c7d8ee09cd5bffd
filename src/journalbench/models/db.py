# Copyright (c) Syntropy Systems
"""Pydantic models for database records."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from pydantic import Field, field_validator

from .base import LabBaseModel
from .enums import EntryOrder, ExperimentStatus, ExperimentType, NeedlePosition
from .experiment import JournalEntry


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


class RunRecord(LabBaseModel):
    """Database experiment run record."""

    id: int
    batch_id: Optional[str] = None
    provider: str
    model: str
    temperature: float
    prompt_version: str
    athlete_id: int
    persona: str
    compare_persona: Optional[str] = None
    experiment_type: ExperimentType
    entries_used: int = 0
    entry_order: EntryOrder = EntryOrder.REVERSE
    max_entries: Optional[int] = None
    needle_fact: Optional[str] = None
    status: ExperimentStatus
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    tokens_used: int = 0
    estimated_cost: float = 0.0
    error_message: Optional[str] = None
    is_deleted: bool = False

    @field_validator("experiment_type", mode="before")
    @classmethod
    def _parse_type(cls, value: object) -> ExperimentType:
        return ExperimentType.parse(value)

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value: object) -> ExperimentStatus:
        return ExperimentStatus.parse(value)

    @field_validator("entry_order", mode="before")
    @classmethod
    def _parse_order(cls, value: object) -> EntryOrder:
        return EntryOrder.parse(value or EntryOrder.REVERSE)

    @field_validator("is_deleted", mode="before")
    @classmethod
    def _parse_bool(cls, value: object) -> bool:
        return bool(value)

    @property
    def pair_key(self) -> str:
        return f"{self.provider}/{self.model}"

    @property
    def duration_seconds(self) -> Optional[float]:
        """Seconds between start and completion, if both happened."""
        started = _parse_timestamp(self.started_at)
        completed = _parse_timestamp(self.completed_at)
        if started is None or completed is None:
            return None
        return max((completed - started).total_seconds(), 0.0)


class ReceiptRecord(LabBaseModel):
    """Database claim receipt record."""

    id: int
    claim_id: int
    journal_entry_id: int
    matched_snippet: str = ""
    entry_date: date
    field: str = ""
    confidence: float = 0.0
    rank: int = 0


class ClaimRecord(LabBaseModel):
    """Database claim record, with receipts attached by the store."""

    id: int
    run_id: int
    claim_text: str
    is_supported: bool
    persona: Optional[str] = None
    claim_type: Optional[str] = None
    referenced_date: Optional[date] = None
    confidence: float = 0.0
    receipts: list[ReceiptRecord] = Field(default_factory=list)

    @field_validator("is_supported", mode="before")
    @classmethod
    def _parse_bool(cls, value: object) -> bool:
        return bool(value)


class PositionTestRecord(LabBaseModel):
    """Database position test record."""

    id: int
    run_id: int
    position: NeedlePosition
    needle_fact: str
    fact_retrieved: bool
    response_snippet: str = ""
    confidence: float = 0.0

    @field_validator("position", mode="before")
    @classmethod
    def _parse_position(cls, value: object) -> NeedlePosition:
        return NeedlePosition.parse(value)

    @field_validator("fact_retrieved", mode="before")
    @classmethod
    def _parse_bool(cls, value: object) -> bool:
        return bool(value)


class PresetRecord(LabBaseModel):
    """Database experiment preset record. ``config`` is the raw JSON blob."""

    id: int
    name: str
    description: Optional[str] = None
    config: str = "{}"
    is_default: bool = False
    created_at: Optional[str] = None

    @field_validator("is_default", mode="before")
    @classmethod
    def _parse_bool(cls, value: object) -> bool:
        return bool(value)


class JournalEntryRecord(JournalEntry):
    """Database journal entry record."""

    created_at: Optional[str] = None

    @field_validator("is_flagged", mode="before")
    @classmethod
    def _parse_bool(cls, value: object) -> bool:
        return bool(value)
