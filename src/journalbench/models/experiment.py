# Copyright (c) Syntropy Systems
"""Pydantic models for experiment configuration and results."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from pydantic import Field, ValidationError, field_validator

from journalbench.errors import ConfigurationError

from .base import JSONObject, LabBaseModel
from .enums import (
    EntryOrder,
    EventType,
    ExperimentStatus,
    ExperimentType,
    NeedlePosition,
    Persona,
)


class JournalEntry(LabBaseModel):
    """One athlete journal entry as supplied by the journal source."""

    id: int
    athlete_id: int = 0
    entry_date: date
    emotional_state: str = ""
    session_reflection: str = ""
    mental_barriers: str = ""
    is_flagged: bool = False

    @field_validator("emotional_state", "session_reflection", "mental_barriers", mode="before")
    @classmethod
    def _none_to_empty(cls, value: object) -> object:
        return "" if value is None else value

    def fields(self) -> dict[str, str]:
        """Free-text fields keyed by name, in display order."""
        return {
            "emotional_state": self.emotional_state,
            "session_reflection": self.session_reflection,
            "mental_barriers": self.mental_barriers,
        }


class ProviderModelPair(LabBaseModel):
    """A provider name plus model id, written ``provider:model``."""

    provider: str
    model: str

    @field_validator("provider", "model", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, value: str) -> str:
        if not value:
            raise ValueError("provider must not be empty")
        return value.lower()

    @field_validator("model")
    @classmethod
    def _non_empty_model(cls, value: str) -> str:
        if not value:
            raise ValueError("model must not be empty")
        return value

    @classmethod
    def parse(cls, spec: str) -> ProviderModelPair:
        """Parse ``provider:model``. The model may itself contain colons."""
        provider, sep, model = spec.strip().partition(":")
        if not sep or not provider.strip() or not model.strip():
            msg = f"Malformed provider:model pair {spec!r}"
            raise ConfigurationError(msg)
        return cls(provider=provider, model=model)

    @property
    def key(self) -> str:
        return f"{self.provider}/{self.model}"

    def __str__(self) -> str:
        return f"{self.provider}:{self.model}"


class _ExperimentOptions(LabBaseModel):
    """Options shared by single runs and batches."""

    athlete_id: int
    experiment_type: ExperimentType = ExperimentType.PERSONA
    persona: Persona = Persona.LASSO
    compare_persona: Optional[Persona] = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_entries: Optional[int] = Field(default=None, ge=1)
    entry_order: EntryOrder = EntryOrder.REVERSE
    needle_fact: Optional[str] = None
    prompt_version: str = "v1"

    @field_validator("experiment_type", mode="before")
    @classmethod
    def _parse_type(cls, value: object) -> ExperimentType:
        return ExperimentType.parse(value)

    @field_validator("persona", mode="before")
    @classmethod
    def _parse_persona(cls, value: object) -> Persona:
        return Persona.parse(value)

    @field_validator("compare_persona", mode="before")
    @classmethod
    def _parse_compare_persona(cls, value: object) -> Optional[Persona]:
        if value is None or value == "":
            return None
        return Persona.parse(value)

    @field_validator("entry_order", mode="before")
    @classmethod
    def _parse_order(cls, value: object) -> EntryOrder:
        return EntryOrder.parse(value)

    @field_validator("needle_fact", mode="before")
    @classmethod
    def _blank_needle(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ExperimentConfig(_ExperimentOptions):
    """Configuration of one run against one provider and model."""

    provider: str
    model: str

    @field_validator("provider", "model", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, value: str) -> str:
        if not value:
            raise ValueError("provider must not be empty")
        return value.lower()

    @field_validator("model")
    @classmethod
    def _non_empty_model(cls, value: str) -> str:
        if not value:
            raise ValueError("model must not be empty")
        return value

    @property
    def pair(self) -> ProviderModelPair:
        return ProviderModelPair(provider=self.provider, model=self.model)

    def personas(self) -> list[Persona]:
        """Personas this run prompts, in call order."""
        if self.experiment_type is ExperimentType.PERSONA:
            return [self.persona, self.compare_persona or self.persona.contrast]
        return [self.persona]


class BatchRequest(_ExperimentOptions):
    """One experiment fanned out across several provider:model pairs."""

    providers: list[ProviderModelPair]

    @field_validator("providers", mode="before")
    @classmethod
    def _parse_pairs(cls, value: object) -> object:
        if isinstance(value, str):
            value = [p for p in value.split(",") if p.strip()]
        if isinstance(value, list):
            return [ProviderModelPair.parse(p) if isinstance(p, str) else p for p in value]
        return value

    @field_validator("providers")
    @classmethod
    def _non_empty(cls, value: list[ProviderModelPair]) -> list[ProviderModelPair]:
        if not value:
            raise ValueError("at least one provider:model pair is required")
        return value

    def config_for(self, pair: ProviderModelPair) -> ExperimentConfig:
        data = self.model_dump(exclude={"providers"}, exclude_unset=True)
        return ExperimentConfig(provider=pair.provider, model=pair.model, **data)


def _raise_config_error(exc: ValidationError) -> ConfigurationError:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(p) for p in error.get("loc", ())) or "config"
        message = str(error.get("msg", "invalid value"))
        ctx_error = (error.get("ctx") or {}).get("error")
        if isinstance(ctx_error, ConfigurationError):
            message = str(ctx_error)
        parts.append(f"{loc}: {message}")
    return ConfigurationError("; ".join(parts))


def parse_experiment_config(data: object) -> ExperimentConfig:
    """Validate a single-run configuration, raising ConfigurationError."""
    if isinstance(data, ExperimentConfig):
        return data
    try:
        return ExperimentConfig.model_validate(data)
    except ValidationError as exc:
        raise _raise_config_error(exc) from exc


def parse_batch_request(data: object) -> BatchRequest:
    """Validate a batch request, raising ConfigurationError."""
    if isinstance(data, BatchRequest):
        return data
    try:
        return BatchRequest.model_validate(data)
    except ValidationError as exc:
        raise _raise_config_error(exc) from exc


class Receipt(LabBaseModel):
    """Evidence tying a claim to one journal entry."""

    journal_entry_id: int
    entry_date: date
    field: str
    snippet: str
    confidence: float


class ExtractedClaim(LabBaseModel):
    """A claim pulled out of generated text, with its evidence."""

    text: str
    is_supported: bool
    confidence: float = 0.0
    claim_type: Optional[str] = None
    referenced_date: Optional[date] = None
    receipts: list[Receipt] = Field(default_factory=list)
    persona: Optional[str] = None

    @property
    def primary_receipt(self) -> Optional[Receipt]:
        return self.receipts[0] if self.receipts else None


class PositionOutcome(LabBaseModel):
    """Whether a needle fact came back in a model response."""

    position: NeedlePosition
    needle_fact: str
    found: bool
    snippet: str = ""
    confidence: float = 0.0


class Completion(LabBaseModel):
    """Text and token usage returned by a chat-completion call."""

    text: str
    input_tokens: int = 0
    output_tokens: int = 0


class RunResult(LabBaseModel):
    """Outcome of ExperimentRunner.run."""

    run_id: int
    status: ExperimentStatus
    provider: str
    model: str
    experiment_type: ExperimentType
    entries_analyzed: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: float = 0.0
    duration_seconds: Optional[float] = None
    claims: list[ExtractedClaim] = Field(default_factory=list)
    position_results: list[PositionOutcome] = Field(default_factory=list)
    conclusion: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def supported_claim_count(self) -> int:
        return sum(1 for c in self.claims if c.is_supported)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class ProgressEvent(LabBaseModel):
    """One event on a progress channel."""

    type: EventType
    message: str = ""
    data: Optional[JSONObject] = None
    timestamp: str = Field(default_factory=_utc_timestamp)
    batch_id: Optional[str] = None
    run_id: Optional[int] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    sequence: int = 0

    def to_sse(self) -> str:
        """Format as a server-sent event frame."""
        return f"event: {self.type.value}\ndata: {self.model_dump_json()}\n\n"
