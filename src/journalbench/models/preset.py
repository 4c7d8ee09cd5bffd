# Copyright (c) Syntropy Systems
"""Versioned schema for stored experiment presets.

A preset is stored as a JSON blob so that it outlives code changes. Decoding
never raises: every field is optional with a documented default, unknown keys
are ignored, and fields that fail validation are dropped (and logged) so the
rest of the preset still applies.

Schema history:

* v1 - camelCase keys (``experimentType``, ``maxEntries``, ``entryOrder``,
  ``needleFact``, ``providerSweep``, ``comparePersona``), no version key.
* v2 - snake_case keys plus ``schema_version``. v1 keys are still accepted
  through aliases.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from pydantic import AliasChoices, Field, ValidationError, field_validator

from journalbench.errors import ConfigurationError

from .base import JSONObject, LabBaseModel
from .enums import EntryOrder, ExperimentType, Persona
from .experiment import (
    BatchRequest,
    ExperimentConfig,
    ProviderModelPair,
    parse_batch_request,
    parse_experiment_config,
)

logger = logging.getLogger(__name__)

PRESET_SCHEMA_VERSION = 2

# Used when a preset names neither a provider nor a sweep
DEFAULT_PROVIDER = "openai"
DEFAULT_MODEL = "gpt-4o-mini"


def _alias(name: str, camel: str) -> AliasChoices:
    return AliasChoices(name, camel)


class PresetConfig(LabBaseModel):
    """Decoded preset configuration."""

    schema_version: int = Field(
        default=PRESET_SCHEMA_VERSION,
        validation_alias=_alias("schema_version", "schemaVersion"),
    )
    experiment_type: ExperimentType = Field(
        default=ExperimentType.PERSONA,
        validation_alias=_alias("experiment_type", "experimentType"),
    )
    provider: Optional[str] = None
    model: Optional[str] = None
    persona: Persona = Persona.LASSO
    compare_persona: Optional[Persona] = Field(
        default=None,
        validation_alias=_alias("compare_persona", "comparePersona"),
    )
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_entries: Optional[int] = Field(
        default=None,
        ge=1,
        validation_alias=_alias("max_entries", "maxEntries"),
    )
    entry_order: EntryOrder = Field(
        default=EntryOrder.REVERSE,
        validation_alias=_alias("entry_order", "entryOrder"),
    )
    needle_fact: Optional[str] = Field(
        default=None,
        validation_alias=_alias("needle_fact", "needleFact"),
    )
    provider_sweep: list[ProviderModelPair] = Field(
        default_factory=list,
        validation_alias=_alias("provider_sweep", "providerSweep"),
    )

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
    def _parse_compare(cls, value: object) -> Optional[Persona]:
        if value is None or value == "":
            return None
        return Persona.parse(value)

    @field_validator("entry_order", mode="before")
    @classmethod
    def _parse_order(cls, value: object) -> EntryOrder:
        return EntryOrder.parse(value)

    @field_validator("provider_sweep", mode="before")
    @classmethod
    def _parse_sweep(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, list):
            return [ProviderModelPair.parse(p) if isinstance(p, str) else p for p in value]
        return value

    @property
    def is_sweep(self) -> bool:
        return bool(self.provider_sweep)

    def to_json(self) -> str:
        """Serialize in the current schema version."""
        data = self.model_dump(mode="json")
        data["schema_version"] = PRESET_SCHEMA_VERSION
        return json.dumps(data, sort_keys=True)

    def _options(self, athlete_id: int, overrides: Optional[JSONObject]) -> dict[str, object]:
        data: dict[str, object] = {
            "athlete_id": athlete_id,
            "experiment_type": self.experiment_type,
            "persona": self.persona,
            "compare_persona": self.compare_persona,
            "temperature": self.temperature,
            "max_entries": self.max_entries,
            "entry_order": self.entry_order,
            "needle_fact": self.needle_fact,
        }
        if overrides:
            data.update(overrides)
        return data

    def to_experiment_config(
        self,
        athlete_id: int,
        overrides: Optional[JSONObject] = None,
    ) -> ExperimentConfig:
        data = self._options(athlete_id, overrides)
        data.setdefault("provider", self.provider or DEFAULT_PROVIDER)
        data.setdefault("model", self.model or DEFAULT_MODEL)
        return parse_experiment_config(data)

    def to_batch_request(
        self,
        athlete_id: int,
        overrides: Optional[JSONObject] = None,
    ) -> BatchRequest:
        if not self.provider_sweep:
            msg = "Preset has no provider sweep"
            raise ConfigurationError(msg)
        data = self._options(athlete_id, overrides)
        data.setdefault("providers", [p.model_dump() for p in self.provider_sweep])
        return parse_batch_request(data)


def _input_keys(loc_key: str, data: dict[str, object]) -> set[str]:
    """Input keys that may have produced an error reported at loc_key."""
    candidates = {loc_key}
    for name, info in PresetConfig.model_fields.items():
        choices = [name]
        if isinstance(info.validation_alias, AliasChoices):
            choices += [c for c in info.validation_alias.choices if isinstance(c, str)]
        if loc_key in choices:
            candidates.update(choices)
    return candidates & set(data)


def decode_preset_config(blob: Optional[str], *, preset_name: str = "") -> PresetConfig:
    """Decode a stored preset blob, filling defaults instead of raising."""
    label = preset_name or "<unnamed>"
    if not blob:
        logger.warning("preset decode fallback: %s has an empty config, using defaults", label)
        return PresetConfig()

    try:
        data = json.loads(blob)
    except json.JSONDecodeError as exc:
        logger.warning("preset decode fallback: %s is not valid JSON (%s), using defaults", label, exc)
        return PresetConfig()

    if not isinstance(data, dict):
        logger.warning("preset decode fallback: %s is not a JSON object, using defaults", label)
        return PresetConfig()

    version = data.get("schema_version", data.get("schemaVersion", 1))
    if isinstance(version, int) and version > PRESET_SCHEMA_VERSION:
        logger.warning(
            "preset %s has schema version %s (newer than %s); unknown fields ignored",
            label, version, PRESET_SCHEMA_VERSION,
        )

    # Each pass drops the top-level keys that failed; bounded by key count
    for _ in range(len(data) + 1):
        try:
            return PresetConfig.model_validate(data)
        except ValidationError as exc:
            bad_keys: set[str] = set()
            for err in exc.errors():
                if err.get("loc"):
                    bad_keys |= _input_keys(str(err["loc"][0]), data)
            if not bad_keys:
                break
            for key in sorted(bad_keys):
                logger.warning(
                    "preset decode fallback: %s field %r is invalid (%r), using default",
                    label, key, data[key],
                )
                del data[key]

    logger.warning("preset decode fallback: %s could not be decoded, using defaults", label)
    return PresetConfig()


def encode_preset_config(config: PresetConfig | JSONObject) -> str:
    """Validate and serialize a preset config, raising ConfigurationError."""
    if isinstance(config, PresetConfig):
        return config.to_json()
    try:
        return PresetConfig.model_validate(config).to_json()
    except ValidationError as exc:
        msg = f"Invalid preset configuration: {exc.errors()[0].get('msg', exc)}"
        raise ConfigurationError(msg) from exc
