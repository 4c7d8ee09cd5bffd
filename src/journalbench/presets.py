# Copyright (c) Syntropy Systems
"""Built-in experiment presets, seeded into every new store."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from journalbench.models.enums import EntryOrder, ExperimentType, Persona
from journalbench.models.experiment import ProviderModelPair
from journalbench.models.preset import PresetConfig

if TYPE_CHECKING:
    from journalbench.db import Database

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DefaultPreset:
    name: str
    description: str
    config: PresetConfig


def _pairs(*specs: str) -> list[ProviderModelPair]:
    return [ProviderModelPair.parse(spec) for spec in specs]


DEFAULT_PRESETS: tuple[DefaultPreset, ...] = (
    DefaultPreset(
        name="Quick U-Curve Test",
        description=(
            "Position test with 7 entries using gpt-4o-mini to test needle "
            "retrieval across context positions"
        ),
        config=PresetConfig(
            experiment_type=ExperimentType.POSITION,
            provider="openai",
            model="gpt-4o-mini",
            temperature=0.7,
            max_entries=7,
            entry_order=EntryOrder.REVERSE,
            needle_fact=(
                "The athlete mentioned they want to improve their free throw percentage to 85%"
            ),
        ),
    ),
    DefaultPreset(
        name="Persona War",
        description="Compare Goggins (intense motivator) vs Lasso (supportive coach) persona responses",
        config=PresetConfig(
            experiment_type=ExperimentType.PERSONA,
            provider="openai",
            model="gpt-4o-mini",
            persona=Persona.GOGGINS,
            compare_persona=Persona.LASSO,
            temperature=0.7,
            entry_order=EntryOrder.REVERSE,
        ),
    ),
    DefaultPreset(
        name="Budget vs Premium",
        description="Compare DeepSeek (budget) vs Claude Sonnet 4 (premium) with identical prompts",
        config=PresetConfig(
            experiment_type=ExperimentType.PERSONA,
            provider="deepseek",
            model="deepseek-chat",
            persona=Persona.LASSO,
            temperature=0.7,
            entry_order=EntryOrder.REVERSE,
            provider_sweep=_pairs(
                "deepseek:deepseek-chat",
                "anthropic:claude-sonnet-4-20250514",
            ),
        ),
    ),
    DefaultPreset(
        name="Full Provider Sweep",
        description="Position test across all 5 providers to compare context handling",
        config=PresetConfig(
            experiment_type=ExperimentType.POSITION,
            provider="openai",
            model="gpt-4o-mini",
            temperature=0.7,
            max_entries=7,
            entry_order=EntryOrder.REVERSE,
            needle_fact="The athlete set a personal goal of running a sub-4 minute mile",
            provider_sweep=_pairs(
                "openai:gpt-4o-mini",
                "openai:gpt-4o",
                "anthropic:claude-sonnet-4-20250514",
                "deepseek:deepseek-chat",
                "ollama:llama3.2",
            ),
        ),
    ),
)


def seed_default_presets(db: Database) -> int:
    """Insert any missing default preset. Returns how many were added."""
    added = 0
    for preset in DEFAULT_PRESETS:
        if db.get_preset(preset.name) is not None:
            continue
        _ = db.create_preset(
            preset.name,
            preset.config.to_json(),
            description=preset.description,
            is_default=True,
        )
        added += 1
    if added:
        logger.info("Seeded %d default experiment presets", added)
    return added
