# Copyright (c) Syntropy Systems
"""Tests for preset decoding, encoding, seeding and applying."""

import json
import logging

import pytest

from journalbench.batch import BatchHandle, RunHandle
from journalbench.db import Database
from journalbench.errors import ConfigurationError
from journalbench.lab import Lab
from journalbench.models.enums import EntryOrder, ExperimentStatus, ExperimentType, Persona
from journalbench.models.preset import (
    PRESET_SCHEMA_VERSION,
    PresetConfig,
    decode_preset_config,
    encode_preset_config,
)
from journalbench.presets import DEFAULT_PRESETS, seed_default_presets


class TestDecodePresetConfig:
    """Decoding never raises; bad input falls back to defaults."""

    @pytest.mark.parametrize("blob", [None, "", "{not json", "[1, 2]", '"text"'])
    def test_unusable_blob_gives_defaults(self, blob: str | None, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING):
            config = decode_preset_config(blob, preset_name="broken")

        assert config == PresetConfig()
        assert "preset decode fallback" in caplog.text

    def test_bad_field_is_dropped(self, caplog: pytest.LogCaptureFixture) -> None:
        blob = json.dumps({
            "experiment_type": "position",
            "temperature": 5,
            "needle_fact": "a fact",
        })
        with caplog.at_level(logging.WARNING):
            config = decode_preset_config(blob, preset_name="mine")

        assert config.experiment_type is ExperimentType.POSITION
        assert config.needle_fact == "a fact"
        assert config.temperature == 0.7
        assert "'temperature'" in caplog.text

    def test_bad_enum_is_dropped(self) -> None:
        config = decode_preset_config(json.dumps({"persona": "yoda", "max_entries": 3}))
        assert config.persona is Persona.LASSO
        assert config.max_entries == 3

    def test_v1_camel_case(self) -> None:
        blob = json.dumps({
            "experimentType": "position",
            "maxEntries": 7,
            "entryOrder": "chronological",
            "needleFact": "shin splints",
            "providerSweep": ["stub:echo", "stub:edges"],
        })
        config = decode_preset_config(blob)

        assert config.experiment_type is ExperimentType.POSITION
        assert config.max_entries == 7
        assert config.entry_order is EntryOrder.CHRONOLOGICAL
        assert config.needle_fact == "shin splints"
        assert [p.key for p in config.provider_sweep] == ["stub/echo", "stub/edges"]

    def test_unknown_keys_are_ignored(self) -> None:
        config = decode_preset_config(json.dumps({"schema_version": 99, "colour": "red"}))
        assert config.experiment_type is ExperimentType.PERSONA


class TestEncodePresetConfig:
    """Tests for encode_preset_config."""

    def test_writes_current_schema(self) -> None:
        data = json.loads(encode_preset_config({"experimentType": "compression"}))
        assert data["schema_version"] == PRESET_SCHEMA_VERSION
        assert data["experiment_type"] == "compression"

    def test_round_trip(self) -> None:
        config = PresetConfig(experiment_type=ExperimentType.POSITION, max_entries=4, needle_fact="x")
        assert decode_preset_config(encode_preset_config(config)) == config

    def test_invalid_raises(self) -> None:
        with pytest.raises(ConfigurationError, match="Invalid preset configuration"):
            encode_preset_config({"temperature": 9})


class TestPresetConfig:
    """Tests for turning presets into runs and batches."""

    def test_experiment_config_with_overrides(self) -> None:
        preset = PresetConfig(provider="stub", model="echo", max_entries=7)
        config = preset.to_experiment_config(3, {"max_entries": 2})

        assert config.athlete_id == 3
        assert config.max_entries == 2
        assert config.pair.key == "stub/echo"

    def test_experiment_config_default_provider(self) -> None:
        config = PresetConfig().to_experiment_config(1)
        assert config.pair.key == "openai/gpt-4o-mini"

    def test_batch_request_needs_sweep(self) -> None:
        with pytest.raises(ConfigurationError, match="no provider sweep"):
            PresetConfig().to_batch_request(1)


class TestDefaultPresets:
    """Tests for the built-in presets."""

    def test_seeding_is_idempotent(self, db: Database) -> None:
        assert seed_default_presets(db) == len(DEFAULT_PRESETS) == 4
        assert seed_default_presets(db) == 0

        stored = db.list_presets()
        assert {p.name for p in stored} == {p.name for p in DEFAULT_PRESETS}
        assert all(p.is_default for p in stored)

    def test_stored_defaults_decode(self, db: Database) -> None:
        seed_default_presets(db)
        sweep = decode_preset_config(db.require_preset("Full Provider Sweep").config)
        assert sweep.is_sweep
        assert len(sweep.provider_sweep) == 5
        war = decode_preset_config(db.require_preset("Persona War").config)
        assert war.persona is Persona.GOGGINS
        assert war.compare_persona is Persona.LASSO


class TestApplyPreset:
    """Tests for Lab.apply_preset."""

    def test_single_run_preset(self, lab: Lab) -> None:
        lab.db.create_preset("echo", encode_preset_config({"provider": "stub", "model": "echo"}))

        handle = lab.apply_preset("echo", athlete_id=1)

        assert isinstance(handle, RunHandle)
        lab.dispatcher.wait_run(handle.run_id, timeout=10.0)
        assert lab.db.require_run(handle.run_id).status is ExperimentStatus.COMPLETED

    def test_sweep_preset(self, lab: Lab) -> None:
        lab.db.create_preset(
            "sweep",
            encode_preset_config({"experiment_type": "position", "provider_sweep": ["stub:echo", "stub:edges"]}),
        )

        handle = lab.apply_preset("sweep", athlete_id=1, overrides={"needle_fact": "sub-4 minute mile goal"})

        assert isinstance(handle, BatchHandle)
        assert len(handle.run_ids) == 2
        lab.dispatcher.wait(handle.batch_id, timeout=10.0)
        runs = lab.db.get_batch_runs(handle.batch_id)
        assert [r.needle_fact for r in runs] == ["sub-4 minute mile goal"] * 2
