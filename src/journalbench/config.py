# Copyright (c) Syntropy Systems
"""Configuration management for journalbench."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

PROJECT_DIR_NAME = ".journalbench"


@dataclass
class LabConfig:
    """Configuration for journalbench."""

    # Max provider units in flight at once; the rest queue in submission order
    max_concurrency: int = 4

    # Timeout for a single chat-completion call (seconds)
    call_timeout: float = 60.0

    # How long a closed progress channel lingers for late viewers (seconds)
    channel_grace_period: float = 30.0

    # Events retained per progress channel
    channel_capacity: int = 1000

    # Tag recorded on every run
    prompt_version: str = "v1"

    # Needle used by position runs that do not name one
    default_needle_fact: str = "shin splints on Tuesday"

    # Compression experiment knobs
    compressed_field_length: int = 50
    limited_entry_count: int = 7

    # Provider name -> base URL overrides for OpenAI-compatible endpoints
    endpoints: dict[str, str] = field(default_factory=dict)

    # Server start: run default_preset for default_athlete_id if the store has no runs
    auto_run_on_startup: bool = False
    default_athlete_id: int = 1
    default_preset: str = "Quick U-Curve Test"

    # Cron expression (UTC) for recurring runs of scheduled_preset; None disables them
    schedule: str | None = None
    scheduled_preset: str = "Full Provider Sweep"

    def to_dict(self) -> dict[str, object]:
        return {
            "max_concurrency": self.max_concurrency,
            "call_timeout": self.call_timeout,
            "channel_grace_period": self.channel_grace_period,
            "channel_capacity": self.channel_capacity,
            "prompt_version": self.prompt_version,
            "default_needle_fact": self.default_needle_fact,
            "compressed_field_length": self.compressed_field_length,
            "limited_entry_count": self.limited_entry_count,
            "endpoints": dict(self.endpoints),
            "auto_run_on_startup": self.auto_run_on_startup,
            "default_athlete_id": self.default_athlete_id,
            "default_preset": self.default_preset,
            "schedule": self.schedule,
            "scheduled_preset": self.scheduled_preset,
        }


def find_project_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .journalbench directory by walking up from start_path.

    Returns None if no .journalbench directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        project_dir = current / PROJECT_DIR_NAME
        if project_dir.is_dir():
            return project_dir
        current = current.parent

    # Check root
    project_dir = current / PROJECT_DIR_NAME
    if project_dir.is_dir():
        return project_dir

    return None


def get_global_config_dir() -> Path:
    """Get the global journalbench config directory (~/.journalbench)."""
    return Path.home() / PROJECT_DIR_NAME


def load_config(project_dir: Path | None = None) -> LabConfig:
    """Load configuration from .journalbench/config.yaml or defaults.

    Looks for config in:
    1. Provided project_dir
    2. Nearest .journalbench directory walking up
    3. ~/.journalbench/config.yaml
    4. Defaults
    """
    config = LabConfig()

    config_path = None

    if project_dir is not None:
        config_path = project_dir / "config.yaml"
    else:
        found_dir = find_project_dir()
        if found_dir is not None:
            config_path = found_dir / "config.yaml"
        else:
            global_config = get_global_config_dir() / "config.yaml"
            if global_config.exists():
                config_path = global_config

    if config_path is not None and config_path.exists():
        with config_path.open() as f:
            data = cast("dict[str, object]", yaml.safe_load(f) or {})

        max_concurrency = data.get("max_concurrency")
        if isinstance(max_concurrency, int) and max_concurrency > 0:
            config.max_concurrency = max_concurrency
        call_timeout = data.get("call_timeout")
        if isinstance(call_timeout, (int, float)) and call_timeout > 0:
            config.call_timeout = float(call_timeout)
        grace = data.get("channel_grace_period")
        if isinstance(grace, (int, float)) and grace >= 0:
            config.channel_grace_period = float(grace)
        capacity = data.get("channel_capacity")
        if isinstance(capacity, int) and capacity > 0:
            config.channel_capacity = capacity
        prompt_version = data.get("prompt_version")
        if isinstance(prompt_version, str):
            config.prompt_version = prompt_version
        needle = data.get("default_needle_fact")
        if isinstance(needle, str) and needle.strip():
            config.default_needle_fact = needle
        field_length = data.get("compressed_field_length")
        if isinstance(field_length, int) and field_length > 0:
            config.compressed_field_length = field_length
        limited = data.get("limited_entry_count")
        if isinstance(limited, int) and limited > 0:
            config.limited_entry_count = limited
        endpoints = data.get("endpoints")
        if isinstance(endpoints, dict):
            config.endpoints = {
                str(k): str(v) for k, v in cast("dict[object, object]", endpoints).items()
            }
        auto_run = data.get("auto_run_on_startup")
        if isinstance(auto_run, bool):
            config.auto_run_on_startup = auto_run
        athlete_id = data.get("default_athlete_id")
        if isinstance(athlete_id, int) and not isinstance(athlete_id, bool) and athlete_id > 0:
            config.default_athlete_id = athlete_id
        default_preset = data.get("default_preset")
        if isinstance(default_preset, str) and default_preset.strip():
            config.default_preset = default_preset.strip()
        schedule = data.get("schedule")
        if isinstance(schedule, str) and schedule.strip():
            config.schedule = schedule.strip()
        scheduled_preset = data.get("scheduled_preset")
        if isinstance(scheduled_preset, str) and scheduled_preset.strip():
            config.scheduled_preset = scheduled_preset.strip()

    return config


def get_db_path(project_dir: Path | None = None) -> Path:
    """Get the path to the SQLite database."""
    if project_dir is None:
        project_dir = require_project_dir()

    return project_dir / "journalbench.db"


def require_project_dir() -> Path:
    """Get the project directory or raise an error if not found."""
    project_dir = find_project_dir()
    if project_dir is None:
        msg = "No .journalbench directory found. Run 'journalbench init' first."
        raise RuntimeError(
            msg
        )
    return project_dir
