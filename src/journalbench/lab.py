# Copyright (c) Syntropy Systems
"""The composition root: one store, one runner, one dispatcher per process."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

from typing_extensions import Self

from journalbench.batch import BatchDispatcher, BatchHandle, RunHandle
from journalbench.config import LabConfig
from journalbench.db import Database
from journalbench.models.preset import decode_preset_config
from journalbench.presets import seed_default_presets
from journalbench.progress import ChannelRegistry
from journalbench.providers import ProviderFactory
from journalbench.report import ReportGenerator
from journalbench.runner import ExperimentRunner

if TYPE_CHECKING:
    from types import TracebackType

    from journalbench.journal import JournalSource
    from journalbench.models.base import JSONObject

logger = logging.getLogger(__name__)


class Lab:
    """Wires the store, journal, providers, runner, dispatcher and reports.

    Example:
        with Lab.open(".journalbench/journalbench.db") as lab:
            handle = lab.dispatcher.start_batch({
                "athlete_id": 1,
                "experiment_type": "position",
                "providers": ["stub:echo", "stub:edges"],
            })
            lab.dispatcher.wait(handle.batch_id)

    """

    def __init__(
        self,
        db: Database,
        config: Optional[LabConfig] = None,
        providers: Optional[ProviderFactory] = None,
        journal: Optional[JournalSource] = None,
    ) -> None:
        self.db = db
        self.config = config or LabConfig()
        self.providers = providers or ProviderFactory(self.config.endpoints)
        self.journal: JournalSource = journal if journal is not None else db
        self.channels = ChannelRegistry(
            capacity=self.config.channel_capacity,
            grace_period=self.config.channel_grace_period,
        )
        self.runner = ExperimentRunner(db, self.journal, self.providers, self.config)
        self.dispatcher = BatchDispatcher(
            db, self.runner, self.channels, max_concurrency=self.config.max_concurrency
        )
        self.reports = ReportGenerator(db)

    @classmethod
    def open(
        cls,
        db_path: Path | str,
        config: Optional[LabConfig] = None,
        providers: Optional[ProviderFactory] = None,
        journal: Optional[JournalSource] = None,
    ) -> Self:
        """Open (creating if needed) the store at db_path and seed defaults."""
        db = Database(db_path)
        db.init_schema()
        _ = seed_default_presets(db)
        return cls(db, config=config, providers=providers, journal=journal)

    def apply_preset(
        self,
        name: str,
        athlete_id: int,
        overrides: Optional[JSONObject] = None,
    ) -> Union[BatchHandle, RunHandle]:
        """Start a preset: a batch when it sweeps providers, otherwise one run."""
        preset = self.db.require_preset(name)
        config = decode_preset_config(preset.config, preset_name=preset.name)
        logger.info("Applying preset %r for athlete %s", name, athlete_id)
        if config.is_sweep:
            return self.dispatcher.start_batch(config.to_batch_request(athlete_id, overrides))
        return self.dispatcher.start_run(config.to_experiment_config(athlete_id, overrides))

    def close(self) -> None:
        self.dispatcher.shutdown()
        self.db.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
