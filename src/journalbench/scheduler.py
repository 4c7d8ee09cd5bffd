# Copyright (c) Syntropy Systems
"""Unattended preset runs: a baseline on server start and runs on a cron schedule."""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from threading import Event, Thread
from typing import TYPE_CHECKING, Optional, Union

from croniter import croniter

from journalbench.batch import BatchHandle, RunHandle
from journalbench.errors import ConfigurationError, JournalbenchError, NotFoundError
from journalbench.models.enums import ExperimentStatus

if TYPE_CHECKING:
    from journalbench.config import LabConfig
    from journalbench.lab import Lab

logger = logging.getLogger(__name__)

# Give up waiting on a started preset after this long (seconds)
COMPLETION_TIMEOUT = 600.0

# Granularity of completion waits, so stop() is never blocked for long
POLL_INTERVAL = 1.0

# Pause after an unexpected error before looking for the next occurrence
ERROR_BACKOFF = 60.0

PresetHandle = Union[BatchHandle, RunHandle]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_occurrence(expression: str, after: datetime) -> datetime:
    """Next time a cron expression fires strictly after ``after``."""
    if not croniter.is_valid(expression):
        msg = f"Invalid cron schedule {expression!r}"
        raise ConfigurationError(msg)
    return croniter(expression, after).get_next(datetime)


class ExperimentScheduler:
    """Starts presets without a caller.

    With ``auto_run_on_startup`` set, ``default_preset`` runs once for
    ``default_athlete_id`` when the store holds no runs yet. With a cron
    ``schedule`` (UTC), ``scheduled_preset`` runs at every occurrence until
    the scheduler is stopped. Presets start through the batch dispatcher like
    any API request; failures are logged and never stop the server.
    """

    def __init__(
        self,
        lab: Lab,
        config: Optional[LabConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        completion_timeout: float = COMPLETION_TIMEOUT,
    ) -> None:
        self.lab = lab
        self.config = config or lab.config
        self._clock = clock or _utcnow
        self._completion_timeout = completion_timeout
        self._stop_event = Event()
        self._thread: Optional[Thread] = None

    @property
    def enabled(self) -> bool:
        return self.config.auto_run_on_startup or bool(self.config.schedule)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background thread if there is anything to do."""
        if self._thread is not None or not self.enabled:
            return

        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="journalbench-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background thread. Runs already started keep going."""
        if self._thread is None:
            return

        self._stop_event.set()
        self._thread.join(timeout=timeout)
        self._thread = None

    def run_startup(self) -> Optional[PresetHandle]:
        """Start the baseline preset, unless the store already has runs."""
        if self.lab.db.list_runs(limit=1):
            logger.info("Runs already exist; skipping startup preset %r", self.config.default_preset)
            return None
        logger.info(
            "No runs found; starting preset %r for athlete %s",
            self.config.default_preset,
            self.config.default_athlete_id,
        )
        return self.run_preset(self.config.default_preset)

    def run_preset(self, name: str) -> Optional[PresetHandle]:
        """Start a preset for the default athlete. None if it could not start."""
        try:
            handle = self.lab.apply_preset(name, athlete_id=self.config.default_athlete_id)
        except NotFoundError:
            logger.warning("Preset %r not found; skipping", name)
            return None
        except JournalbenchError as e:
            logger.error("Could not start preset %r: %s", name, e)
            return None

        if isinstance(handle, BatchHandle):
            logger.info(
                "Started batch %s from preset %r (%d providers)",
                handle.batch_id, name, len(handle.run_ids),
            )
        else:
            logger.info("Started run %s from preset %r", handle.run_id, name)
        return handle

    def wait_and_log(self, handle: PresetHandle) -> bool:
        """Wait for a started preset and log each run's outcome.

        Returns False if the scheduler was stopped or the wait timed out.
        """
        if isinstance(handle, BatchHandle):
            run_ids = handle.run_ids
            batch_id = handle.batch_id

            def finished(timeout: float) -> bool:
                return self.lab.dispatcher.wait(batch_id, timeout=timeout)
        else:
            run_ids = [handle.run_id]
            run_id = handle.run_id

            def finished(timeout: float) -> bool:
                return self.lab.dispatcher.wait_run(run_id, timeout=timeout)

        waited = 0.0
        while not finished(POLL_INTERVAL):
            waited += POLL_INTERVAL
            if self._stop_event.is_set():
                return False
            if waited >= self._completion_timeout:
                logger.warning("Runs %s still running after %.0fs", run_ids, waited)
                return False

        for run_id in run_ids:
            self._log_run(run_id)
        return True

    def _log_run(self, run_id: int) -> None:
        run = self.lab.db.get_run(run_id)
        if run is None:
            logger.warning("Run %s not found", run_id)
            return
        if run.status is ExperimentStatus.FAILED:
            logger.warning("Run %s (%s) failed: %s", run_id, run.pair_key, run.error_message)
            return

        logger.info(
            "Run %s (%s) completed: %d tokens, $%.4f",
            run_id, run.pair_key, run.tokens_used, run.estimated_cost,
        )
        positions = self.lab.db.get_position_tests(run_id)
        if positions:
            logger.info(
                "Run %s positions: %s",
                run_id,
                ", ".join(
                    f"{p.position.value}: {'found' if p.fact_retrieved else 'not found'}"
                    for p in positions
                ),
            )
        claims = self.lab.db.get_claims(run_id)
        if claims:
            supported = sum(1 for c in claims if c.is_supported)
            logger.info("Run %s claims: %d/%d supported", run_id, supported, len(claims))

    def _loop(self) -> None:
        if self.config.auto_run_on_startup:
            try:
                handle = self.run_startup()
                if handle is not None:
                    _ = self.wait_and_log(handle)
            except Exception:
                logger.exception("Startup preset run failed")

        schedule = self.config.schedule
        if not schedule:
            logger.debug("No schedule configured; no recurring runs")
            return

        last_due = self._clock()
        try:
            _ = next_occurrence(schedule, last_due)
        except ConfigurationError as e:
            logger.error("%s; scheduled runs disabled", e)
            return
        logger.info("Running preset %r on schedule %r (UTC)", self.config.scheduled_preset, schedule)

        while not self._stop_event.is_set():
            try:
                # Never fire the same occurrence twice, even if the timer wakes early
                due = next_occurrence(schedule, max(self._clock(), last_due))
                delay = max((due - self._clock()).total_seconds(), 0.0)
                logger.info("Next scheduled run at %s", due.isoformat())
                if self._stop_event.wait(delay):
                    break
                last_due = due

                handle = self.run_preset(self.config.scheduled_preset)
                if handle is not None:
                    _ = self.wait_and_log(handle)
            except Exception:
                logger.exception("Scheduled run failed; continuing with the next occurrence")
                if self._stop_event.wait(ERROR_BACKOFF):
                    break

        logger.info("Scheduler stopped")
