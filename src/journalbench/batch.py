# Copyright (c) Syntropy Systems
"""Batch dispatcher: fan one experiment out across provider:model pairs."""
from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from journalbench.comparison import collect_batch
from journalbench.errors import PersistenceError
from journalbench.models.enums import EventType, ExperimentStatus
from journalbench.models.experiment import (
    BatchRequest,
    ExperimentConfig,
    ProgressEvent,
    parse_batch_request,
)

if TYPE_CHECKING:
    from journalbench.db import Database
    from journalbench.models.base import JSONObject
    from journalbench.progress import ChannelRegistry, ProgressChannel
    from journalbench.runner import ExperimentRunner

logger = logging.getLogger(__name__)

CANCELLED_BEFORE_START = "Cancelled before start"


@dataclass(frozen=True)
class BatchHandle:
    batch_id: str
    run_ids: list[int]


@dataclass(frozen=True)
class RunHandle:
    run_id: int


@dataclass
class _ActiveBatch:
    batch_id: str
    run_ids: list[int]
    cancel_event: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    futures: list[Future[None]] = field(default_factory=list)


class BatchDispatcher:
    """Runs experiments on a bounded worker pool and reports on progress channels.

    Every unit of work (one provider:model pair, or one single run) is queued
    on a pool of ``max_concurrency`` threads, so excess work waits in
    submission order. One unit failing never affects its siblings.
    """

    def __init__(
        self,
        db: Database,
        runner: ExperimentRunner,
        channels: ChannelRegistry,
        max_concurrency: int = 4,
    ) -> None:
        self.db = db
        self.runner = runner
        self.channels = channels
        self.max_concurrency = max(max_concurrency, 1)
        self._pool = ThreadPoolExecutor(
            max_workers=self.max_concurrency,
            thread_name_prefix="journalbench-unit",
        )
        self._batches: dict[str, _ActiveBatch] = {}
        self._runs: dict[int, Future[None]] = {}
        self._lock = threading.Lock()

    # --- Batches ---

    def start_batch(self, request: BatchRequest | JSONObject) -> BatchHandle:
        """Create one pending run per pair and start them.

        Raises ConfigurationError before anything is stored if the request is
        invalid.
        """
        request = parse_batch_request(request)
        configs = [self.runner.prepare(request.config_for(pair)) for pair in request.providers]

        batch_id = uuid.uuid4().hex
        run_ids = self.db.create_runs(configs, batch_id=batch_id)
        channel = self.channels.create(self.channels.batch_key(batch_id))
        active = _ActiveBatch(batch_id=batch_id, run_ids=run_ids)
        with self._lock:
            self._batches[batch_id] = active

        logger.info("Starting batch %s across %d providers", batch_id, len(configs))
        channel.publish(
            ProgressEvent(
                type=EventType.BATCH_STARTED,
                message=f"Batch started with {len(configs)} providers",
                batch_id=batch_id,
                data={
                    "run_ids": list(run_ids),
                    "providers": [f"{c.provider}/{c.model}" for c in configs],
                    "experiment_type": request.experiment_type.value,
                },
            )
        )

        for run_id, config in zip(run_ids, configs):
            active.futures.append(
                self._pool.submit(self._run_unit, active, run_id, config, channel)
            )

        coordinator = threading.Thread(
            target=self._coordinate,
            args=(active, channel),
            name=f"journalbench-batch-{batch_id[:8]}",
            daemon=True,
        )
        coordinator.start()
        return BatchHandle(batch_id=batch_id, run_ids=list(run_ids))

    def _run_unit(
        self,
        active: _ActiveBatch,
        run_id: int,
        config: ExperimentConfig,
        channel: ProgressChannel,
    ) -> None:
        label = f"{config.provider}/{config.model}"

        def publish(event_type: EventType, message: str, data: Optional[JSONObject] = None) -> None:
            channel.publish(
                ProgressEvent(
                    type=event_type,
                    message=message,
                    data=data,
                    batch_id=active.batch_id,
                    run_id=run_id,
                    provider=config.provider,
                    model=config.model,
                )
            )

        if active.cancel_event.is_set():
            try:
                self.runner.cancel_pending(run_id, CANCELLED_BEFORE_START)
            except PersistenceError as e:
                logger.error("Could not mark run %s cancelled: %s", run_id, e)
            publish(
                EventType.PROVIDER_ERROR,
                f"Failed {label}: {CANCELLED_BEFORE_START}",
                {"error": CANCELLED_BEFORE_START, "cancelled": True, "retryable": True},
            )
            return

        publish(EventType.PROVIDER_STARTED, f"Starting {label}")
        try:
            result = self.runner.run(
                config,
                run_id=run_id,
                channel=channel,
                cancel_event=active.cancel_event,
                batch_id=active.batch_id,
                terminal_events=False,
            )
        except PersistenceError as e:
            publish(
                EventType.PROVIDER_ERROR,
                f"Failed {label}: {e}",
                {"error": str(e), "retryable": True},
            )
            return
        except Exception as e:
            logger.exception("Unit %s in batch %s crashed", label, active.batch_id)
            self._abandon(run_id, f"Internal error: {e}")
            publish(
                EventType.PROVIDER_ERROR,
                f"Failed {label}: {e}",
                {"error": str(e), "retryable": False},
            )
            return

        if result.status is ExperimentStatus.COMPLETED:
            publish(
                EventType.PROVIDER_COMPLETE,
                f"Completed {label}",
                {
                    "status": result.status.value,
                    "cost": result.estimated_cost,
                    "tokens": result.tokens_used,
                    "duration": result.duration_seconds,
                    "claims": len(result.claims),
                    "supported_claims": result.supported_claim_count,
                    "position_found": {p.position.value: p.found for p in result.position_results},
                },
            )
        else:
            publish(
                EventType.PROVIDER_ERROR,
                f"Failed {label}: {result.error_message}",
                {
                    "status": result.status.value,
                    "error": result.error_message,
                    "retryable": result.retryable,
                    "cost": result.estimated_cost,
                    "tokens": result.tokens_used,
                },
            )

    def _abandon(self, run_id: int, message: str) -> None:
        try:
            self.db.finish_run(run_id, ExperimentStatus.FAILED, message)
        except PersistenceError as e:
            logger.error("Could not mark run %s failed: %s", run_id, e)

    def _coordinate(self, active: _ActiveBatch, channel: ProgressChannel) -> None:
        _ = wait(active.futures)
        key = self.channels.batch_key(active.batch_id)
        try:
            results = collect_batch(self.db, active.batch_id)
            channel.publish(
                ProgressEvent(
                    type=EventType.BATCH_COMPLETE,
                    message=f"Batch {results.status.value}: "
                    f"{len(results.completed)}/{len(results.results)} providers completed",
                    batch_id=active.batch_id,
                    data={
                        "status": results.status.value,
                        "results": [r.model_dump(mode="json") for r in results.results],
                        "comparison": results.comparison.model_dump(mode="json"),
                    },
                )
            )
            logger.info("Batch %s finished: %s", active.batch_id, results.status.value)
        except Exception as e:
            logger.exception("Could not aggregate batch %s", active.batch_id)
            channel.publish(
                ProgressEvent(
                    type=EventType.BATCH_COMPLETE,
                    message=f"Batch finished but results could not be aggregated: {e}",
                    batch_id=active.batch_id,
                    data={"error": str(e)},
                )
            )
        finally:
            self.channels.close(key)
            with self._lock:
                _ = self._batches.pop(active.batch_id, None)
            active.done.set()

    def get_progress_channel(self, batch_id: str) -> Optional[ProgressChannel]:
        return self.channels.get(self.channels.batch_key(batch_id))

    def is_batch_running(self, batch_id: str) -> bool:
        with self._lock:
            return batch_id in self._batches

    def cancel_batch(self, batch_id: str) -> bool:
        """Stop issuing provider calls for a batch.

        Units that have not started fail with a cancellation reason; calls
        already in flight finish or time out on their own. Returns False if
        the batch is not running.
        """
        with self._lock:
            active = self._batches.get(batch_id)
        if active is None:
            return False
        if not active.cancel_event.is_set():
            active.cancel_event.set()
            logger.info("Cancelling batch %s", batch_id)
            channel = self.get_progress_channel(batch_id)
            if channel is not None:
                channel.publish(
                    ProgressEvent(
                        type=EventType.PROGRESS,
                        message="Cancellation requested; waiting for in-flight calls",
                        batch_id=batch_id,
                    )
                )
        return True

    def wait(self, batch_id: str, timeout: Optional[float] = None) -> bool:
        """Block until a batch finishes. True if it is no longer running."""
        with self._lock:
            active = self._batches.get(batch_id)
        if active is None:
            return True
        return active.done.wait(timeout)

    # --- Single runs ---

    def start_run(self, config: ExperimentConfig | JSONObject) -> RunHandle:
        """Queue one experiment; its events go to the ``run:{id}`` channel."""
        prepared = self.runner.prepare(config)
        run_id = self.runner.create_run(prepared)
        channel = self.channels.create(self.channels.run_key(run_id))
        with self._lock:
            self._runs[run_id] = self._pool.submit(self._run_single, run_id, prepared, channel)
        return RunHandle(run_id=run_id)

    def _run_single(self, run_id: int, config: ExperimentConfig, channel: ProgressChannel) -> None:
        try:
            _ = self.runner.run(config, run_id=run_id, channel=channel)
        except PersistenceError:
            # Already reported on the channel by the runner
            logger.error("Run %s ended on a storage error", run_id)
        except Exception as e:
            logger.exception("Run %s crashed", run_id)
            self._abandon(run_id, f"Internal error: {e}")
            channel.publish(
                ProgressEvent(
                    type=EventType.ERROR,
                    message=f"Run {run_id} failed: {e}",
                    run_id=run_id,
                    provider=config.provider,
                    model=config.model,
                )
            )
        finally:
            self.channels.close(self.channels.run_key(run_id))
            with self._lock:
                _ = self._runs.pop(run_id, None)

    def get_run_channel(self, run_id: int) -> Optional[ProgressChannel]:
        return self.channels.get(self.channels.run_key(run_id))

    def is_run_active(self, run_id: int) -> bool:
        with self._lock:
            return run_id in self._runs

    def wait_run(self, run_id: int, timeout: Optional[float] = None) -> bool:
        """Block until a single run finishes. True if it is no longer running."""
        with self._lock:
            future = self._runs.get(run_id)
        if future is None:
            return True
        done, _ = wait([future], timeout=timeout)
        return bool(done)

    def shutdown(self, wait_for_units: bool = True) -> None:
        """Cancel running batches and stop the worker pool."""
        with self._lock:
            batch_ids = list(self._batches)
        for batch_id in batch_ids:
            _ = self.cancel_batch(batch_id)
        self._pool.shutdown(wait=wait_for_units)
