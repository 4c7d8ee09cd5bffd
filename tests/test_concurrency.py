# Copyright (c) Syntropy Systems
"""Concurrency and stress tests for journalbench."""

from __future__ import annotations

import threading
from datetime import date
from pathlib import Path

from journalbench.db import Database
from journalbench.lab import Lab
from journalbench.models.enums import EventType, ExperimentStatus
from journalbench.models.experiment import (
    ExperimentConfig,
    ExtractedClaim,
    Receipt,
    parse_experiment_config,
)


def _config(model: str = "echo") -> ExperimentConfig:
    return parse_experiment_config({"athlete_id": 1, "provider": "stub", "model": model})


def _claim(text: str) -> ExtractedClaim:
    return ExtractedClaim(
        text=text,
        is_supported=True,
        confidence=1.0,
        receipts=[
            Receipt(
                journal_entry_id=1,
                entry_date=date(2024, 3, 11),
                field="emotional_state",
                snippet=text,
                confidence=1.0,
            )
        ],
    )


class TestSharedStore:
    """Many threads writing through one Database."""

    def test_concurrent_run_lifecycles(self, db: Database) -> None:
        """Every thread's run ends completed with exactly its own claims."""
        num_threads = 8
        runs_per_thread = 5
        run_ids: list[int] = []
        errors: list[str] = []
        lock = threading.Lock()

        def worker(index: int) -> None:
            for i in range(runs_per_thread):
                try:
                    run_id = db.create_run(_config(f"m{index}"))
                    db.mark_run_running(run_id, entries_used=1)
                    db.add_claims(run_id, [_claim(f"claim {index}-{i}-{k}") for k in range(3)], persona="lasso")
                    db.update_run_usage(run_id, 10, 5, 0.0)
                    db.finish_run(run_id, ExperimentStatus.COMPLETED)
                    with lock:
                        run_ids.append(run_id)
                except Exception as e:  # noqa: BLE001
                    with lock:
                        errors.append(str(e))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(num_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        assert len(set(run_ids)) == num_threads * runs_per_thread
        for run_id in run_ids:
            run = db.require_run(run_id)
            assert run.status is ExperimentStatus.COMPLETED
            assert run.tokens_used == 15
            claims = db.get_claims(run_id)
            assert len(claims) == 3
            assert all(len(c.receipts) == 1 for c in claims)

    def test_only_one_finisher_wins(self, db: Database) -> None:
        """Racing finish_run calls leave exactly one terminal transition."""
        run_id = db.create_run(_config())
        db.mark_run_running(run_id, entries_used=0)
        outcomes: list[bool] = []
        lock = threading.Lock()
        start = threading.Barrier(6)

        def finish(status: ExperimentStatus) -> None:
            start.wait()
            changed = db.finish_run(run_id, status, "raced")
            with lock:
                outcomes.append(changed)

        statuses = [ExperimentStatus.COMPLETED, ExperimentStatus.FAILED] * 3
        threads = [threading.Thread(target=finish, args=(s,)) for s in statuses]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert outcomes.count(True) == 1
        assert db.require_run(run_id).status.is_terminal

    def test_batches_from_separate_connections(self, tmp_path: Path) -> None:
        """Each batch's runs are contiguous even with writers on other connections."""
        db_path = tmp_path / "shared.db"
        setup = Database(db_path)
        setup.init_schema()
        setup.close()
        errors: list[str] = []

        def writer(batch: str) -> None:
            store = Database(db_path)
            try:
                for i in range(5):
                    store.create_runs([_config(f"{batch}-{i}-{k}") for k in range(3)], batch_id=f"{batch}-{i}")
            except Exception as e:  # noqa: BLE001
                errors.append(str(e))
            finally:
                store.close()

        threads = [threading.Thread(target=writer, args=(name,)) for name in ("a", "b", "c")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        store = Database(db_path)
        try:
            assert len(store.list_runs(limit=100)) == 45
            for name in ("a", "b", "c"):
                for i in range(5):
                    runs = store.get_batch_runs(f"{name}-{i}")
                    ids = [r.id for r in runs]
                    assert ids == list(range(ids[0], ids[0] + 3))
                    assert [r.model for r in runs] == [f"{name}-{i}-{k}" for k in range(3)]
        finally:
            store.close()


class TestConcurrentBatches:
    """Several batches sharing one dispatcher."""

    def test_batches_do_not_interfere(self, lab: Lab) -> None:
        handles = [
            lab.dispatcher.start_batch({"athlete_id": 1, "providers": "stub:echo,stub:fail,stub:silent"})
            for _ in range(3)
        ]
        for handle in handles:
            assert lab.dispatcher.wait(handle.batch_id, timeout=30.0)

        all_ids = [run_id for h in handles for run_id in h.run_ids]
        assert len(set(all_ids)) == 9

        for handle in handles:
            channel = lab.dispatcher.get_progress_channel(handle.batch_id)
            assert channel is not None
            events = channel.events()
            assert {e.batch_id for e in events} == {handle.batch_id}
            assert {e.run_id for e in events if e.run_id is not None} == set(handle.run_ids)
            assert [e.sequence for e in events] == list(range(len(events)))
            assert events[-1].type is EventType.BATCH_COMPLETE
            assert events[-1].data is not None
            assert events[-1].data["status"] == "partial"

    def test_subscribers_see_the_same_stream(self, lab: Lab) -> None:
        handle = lab.dispatcher.start_batch({"athlete_id": 1, "providers": "stub:echo,stub:edges"})
        channel = lab.dispatcher.get_progress_channel(handle.batch_id)
        assert channel is not None
        seen: list[list[int]] = [[], [], []]

        def consume(index: int) -> None:
            for event in channel.subscribe(timeout=10.0):
                seen[index].append(event.sequence)

        threads = [threading.Thread(target=consume, args=(i,)) for i in range(len(seen))]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        expected = [e.sequence for e in channel.events()]
        assert all(sequences == expected for sequences in seen)
