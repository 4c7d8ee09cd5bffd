# Copyright (c) Syntropy Systems
"""Tests for the batch dispatcher."""

import threading
import time
from collections.abc import Iterator
from pathlib import Path

import pytest

from journalbench.batch import CANCELLED_BEFORE_START
from journalbench.config import LabConfig
from journalbench.db import Database
from journalbench.errors import ConfigurationError, ProviderError
from journalbench.journal import InMemoryJournal
from journalbench.lab import Lab
from journalbench.models.enums import EventType, ExperimentStatus
from journalbench.models.experiment import Completion, JournalEntry
from journalbench.providers import ChatMessage, ChatProvider, ProviderFactory, StubProvider


class GatedProvider:
    """Blocks its first call until the test releases it."""

    def __init__(self, model: str, started: threading.Event, release: threading.Event) -> None:
        self.name = "gated"
        self.model = model
        self.started = started
        self.release = release

    def complete(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        temperature: float,
        timeout: float,
    ) -> Completion:
        self.started.set()
        self.release.wait(5.0)
        return Completion(text=StubProvider.OPENING, input_tokens=10, output_tokens=5)

    def close(self) -> None:
        pass


class CountingProvider:
    """Tracks how many calls are in flight at once."""

    def __init__(self, model: str, factory: "TestFactory") -> None:
        self.name = "counting"
        self.model = model
        self.factory = factory

    def complete(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        temperature: float,
        timeout: float,
    ) -> Completion:
        with self.factory.lock:
            self.factory.in_flight += 1
            self.factory.peak = max(self.factory.peak, self.factory.in_flight)
        try:
            time.sleep(0.05)
        finally:
            with self.factory.lock:
                self.factory.in_flight -= 1
        return Completion(text=StubProvider.OPENING, input_tokens=10, output_tokens=5)

    def close(self) -> None:
        pass


class HangingProvider:
    """Ignores its timeout and blocks until the test releases it."""

    def __init__(self, model: str, release: threading.Event) -> None:
        self.name = "hang"
        self.model = model
        self.release = release

    def complete(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        temperature: float,
        timeout: float,
    ) -> Completion:
        self.release.wait(10.0)
        return Completion(text=StubProvider.OPENING, input_tokens=10, output_tokens=5)

    def close(self) -> None:
        pass


class FlakyProvider:
    """Fails every call with a rate limit."""

    def __init__(self, model: str) -> None:
        self.name = "flaky"
        self.model = model

    def complete(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        temperature: float,
        timeout: float,
    ) -> Completion:
        raise ProviderError("flaky/m returned HTTP 429: slow down", transient=True)

    def close(self) -> None:
        pass


class TestFactory(ProviderFactory):
    __test__ = False

    def __init__(self) -> None:
        super().__init__(environ={})
        self.started = threading.Event()
        self.release = threading.Event()
        self.lock = threading.Lock()
        self.in_flight = 0
        self.peak = 0

    def create(self, provider: str, model: str) -> ChatProvider:
        if provider == "gated":
            return GatedProvider(model, self.started, self.release)
        if provider == "counting":
            return CountingProvider(model, self)
        if provider == "hang":
            return HangingProvider(model, self.release)
        if provider == "flaky":
            return FlakyProvider(model)
        return super().create(provider, model)


@pytest.fixture
def factory() -> TestFactory:
    return TestFactory()


def _open_lab(
    tmp_path: Path,
    entries: list[JournalEntry],
    factory: ProviderFactory,
    concurrency: int,
    call_timeout: float = 5.0,
) -> Lab:
    db = Database(tmp_path / "batch.db")
    db.init_schema()
    config = LabConfig(max_concurrency=concurrency, call_timeout=call_timeout)
    return Lab(db, config=config, providers=factory, journal=InMemoryJournal(entries))


@pytest.fixture
def serial_lab(tmp_path: Path, entries: list[JournalEntry], factory: TestFactory) -> Iterator[Lab]:
    lab = _open_lab(tmp_path, entries, factory, concurrency=1)
    yield lab
    factory.release.set()
    lab.close()


class TestStartBatch:
    """Tests for fanning a request out across providers."""

    def test_partial_batch(self, lab: Lab) -> None:
        handle = lab.dispatcher.start_batch({
            "athlete_id": 1,
            "experiment_type": "position",
            "needle_fact": "sub-4 minute mile goal",
            "providers": "stub:fail,stub:echo",
        })
        assert lab.dispatcher.wait(handle.batch_id, timeout=10.0)

        fail_run, echo_run = (lab.db.require_run(i) for i in handle.run_ids)
        assert fail_run.status is ExperimentStatus.FAILED
        assert fail_run.error_message == "stub provider configured to fail"
        assert echo_run.status is ExperimentStatus.COMPLETED
        assert fail_run.batch_id == echo_run.batch_id == handle.batch_id

        channel = lab.dispatcher.get_progress_channel(handle.batch_id)
        assert channel is not None
        assert channel.closed
        events = channel.events()
        assert events[0].type is EventType.BATCH_STARTED
        assert events[-1].type is EventType.BATCH_COMPLETE
        assert events[-1].data is not None
        assert events[-1].data["status"] == "partial"
        assert len(events[-1].data["results"]) == 2

        types = [e.type for e in events]
        assert EventType.COMPLETE not in types
        assert EventType.ERROR not in types
        for run_id in handle.run_ids:
            unit = [e.type for e in events if e.run_id == run_id and e.type.value.startswith("provider_")]
            assert unit[0] is EventType.PROVIDER_STARTED
            assert unit[-1] in (EventType.PROVIDER_COMPLETE, EventType.PROVIDER_ERROR)

        error = next(e for e in events if e.type is EventType.PROVIDER_ERROR)
        assert error.message == "Failed stub/fail: stub provider configured to fail"

    def test_all_completed(self, lab: Lab) -> None:
        handle = lab.dispatcher.start_batch({"athlete_id": 1, "providers": ["stub:echo", "stub:edges"]})
        lab.dispatcher.wait(handle.batch_id, timeout=10.0)

        channel = lab.dispatcher.get_progress_channel(handle.batch_id)
        assert channel is not None
        last = channel.events()[-1]
        assert last.data is not None
        assert last.data["status"] == "completed"
        assert not lab.dispatcher.is_batch_running(handle.batch_id)

    def test_invalid_request_stores_nothing(self, lab: Lab) -> None:
        with pytest.raises(ConfigurationError):
            lab.dispatcher.start_batch({"athlete_id": 1, "providers": []})
        with pytest.raises(ConfigurationError):
            lab.dispatcher.start_batch({"athlete_id": 1, "providers": "stub"})
        assert lab.db.list_runs() == []

    def test_wait_for_unknown_batch(self, lab: Lab) -> None:
        assert lab.dispatcher.wait("nope")
        assert not lab.dispatcher.cancel_batch("nope")

    def test_concurrency_is_bounded(
        self,
        tmp_path: Path,
        entries: list[JournalEntry],
        factory: TestFactory,
    ) -> None:
        with _open_lab(tmp_path, entries, factory, concurrency=2) as lab:
            handle = lab.dispatcher.start_batch({
                "athlete_id": 1,
                "providers": [f"counting:m{i}" for i in range(5)],
            })
            assert lab.dispatcher.wait(handle.batch_id, timeout=10.0)
            statuses = {lab.db.require_run(i).status for i in handle.run_ids}

        assert statuses == {ExperimentStatus.COMPLETED}
        assert 1 <= factory.peak <= 2


class TestCancelBatch:
    """Tests for cancelling a running batch."""

    def test_cancel_stops_unstarted_units(self, serial_lab: Lab, factory: TestFactory) -> None:
        handle = serial_lab.dispatcher.start_batch({
            "athlete_id": 1,
            "providers": "gated:hold,stub:echo,stub:echo",
        })
        assert factory.started.wait(5.0)

        assert serial_lab.dispatcher.cancel_batch(handle.batch_id)
        factory.release.set()
        assert serial_lab.dispatcher.wait(handle.batch_id, timeout=10.0)

        first, second, third = (serial_lab.db.require_run(i) for i in handle.run_ids)
        assert first.status is ExperimentStatus.FAILED
        assert first.error_message is not None
        assert first.error_message.startswith("Cancelled")
        assert second.error_message == CANCELLED_BEFORE_START
        assert third.error_message == CANCELLED_BEFORE_START

        channel = serial_lab.dispatcher.get_progress_channel(handle.batch_id)
        assert channel is not None
        events = channel.events()
        assert any(e.message == "Cancellation requested; waiting for in-flight calls" for e in events)
        cancelled = [e for e in events if e.data is not None and e.data.get("cancelled")]
        assert [e.run_id for e in cancelled] == handle.run_ids[1:]
        assert events[-1].data is not None
        assert events[-1].data["status"] == "failed"

        assert not serial_lab.dispatcher.cancel_batch(handle.batch_id)


class TestUnitFailures:
    """Tests for how one failing unit is reported and contained."""

    def test_provider_errors_say_whether_to_retry(
        self,
        tmp_path: Path,
        entries: list[JournalEntry],
        factory: TestFactory,
    ) -> None:
        with _open_lab(tmp_path, entries, factory, concurrency=2) as lab:
            handle = lab.dispatcher.start_batch({"athlete_id": 1, "providers": "flaky:m,stub:fail"})
            assert lab.dispatcher.wait(handle.batch_id, timeout=10.0)
            channel = lab.dispatcher.get_progress_channel(handle.batch_id)
            assert channel is not None
            errors = {
                e.provider: e.data
                for e in channel.events()
                if e.type is EventType.PROVIDER_ERROR and e.data is not None
            }

        assert errors["flaky"]["retryable"] is True
        assert errors["flaky"]["error"] == "flaky/m returned HTTP 429: slow down"
        assert errors["stub"]["retryable"] is False

    def test_hung_provider_does_not_time_out_siblings(
        self,
        tmp_path: Path,
        entries: list[JournalEntry],
        factory: TestFactory,
    ) -> None:
        try:
            with _open_lab(tmp_path, entries, factory, concurrency=1, call_timeout=0.2) as lab:
                handle = lab.dispatcher.start_batch({
                    "athlete_id": 1,
                    "providers": "hang:a,hang:b,hang:c,stub:echo",
                })
                assert lab.dispatcher.wait(handle.batch_id, timeout=10.0)
                runs = [lab.db.require_run(i) for i in handle.run_ids]
        finally:
            factory.release.set()

        assert [r.error_message for r in runs[:3]] == [
            f"hang/{model} did not answer within 0.2s" for model in ("a", "b", "c")
        ]
        assert runs[3].status is ExperimentStatus.COMPLETED


class TestSingleRuns:
    """Tests for queued single runs."""

    def test_start_run(self, lab: Lab) -> None:
        handle = lab.dispatcher.start_run({"athlete_id": 1, "provider": "stub", "model": "echo"})
        assert lab.dispatcher.wait_run(handle.run_id, timeout=10.0)

        channel = lab.dispatcher.get_run_channel(handle.run_id)
        assert channel is not None
        events = list(channel.subscribe(timeout=5.0))
        assert events[-1].type is EventType.COMPLETE
        assert lab.db.require_run(handle.run_id).status is ExperimentStatus.COMPLETED
        assert not lab.dispatcher.is_run_active(handle.run_id)

    def test_invalid_run_is_rejected(self, lab: Lab) -> None:
        with pytest.raises(ConfigurationError):
            lab.dispatcher.start_run({"athlete_id": 1, "provider": "stub"})
