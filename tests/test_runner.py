# Copyright (c) Syntropy Systems
"""Tests for the experiment runner."""

import threading
import time
from pathlib import Path

import pytest

from journalbench.config import LabConfig
from journalbench.db import Database
from journalbench.errors import ConfigurationError
from journalbench.journal import InMemoryJournal
from journalbench.lab import Lab
from journalbench.models.enums import EventType, ExperimentStatus, NeedlePosition
from journalbench.models.experiment import Completion, JournalEntry
from journalbench.progress import ProgressChannel
from journalbench.providers import ChatMessage, ChatProvider, ProviderFactory, StubProvider

NEEDLE = "sub-4 minute mile goal"


class SlowProvider:
    """Answers after ``delay`` seconds."""

    def __init__(self, model: str, delay: float) -> None:
        self.name = "slow"
        self.model = model
        self.delay = delay

    def complete(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        temperature: float,
        timeout: float,
    ) -> Completion:
        time.sleep(self.delay)
        return Completion(text=StubProvider.OPENING, input_tokens=10, output_tokens=5)

    def close(self) -> None:
        pass


class SlowFactory(ProviderFactory):
    def __init__(self, delay: float) -> None:
        super().__init__(environ={})
        self.delay = delay

    def create(self, provider: str, model: str) -> ChatProvider:
        if provider == "slow":
            return SlowProvider(model, self.delay)
        return super().create(provider, model)


class HangingFactory(ProviderFactory):
    """``hang`` models block until released; other ``mixed`` models answer at once."""

    def __init__(self, release: threading.Event) -> None:
        super().__init__(environ={})
        self.release = release

    def create(self, provider: str, model: str) -> ChatProvider:
        if provider == "mixed":
            return _MixedProvider(model, self.release)
        return super().create(provider, model)


class _MixedProvider(SlowProvider):
    def __init__(self, model: str, release: threading.Event) -> None:
        super().__init__(model, 0.0)
        self.name = "mixed"
        self.release = release

    def complete(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        temperature: float,
        timeout: float,
    ) -> Completion:
        if self.model == "hang":
            self.release.wait(10.0)
        return super().complete(system_prompt, messages, temperature, timeout)


def _config(**overrides: object) -> dict[str, object]:
    data: dict[str, object] = {"athlete_id": 1, "provider": "stub", "model": "echo"}
    data.update(overrides)
    return data


class TestPersonaRuns:
    """Tests for persona experiments."""

    def test_empty_journal_completes_without_claims(self, lab: Lab) -> None:
        result = lab.runner.run(_config(athlete_id=42))

        assert result.status is ExperimentStatus.COMPLETED
        assert result.entries_analyzed == 0
        assert result.claims == []
        assert result.input_tokens > 0
        run = lab.db.require_run(result.run_id)
        assert run.status is ExperimentStatus.COMPLETED
        assert run.entries_used == 0

    def test_echo_claims_are_supported(self, lab: Lab) -> None:
        result = lab.runner.run(_config())

        assert result.status is ExperimentStatus.COMPLETED
        assert result.entries_analyzed == 5
        # Three fields per entry, two personas
        assert len(result.claims) == 30
        assert result.supported_claim_count == 30
        assert all(c.confidence == 1.0 for c in result.claims)
        assert {c.persona for c in result.claims} == {"lasso", "goggins"}

        stored = lab.db.get_claims(result.run_id)
        assert len(stored) == 30
        assert all(c.receipts for c in stored)
        run = lab.db.require_run(result.run_id)
        assert run.tokens_used == result.tokens_used
        assert run.estimated_cost == 0.0

    def test_silent_provider_has_no_claims(self, lab: Lab) -> None:
        result = lab.runner.run(_config(model="silent"))
        assert result.status is ExperimentStatus.COMPLETED
        assert result.claims == []

    def test_max_entries(self, lab: Lab) -> None:
        result = lab.runner.run(_config(max_entries=2))

        assert result.entries_analyzed == 2
        entry_ids = {r.journal_entry_id for c in result.claims for r in c.receipts[:1]}
        assert entry_ids == {4, 5}


class TestPositionRuns:
    """Tests for needle-position experiments."""

    def test_u_curve(self, lab: Lab) -> None:
        result = lab.runner.run(_config(model="edges", experiment_type="position", needle_fact=NEEDLE))

        found = {p.position: p.found for p in result.position_results}
        assert found == {
            NeedlePosition.START: True,
            NeedlePosition.MIDDLE: False,
            NeedlePosition.END: True,
        }
        assert result.conclusion == "U-CURVE CONFIRMED: Middle position showed retrieval failure."
        assert result.claims == []

        tests = lab.db.get_position_tests(result.run_id)
        assert [t.fact_retrieved for t in tests] == [True, False, True]
        assert NEEDLE in tests[0].response_snippet

    def test_echo_finds_every_position(self, lab: Lab) -> None:
        result = lab.runner.run(_config(experiment_type="position", needle_fact=NEEDLE))
        assert all(p.found for p in result.position_results)
        assert result.conclusion is not None
        assert result.conclusion.startswith("No position effect detected")

    def test_default_needle(self, lab: Lab) -> None:
        result = lab.runner.run(_config(experiment_type="position"))

        run = lab.db.require_run(result.run_id)
        assert run.needle_fact == lab.config.default_needle_fact
        assert all(p.needle_fact == lab.config.default_needle_fact for p in result.position_results)


class TestCompressionRuns:
    """Tests for compression experiments."""

    def test_three_variants(self, lab: Lab) -> None:
        result = lab.runner.run(_config(experiment_type="compression", persona="goggins"))

        assert result.status is ExperimentStatus.COMPLETED
        assert {c.persona for c in result.claims} == {
            "goggins/full",
            "goggins/compressed",
            "goggins/limited",
        }
        assert result.conclusion is not None
        assert result.conclusion.startswith("Token comparison: full=")


class TestFailures:
    """Tests for runs that cannot complete."""

    def test_invalid_config_creates_no_run(self, lab: Lab) -> None:
        with pytest.raises(ConfigurationError):
            lab.runner.run(_config(experiment_type="vibes"))
        assert lab.db.list_runs() == []

    def test_provider_failure(self, lab: Lab) -> None:
        result = lab.runner.run(_config(model="fail"))

        assert result.status is ExperimentStatus.FAILED
        assert result.error_message == "stub provider configured to fail"
        run = lab.db.require_run(result.run_id)
        assert run.status is ExperimentStatus.FAILED
        assert run.error_message == "stub provider configured to fail"

    def test_missing_api_key(self, tmp_path: Path, entries: list[JournalEntry]) -> None:
        db = Database(tmp_path / "keys.db")
        db.init_schema()
        with Lab(db, providers=ProviderFactory(environ={}), journal=InMemoryJournal(entries)) as lab:
            result = lab.runner.run(_config(provider="openai", model="gpt-4o-mini"))

        assert result.status is ExperimentStatus.FAILED
        assert result.error_message is not None
        assert "No API key" in result.error_message

    def test_timeout(self, tmp_path: Path, entries: list[JournalEntry]) -> None:
        db = Database(tmp_path / "slow.db")
        db.init_schema()
        config = LabConfig(call_timeout=0.05)
        with Lab(db, config=config, providers=SlowFactory(0.5), journal=InMemoryJournal(entries)) as lab:
            result = lab.runner.run(_config(provider="slow", model="m"))

        assert result.status is ExperimentStatus.FAILED
        assert result.error_message == "slow/m did not answer within 0.05s"

    def test_hung_calls_do_not_starve_later_runs(self, tmp_path: Path, entries: list[JournalEntry]) -> None:
        db = Database(tmp_path / "hang.db")
        db.init_schema()
        config = LabConfig(max_concurrency=1, call_timeout=0.2)
        release = threading.Event()
        try:
            with Lab(db, config=config, providers=HangingFactory(release), journal=InMemoryJournal(entries)) as lab:
                hung = [lab.runner.run(_config(provider="mixed", model="hang")) for _ in range(3)]
                fast = lab.runner.run(_config(provider="mixed", model="fast"))
        finally:
            release.set()

        assert [r.error_message for r in hung] == ["mixed/hang did not answer within 0.2s"] * 3
        assert all(r.retryable for r in hung)
        assert fast.status is ExperimentStatus.COMPLETED

    def test_cancelled_before_first_call(self, lab: Lab) -> None:
        cancel = threading.Event()
        cancel.set()
        result = lab.runner.run(_config(), cancel_event=cancel)

        assert result.status is ExperimentStatus.FAILED
        assert result.error_message is not None
        assert result.error_message.startswith("Cancelled")
        assert lab.db.get_claims(result.run_id) == []

    def test_cancel_pending(self, lab: Lab) -> None:
        run_id = lab.runner.create_run(lab.runner.prepare(_config()))
        assert lab.runner.cancel_pending(run_id, "Cancelled before start")
        assert not lab.runner.cancel_pending(run_id, "again")
        assert lab.db.require_run(run_id).error_message == "Cancelled before start"


class TestEvents:
    """Tests for events published while running."""

    def test_event_sequence(self, lab: Lab) -> None:
        channel = ProgressChannel("run:test")
        result = lab.runner.run(_config(), channel=channel)
        events = channel.events()

        assert events[0].type is EventType.PROGRESS
        assert events[0].message == "Starting persona experiment on stub/echo"
        assert events[1].message == "Loaded 5 journal entries"
        assert [e.message for e in events if e.type is EventType.CLAIM] == [
            "lasso: 15/15 claims supported",
            "goggins: 15/15 claims supported",
        ]
        assert events[-1].type is EventType.COMPLETE
        assert events[-1].data is not None
        assert events[-1].data["supported_claims"] == 30
        assert all(e.run_id == result.run_id for e in events)
        assert [e.sequence for e in events] == list(range(len(events)))

    def test_failure_ends_with_error(self, lab: Lab) -> None:
        channel = ProgressChannel("run:test")
        lab.runner.run(_config(model="fail"), channel=channel)
        last = channel.events()[-1]

        assert last.type is EventType.ERROR
        assert last.message == "stub provider configured to fail"
        assert last.data is not None
        assert last.data["retryable"] is False

    def test_no_terminal_events_when_disabled(self, lab: Lab) -> None:
        channel = ProgressChannel("batch:test")
        lab.runner.run(
            _config(experiment_type="position", needle_fact=NEEDLE),
            channel=channel,
            batch_id="b",
            terminal_events=False,
        )
        types = [e.type for e in channel.events()]

        assert EventType.COMPLETE not in types
        assert types.count(EventType.POSITION) == 3
        assert all(e.batch_id == "b" for e in channel.events())
