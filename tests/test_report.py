# Copyright (c) Syntropy Systems
"""Tests for batch comparison and report rendering."""

import io
import json
from typing import Optional

import pytest
from rich.console import Console

from journalbench.comparison import ProviderResult, build_comparison, collect_batch
from journalbench.errors import NotFoundError
from journalbench.lab import Lab
from journalbench.models.enums import BatchStatus, ExperimentStatus, ExperimentType, NeedlePosition
from journalbench.report import Report, format_cost, format_duration, format_percent

NEEDLE = "sub-4 minute mile goal"


def _result(
    key: str,
    status: ExperimentStatus = ExperimentStatus.COMPLETED,
    cost: float = 0.0,
    duration: Optional[float] = 1.0,
    found: Optional[dict[str, bool]] = None,
) -> ProviderResult:
    provider, model = key.split("/")
    return ProviderResult(
        run_id=1,
        provider=provider,
        model=model,
        status=status,
        experiment_type=ExperimentType.POSITION if found is not None else ExperimentType.PERSONA,
        estimated_cost=cost,
        duration_seconds=duration,
        tokens_used=100,
        position_found=found or {},
    )


def _render(lab: Lab, report: Report) -> str:
    buffer = io.StringIO()
    lab.reports.render_console(report, Console(file=buffer, width=200))
    return buffer.getvalue()


class TestFormatting:
    """Tests for report formatting helpers."""

    @pytest.mark.parametrize(
        ("seconds", "expected"),
        [(None, "-"), (5, "5.0s"), (125, "2m 5s"), (3725, "1h 2m")],
    )
    def test_format_duration(self, seconds: Optional[float], expected: str) -> None:
        assert format_duration(seconds) == expected

    def test_format_cost(self) -> None:
        assert format_cost(0.0012) == "$0.001200"
        assert format_cost(1.5) == "$1.5000"
        assert format_cost(None) == "-"

    def test_format_percent(self) -> None:
        assert format_percent(0.5) == "50%"
        assert format_percent(None) == "-"


class TestBuildComparison:
    """Tests for cross-provider comparison."""

    def test_cheapest_and_fastest_ignore_failures(self) -> None:
        comparison = build_comparison([
            _result("a/x", cost=0.02, duration=3.0),
            _result("b/y", cost=0.01, duration=5.0),
            _result("c/z", status=ExperimentStatus.FAILED, cost=0.0, duration=0.1),
        ])

        assert comparison.cost_comparison.cheapest_provider == "b/y"
        assert comparison.cost_comparison.fastest_provider == "a/x"
        assert comparison.cost_summary.most_expensive_provider == "a/x"
        assert comparison.cost_summary.total_cost == 0.03
        assert comparison.cost_summary.total_tokens == 300
        assert comparison.position_comparison is None

    def test_no_completed_runs(self) -> None:
        comparison = build_comparison([_result("a/x", status=ExperimentStatus.FAILED)])
        assert comparison.cost_comparison.cheapest_provider is None
        assert comparison.cost_summary.cheapest_provider is None

    def test_position_rows(self) -> None:
        comparison = build_comparison([
            _result("a/x", found={"start": True, "middle": False, "end": True}),
            _result("b/y", found={"start": True, "middle": True, "end": True}),
        ])

        positions = comparison.position_comparison
        assert positions is not None
        assert positions.row(NeedlePosition.MIDDLE) == {"a/x": False, "b/y": True}
        assert positions.start_found == {"a/x": True, "b/y": True}

    def test_empty(self) -> None:
        comparison = build_comparison([])
        assert comparison.cost_summary.total_cost == 0.0
        assert comparison.cost_summary.average_cost_per_provider == 0.0


class TestCollectBatch:
    """Tests for reading a batch back from the store."""

    def test_unknown_batch(self, lab: Lab) -> None:
        with pytest.raises(NotFoundError, match="Batch nope not found"):
            collect_batch(lab.db, "nope")

    def test_partial(self, lab: Lab) -> None:
        lab.runner.run({"athlete_id": 1, "provider": "stub", "model": "echo"}, batch_id="b")
        lab.runner.run({"athlete_id": 1, "provider": "stub", "model": "fail"}, batch_id="b")

        results = collect_batch(lab.db, "b")

        assert results.status is BatchStatus.PARTIAL
        assert [r.key for r in results.completed] == ["stub/echo"]
        assert results.completed[0].supported_claim_count == 30
        assert [r.error_message for r in results.failed] == ["stub provider configured to fail"]


class TestReportGenerator:
    """Tests for building and rendering reports."""

    @pytest.fixture
    def position_batch(self, lab: Lab) -> str:
        for model in ("echo", "edges", "fail"):
            lab.runner.run(
                {
                    "athlete_id": 1,
                    "provider": "stub",
                    "model": model,
                    "experiment_type": "position",
                    "needle_fact": NEEDLE,
                },
                batch_id="pos",
            )
        return "pos"

    def test_batch_report(self, lab: Lab, position_batch: str) -> None:
        report = lab.reports.build_batch_report(position_batch)

        assert report.title == "Position experiment report"
        assert report.status is BatchStatus.PARTIAL
        assert not report.incomplete
        assert report.providers == ["stub/echo", "stub/edges", "stub/fail"]
        assert report.position_matrix["middle"] == {"stub/echo": True, "stub/edges": False}
        assert [f.provider for f in report.failed_providers] == ["stub/fail"]
        assert report.config["needle_fact"] == NEEDLE
        assert "stub/edges: U-CURVE CONFIRMED: Middle position showed retrieval failure." in report.conclusions

    def test_run_report(self, lab: Lab) -> None:
        result = lab.runner.run({"athlete_id": 1, "provider": "stub", "model": "echo"})
        report = lab.reports.build_run_report(result.run_id)

        assert report.batch_id == f"run-{result.run_id}"
        assert report.status is BatchStatus.COMPLETED
        assert [(g.persona, g.supported_count) for g in report.claim_groups] == [("lasso", 15), ("goggins", 15)]

    def test_report_over_run_ids(self, lab: Lab) -> None:
        first = lab.runner.run({"athlete_id": 1, "provider": "stub", "model": "echo"})
        second = lab.runner.run({"athlete_id": 1, "provider": "stub", "model": "silent"})

        report = lab.reports.build_report([second.run_id, first.run_id])

        assert report.batch_id == f"runs-{second.run_id}-{first.run_id}"
        assert report.providers == ["stub/silent", "stub/echo"]

    def test_unfinished_run_marks_report_incomplete(self, lab: Lab) -> None:
        run_id = lab.runner.create_run(lab.runner.prepare({"athlete_id": 1, "provider": "stub", "model": "echo"}))
        report = lab.reports.build_run_report(run_id)
        assert report.incomplete
        assert report.incomplete_runs == [run_id]

    def test_render_html(self, lab: Lab, position_batch: str) -> None:
        html = lab.reports.render_html(lab.reports.build_batch_report(position_batch))

        assert html.startswith("<!DOCTYPE html>")
        assert "Position experiment report" in html
        assert "Failed providers" in html
        assert "stub provider configured to fail" in html
        assert 'class="missed"' in html

    def test_render_json(self, lab: Lab, position_batch: str) -> None:
        data = json.loads(lab.reports.render_json(lab.reports.build_batch_report(position_batch)))

        assert data["batch_id"] == "pos"
        assert data["status"] == "partial"
        assert data["position_matrix"]["end"] == {"stub/echo": True, "stub/edges": True}

    def test_render_console(self, lab: Lab, position_batch: str) -> None:
        output = _render(lab, lab.reports.build_batch_report(position_batch))

        assert "Position experiment report" in output
        assert "Needle retrieval" in output
        assert "Cheapest:" in output
        assert "Fastest:" in output
        assert "stub/edges: U-CURVE CONFIRMED" in output

    def test_console_single_run_has_no_ranking(self, lab: Lab) -> None:
        result = lab.runner.run({"athlete_id": 1, "provider": "stub", "model": "echo"})
        output = _render(lab, lab.reports.build_run_report(result.run_id))

        assert "Cheapest:" not in output
        assert "Fastest:" not in output
