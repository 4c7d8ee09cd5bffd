# Copyright (c) Syntropy Systems
"""Comparison reports over persisted runs, rendered as HTML, JSON or rich tables."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from pydantic import Field
from rich.console import Console
from rich.table import Table

import journalbench
from journalbench.comparison import (
    BatchComparison,
    ProviderResult,
    collect_runs,
)
from journalbench.models.base import JSONValue, LabBaseModel
from journalbench.models.db import ClaimRecord
from journalbench.models.enums import (
    BatchStatus,
    ExperimentStatus,
    ExperimentType,
    NeedlePosition,
)
from journalbench.position import describe_u_curve

if TYPE_CHECKING:
    from journalbench.db import Database
    from journalbench.models.db import RunRecord

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"
REPORT_TEMPLATE = "report.html.j2"

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 60 * SECONDS_PER_MINUTE


class FailedProvider(LabBaseModel):
    run_id: int
    provider: str
    error_message: str = ""


class ClaimGroup(LabBaseModel):
    """Claims one provider produced under one persona tag."""

    provider: str
    persona: str
    claims: list[ClaimRecord] = Field(default_factory=list)

    @property
    def supported_count(self) -> int:
        return sum(1 for c in self.claims if c.is_supported)


class Report(LabBaseModel):
    """Everything a rendered comparison report shows."""

    batch_id: str
    title: str
    generated_at: str
    status: BatchStatus
    experiment_type: ExperimentType
    incomplete: bool = False
    incomplete_runs: list[int] = Field(default_factory=list)
    config: dict[str, JSONValue] = Field(default_factory=dict)
    results: list[ProviderResult] = Field(default_factory=list)
    failed_providers: list[FailedProvider] = Field(default_factory=list)
    # position -> provider/model -> found
    position_matrix: dict[str, dict[str, bool]] = Field(default_factory=dict)
    claim_groups: list[ClaimGroup] = Field(default_factory=list)
    comparison: BatchComparison = Field(default_factory=BatchComparison)
    conclusions: list[str] = Field(default_factory=list)

    @property
    def providers(self) -> list[str]:
        return [r.key for r in self.results]


def format_duration(seconds: Optional[float]) -> str:
    """Format seconds to a short human readable duration."""
    if seconds is None:
        return "-"
    if seconds < SECONDS_PER_MINUTE:
        return f"{seconds:.1f}s"
    if seconds < SECONDS_PER_HOUR:
        return f"{int(seconds // SECONDS_PER_MINUTE)}m {int(seconds % SECONDS_PER_MINUTE)}s"
    hours = int(seconds // SECONDS_PER_HOUR)
    return f"{hours}h {int((seconds % SECONDS_PER_HOUR) // SECONDS_PER_MINUTE)}m"


def format_cost(cost: Optional[float]) -> str:
    if cost is None:
        return "-"
    return f"${cost:.6f}" if cost < 0.01 else f"${cost:.4f}"


def format_percent(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return f"{value * 100:.0f}%"


def _run_config(run: RunRecord) -> dict[str, JSONValue]:
    config: dict[str, JSONValue] = {
        "athlete_id": run.athlete_id,
        "experiment_type": run.experiment_type.value,
        "persona": run.persona,
        "temperature": run.temperature,
        "entry_order": run.entry_order.value,
        "max_entries": run.max_entries,
        "prompt_version": run.prompt_version,
    }
    if run.compare_persona:
        config["compare_persona"] = run.compare_persona
    if run.needle_fact:
        config["needle_fact"] = run.needle_fact
    return config


class ReportGenerator:
    """Builds reports from the store. Never writes."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self._env = Environment(
            loader=FileSystemLoader(str(TEMPLATES_DIR)),
            autoescape=select_autoescape(enabled_extensions=("html", "j2")),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._env.filters["format_duration"] = format_duration
        self._env.filters["format_cost"] = format_cost
        self._env.filters["format_percent"] = format_percent
        self._env.globals["version"] = journalbench.__version__

    # --- Building ---

    def build_run_report(self, run_id: int) -> Report:
        run = self.db.require_run(run_id)
        return self._build([run], run.batch_id or f"run-{run.id}")

    def build_batch_report(self, batch_id: str) -> Report:
        return self._build(self.db.get_batch_runs(batch_id), batch_id)

    def build_report(self, run_ids: list[int]) -> Report:
        """Report over an arbitrary set of runs, in the given order."""
        runs = [self.db.require_run(run_id) for run_id in run_ids]
        batch_id = "runs-" + "-".join(str(run_id) for run_id in run_ids[:3])
        return self._build(runs, batch_id)

    def _build(self, runs: list[RunRecord], batch_id: str) -> Report:
        results = collect_runs(self.db, runs, batch_id)
        first = runs[0]

        incomplete = [r.run_id for r in results.results if not r.status.is_terminal]
        failed = [
            FailedProvider(run_id=r.run_id, provider=r.key, error_message=r.error_message or "")
            for r in results.failed
        ]

        matrix: dict[str, dict[str, bool]] = {}
        conclusions: list[str] = []
        positions = results.comparison.position_comparison
        if positions is not None:
            for position in NeedlePosition:
                row = positions.row(position)
                if row:
                    matrix[position.value] = dict(row)
            for result in results.results:
                if len(result.position_found) == len(NeedlePosition):
                    found = {NeedlePosition(k): v for k, v in result.position_found.items()}
                    conclusions.append(f"{result.key}: {describe_u_curve(found)}")

        groups: list[ClaimGroup] = []
        for result in results.results:
            by_persona: dict[str, list[ClaimRecord]] = {}
            for claim in self.db.get_claims(result.run_id):
                by_persona.setdefault(claim.persona or "default", []).append(claim)
            groups.extend(
                ClaimGroup(provider=result.key, persona=persona, claims=claims)
                for persona, claims in by_persona.items()
            )

        title = f"{results.experiment_type.value.title()} experiment report"
        return Report(
            batch_id=batch_id,
            title=title,
            generated_at=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
            status=results.status,
            experiment_type=results.experiment_type,
            incomplete=bool(incomplete),
            incomplete_runs=incomplete,
            config=_run_config(first),
            results=results.results,
            failed_providers=failed,
            position_matrix=matrix,
            claim_groups=groups,
            comparison=results.comparison,
            conclusions=conclusions,
        )

    # --- Rendering ---

    def render_html(self, report: Report) -> str:
        template = self._env.get_template(REPORT_TEMPLATE)
        costs = [r.estimated_cost for r in report.results]
        return template.render(
            report=report,
            positions=[p.value for p in NeedlePosition],
            max_cost=max(costs) if costs else 0.0,
        )

    def render_json(self, report: Report) -> str:
        return report.model_dump_json(indent=2)

    def render_console(self, report: Report, console: Optional[Console] = None) -> None:
        """Print the report as rich tables, best values highlighted in green."""
        console = console or Console()
        status_style = {
            BatchStatus.COMPLETED: "green",
            BatchStatus.PARTIAL: "yellow",
            BatchStatus.FAILED: "red",
            BatchStatus.RUNNING: "cyan",
        }[report.status]
        console.print(f"\n[bold]{report.title}[/bold]  [dim]{report.batch_id}[/dim]")
        console.print(f"Status: [{status_style}]{report.status.value}[/{status_style}]")
        if report.incomplete:
            runs = ", ".join(str(r) for r in report.incomplete_runs)
            console.print(f"[yellow]Incomplete: runs {runs} are still in progress[/yellow]")

        table = Table(show_header=True, header_style="bold")
        table.add_column("Provider", style="cyan")
        table.add_column("Status")
        table.add_column("Entries", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Cost", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Claims", justify="right")

        completed = [r for r in report.results if r.status is ExperimentStatus.COMPLETED]
        best_cost = min((r.estimated_cost for r in completed), default=None)
        best_duration = min(
            (r.duration_seconds for r in completed if r.duration_seconds is not None),
            default=None,
        )
        best_supported = max((r.supported_claim_count for r in completed), default=None)
        multiple = len(completed) >= 2

        for r in report.results:
            is_done = r.status is ExperimentStatus.COMPLETED
            cost = format_cost(r.estimated_cost)
            duration = format_duration(r.duration_seconds)
            claims = f"{r.supported_claim_count}/{r.claim_count}"
            if multiple and is_done:
                if r.estimated_cost == best_cost:
                    cost = f"[green]{cost}[/green]"
                if r.duration_seconds is not None and r.duration_seconds == best_duration:
                    duration = f"[green]{duration}[/green]"
                if r.claim_count and r.supported_claim_count == best_supported:
                    claims = f"[green]{claims}[/green]"
            status = r.status.value if is_done else f"[red]{r.status.value}[/red]"
            table.add_row(
                r.key, status, str(r.entries_used), f"{r.tokens_used:,}", cost, duration, claims
            )
        console.print(table)

        if report.position_matrix:
            console.print("\n[bold]Needle retrieval[/bold]")
            grid = Table(show_header=True, header_style="bold")
            grid.add_column("Position", style="dim")
            for provider in report.providers:
                grid.add_column(provider, justify="center")
            for position, row in report.position_matrix.items():
                cells = []
                for provider in report.providers:
                    if provider not in row:
                        cells.append("-")
                    else:
                        cells.append("[green]✓[/green]" if row[provider] else "[red]✗[/red]")
                grid.add_row(position, *cells)
            console.print(grid)

        if report.failed_providers:
            console.print("\n[bold]Failed providers[/bold]")
            for failed in report.failed_providers:
                console.print(f"  [red]{failed.provider}[/red] (run {failed.run_id}): {failed.error_message}")

        summary = report.comparison.cost_summary
        console.print(
            f"\nTotal: {format_cost(summary.total_cost)} across {summary.total_tokens:,} tokens"
        )
        if summary.cheapest_provider and multiple:
            console.print(
                f"Cheapest: [green]{summary.cheapest_provider}[/green] "
                f"({format_cost(summary.cheapest_cost)})"
            )
        fastest = report.comparison.cost_comparison.fastest_provider
        if fastest and multiple:
            console.print(f"Fastest: [green]{fastest}[/green]")

        for conclusion in report.conclusions:
            console.print(f"[bold]{conclusion}[/bold]")
