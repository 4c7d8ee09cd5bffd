# Copyright (c) Syntropy Systems
"""journalbench batch command - one experiment across many providers."""
from __future__ import annotations

import signal
from pathlib import Path
from types import FrameType
from typing import Optional

import typer

from journalbench.batch import BatchHandle
from journalbench.cli.common import console, fail, format_event, open_lab
from journalbench.cli.run import experiment_options
from journalbench.errors import JournalbenchError
from journalbench.lab import Lab
from journalbench.models.enums import BatchStatus


def _write_report(lab: Lab, batch_id: str, output: Path) -> None:
    report = lab.reports.build_batch_report(batch_id)
    if output.suffix.lower() == ".json":
        _ = output.write_text(lab.reports.render_json(report))
    else:
        _ = output.write_text(lab.reports.render_html(report))
    console.print(f"[green]Report written to {output}[/green]")


def batch(
    athlete: int = typer.Option(..., "--athlete", "-a", help="Athlete ID"),
    providers: Optional[str] = typer.Option(
        None,
        "--providers", "-p",
        help="Comma-separated provider:model pairs",
    ),
    preset: Optional[str] = typer.Option(
        None,
        "--preset",
        help="Start from a preset with a provider sweep instead of --providers",
    ),
    experiment_type: str = typer.Option(
        "persona",
        "--type", "-t",
        help="Experiment type: position, persona or compression",
    ),
    persona: str = typer.Option("lasso", "--persona", help="Persona: goggins or lasso"),
    compare_persona: Optional[str] = typer.Option(None, "--compare-persona", help="Second persona"),
    temperature: float = typer.Option(0.7, "--temperature", help="Sampling temperature (0-2)"),
    max_entries: Optional[int] = typer.Option(None, "--max-entries", "-n", help="Most recent entries to use"),
    order: str = typer.Option("reverse", "--order", help="Entry order: reverse or chronological"),
    needle: Optional[str] = typer.Option(None, "--needle", help="Needle fact for position runs"),
    output: Optional[Path] = typer.Option(
        None,
        "--output", "-o",
        help="Write a report when done (.html or .json)",
    ),
) -> None:
    """Run one experiment across several providers concurrently.

    Ctrl-C cancels gracefully: queued providers are skipped and in-flight
    calls finish.

    Examples:
        journalbench batch -a 1 -p stub:echo,stub:edges --type position
        journalbench batch -a 1 --preset "Full Provider Sweep" -o sweep.html

    """
    if bool(providers) == bool(preset):
        fail("Give exactly one of --providers or --preset")

    lab = open_lab()
    try:
        try:
            if preset:
                handle = lab.apply_preset(preset, athlete)
                if not isinstance(handle, BatchHandle):
                    fail(f"Preset '{preset}' has no provider sweep; use 'journalbench run'")
            else:
                request = experiment_options(
                    athlete, experiment_type, persona, compare_persona,
                    temperature, max_entries, order, needle,
                )
                request["providers"] = providers
                handle = lab.dispatcher.start_batch(request)
        except JournalbenchError as e:
            fail(e)

        console.print(
            f"[bold]Batch {handle.batch_id[:12]}[/bold] "
            f"({len(handle.run_ids)} runs: {', '.join(str(r) for r in handle.run_ids)})"
        )

        def _cancel(signum: int, frame: Optional[FrameType]) -> None:
            if lab.dispatcher.cancel_batch(handle.batch_id):
                console.print("[yellow]Cancelling; waiting for in-flight calls...[/yellow]")

        previous = signal.signal(signal.SIGINT, _cancel)
        try:
            channel = lab.dispatcher.get_progress_channel(handle.batch_id)
            if channel is not None:
                for event in channel.subscribe():
                    console.print(format_event(event))
            _ = lab.dispatcher.wait(handle.batch_id)
        finally:
            _ = signal.signal(signal.SIGINT, previous)

        report = lab.reports.build_batch_report(handle.batch_id)
        lab.reports.render_console(report, console)
        if output is not None:
            _write_report(lab, handle.batch_id, output)
    finally:
        lab.close()

    if report.status is BatchStatus.FAILED:
        raise typer.Exit(1)
