# Copyright (c) Syntropy Systems
"""journalbench run command - one experiment against one provider."""
from __future__ import annotations

from typing import Optional

import typer

from journalbench.cli.common import console, fail, format_event, open_lab
from journalbench.errors import JournalbenchError
from journalbench.models.base import JSONObject
from journalbench.models.enums import ExperimentStatus
from journalbench.models.experiment import ProviderModelPair


def experiment_options(
    athlete: int,
    experiment_type: str,
    persona: str,
    compare_persona: Optional[str],
    temperature: float,
    max_entries: Optional[int],
    order: str,
    needle: Optional[str],
) -> JSONObject:
    """Options shared by run and batch, minus unset values."""
    options: JSONObject = {
        "athlete_id": athlete,
        "experiment_type": experiment_type,
        "persona": persona,
        "temperature": temperature,
        "entry_order": order,
    }
    if compare_persona:
        options["compare_persona"] = compare_persona
    if max_entries is not None:
        options["max_entries"] = max_entries
    if needle:
        options["needle_fact"] = needle
    return options


def run(
    provider: str = typer.Option(
        ...,
        "--provider", "-p",
        help="provider:model pair, e.g. openai:gpt-4o-mini or stub:echo",
    ),
    athlete: int = typer.Option(..., "--athlete", "-a", help="Athlete ID"),
    experiment_type: str = typer.Option(
        "persona",
        "--type", "-t",
        help="Experiment type: position, persona or compression",
    ),
    persona: str = typer.Option("lasso", "--persona", help="Persona: goggins or lasso"),
    compare_persona: Optional[str] = typer.Option(
        None,
        "--compare-persona",
        help="Second persona for persona runs (default: the contrasting one)",
    ),
    temperature: float = typer.Option(0.7, "--temperature", help="Sampling temperature (0-2)"),
    max_entries: Optional[int] = typer.Option(None, "--max-entries", "-n", help="Most recent entries to use"),
    order: str = typer.Option("reverse", "--order", help="Entry order: reverse or chronological"),
    needle: Optional[str] = typer.Option(None, "--needle", help="Needle fact for position runs"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print the summary"),
) -> None:
    """Run one experiment and stream its progress.

    Examples:
        journalbench run -p stub:echo -a 1
        journalbench run -p openai:gpt-4o-mini -a 1 --type position

    """
    try:
        pair = ProviderModelPair.parse(provider)
    except JournalbenchError as e:
        fail(e)

    config = experiment_options(
        athlete, experiment_type, persona, compare_persona, temperature, max_entries, order, needle
    )
    config["provider"] = pair.provider
    config["model"] = pair.model

    lab = open_lab()
    try:
        try:
            handle = lab.dispatcher.start_run(config)
        except JournalbenchError as e:
            fail(e)

        console.print(f"[bold]Run {handle.run_id}[/bold] on {pair}")
        channel = lab.dispatcher.get_run_channel(handle.run_id)
        if channel is not None:
            for event in channel.subscribe():
                if not quiet:
                    console.print(format_event(event))
        _ = lab.dispatcher.wait_run(handle.run_id)

        record = lab.db.require_run(handle.run_id)
        lab.reports.render_console(lab.reports.build_run_report(handle.run_id), console)
    finally:
        lab.close()

    if record.status is ExperimentStatus.FAILED:
        console.print(f"[red]Run failed:[/red] {record.error_message}")
        raise typer.Exit(1)
