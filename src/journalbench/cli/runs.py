# Copyright (c) Syntropy Systems
"""journalbench runs, show and delete commands."""
from __future__ import annotations

from typing import Optional

import typer
from rich.table import Table

from journalbench.cli.common import console, fail, open_lab
from journalbench.errors import JournalbenchError
from journalbench.models.enums import ExperimentStatus, ExperimentType, NeedlePosition
from journalbench.position import describe_u_curve
from journalbench.report import format_cost, format_duration

STATUS_STYLES = {
    ExperimentStatus.PENDING: "dim",
    ExperimentStatus.RUNNING: "blue",
    ExperimentStatus.COMPLETED: "green",
    ExperimentStatus.FAILED: "red",
}


def runs(
    athlete: Optional[int] = typer.Option(None, "--athlete", "-a", help="Filter by athlete"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Filter by provider"),
    experiment_type: Optional[str] = typer.Option(None, "--type", "-t", help="Filter by experiment type"),
    status: Optional[str] = typer.Option(
        None,
        "--status", "-s",
        help="Filter by status (pending, running, completed, failed)",
    ),
    last: int = typer.Option(20, "--last", "-n", help="Number of runs to show"),
) -> None:
    """List experiment runs, newest first."""
    lab = open_lab()
    try:
        run_list = lab.db.list_runs(
            athlete_id=athlete,
            provider=provider,
            experiment_type=ExperimentType.parse(experiment_type) if experiment_type else None,
            status=ExperimentStatus.parse(status) if status else None,
            limit=last,
        )
    except JournalbenchError as e:
        fail(e)
    finally:
        lab.close()

    if not run_list:
        console.print("[dim]No runs found[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Provider", no_wrap=True)
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Entries", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Batch", style="dim")

    for run in run_list:
        style = STATUS_STYLES[run.status]
        table.add_row(
            str(run.id),
            run.pair_key,
            run.experiment_type.value,
            f"[{style}]{run.status.value}[/{style}]",
            str(run.entries_used),
            f"{run.tokens_used:,}",
            format_cost(run.estimated_cost),
            format_duration(run.duration_seconds),
            run.batch_id[:8] if run.batch_id else "-",
        )

    console.print(table)


def show(
    run_id: int = typer.Argument(..., help="Run ID to show details for"),
    receipts: bool = typer.Option(True, "--receipts/--no-receipts", help="Show claim receipts"),
) -> None:
    """Show a run with its claims and position results."""
    lab = open_lab()
    try:
        try:
            run = lab.db.require_run(run_id)
        except JournalbenchError as e:
            fail(e)
        claims = lab.db.get_claims(run_id)
        tests = lab.db.get_position_tests(run_id)
    finally:
        lab.close()

    style = STATUS_STYLES[run.status]
    console.print(f"\n[bold]Run {run.id}[/bold]  {run.pair_key}")
    console.print(f"  [dim]Status:[/dim]   [{style}]{run.status.value}[/{style}]")
    console.print(f"  [dim]Type:[/dim]     {run.experiment_type.value}")
    console.print(f"  [dim]Athlete:[/dim]  {run.athlete_id}")
    persona = run.persona + (f" vs {run.compare_persona}" if run.compare_persona else "")
    console.print(f"  [dim]Persona:[/dim]  {persona}")
    console.print(f"  [dim]Entries:[/dim]  {run.entries_used} ({run.entry_order.value})")
    console.print(
        f"  [dim]Tokens:[/dim]   {run.tokens_used:,} "
        f"({run.input_tokens:,} in / {run.output_tokens:,} out)"
    )
    console.print(f"  [dim]Cost:[/dim]     {format_cost(run.estimated_cost)}")
    console.print(f"  [dim]Duration:[/dim] {format_duration(run.duration_seconds)}")
    if run.batch_id:
        console.print(f"  [dim]Batch:[/dim]    {run.batch_id}")
    if run.needle_fact:
        console.print(f"  [dim]Needle:[/dim]   {run.needle_fact}")
    if run.error_message:
        console.print(f"  [dim]Error:[/dim]    [red]{run.error_message}[/red]")

    if tests:
        console.print("\n[bold]Position tests[/bold]")
        for test in tests:
            mark = "[green]✓ found[/green]" if test.fact_retrieved else "[red]✗ missed[/red]"
            console.print(f"  {test.position.value:<7} {mark}  [dim]{test.confidence:.2f}[/dim]")
            if test.response_snippet:
                console.print(f"          [dim]{test.response_snippet}[/dim]")
        if len(tests) == len(NeedlePosition):
            verdict = describe_u_curve({t.position: t.fact_retrieved for t in tests})
            console.print(f"\n  [bold]{verdict}[/bold]")

    if claims:
        supported = sum(1 for c in claims if c.is_supported)
        console.print(f"\n[bold]Claims[/bold] ({supported}/{len(claims)} supported)")
        for claim in claims:
            mark = "[green]✓[/green]" if claim.is_supported else "[red]✗[/red]"
            tag = f"[dim]{claim.persona or '-'}[/dim]"
            kind = f" [dim]({claim.claim_type})[/dim]" if claim.claim_type else ""
            console.print(f"  {mark} {tag} {claim.claim_text}{kind}")
            if receipts:
                for receipt in claim.receipts:
                    console.print(
                        f"      [dim]{receipt.entry_date} {receipt.field} "
                        f"{receipt.confidence:.2f}: \"{receipt.matched_snippet}\"[/dim]"
                    )


def delete(
    run_id: int = typer.Argument(..., help="Run ID to delete"),
    purge: bool = typer.Option(
        False,
        "--purge",
        help="Remove the run and its claims for good instead of hiding it",
    ),
) -> None:
    """Delete a finished run."""
    lab = open_lab()
    try:
        if purge:
            lab.db.purge_run(run_id)
        else:
            lab.db.soft_delete_run(run_id)
    except JournalbenchError as e:
        fail(e)
    finally:
        lab.close()

    action = "Purged" if purge else "Deleted"
    console.print(f"[green]{action} run {run_id}[/green]")
