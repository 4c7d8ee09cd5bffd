# Copyright (c) Syntropy Systems
"""journalbench journal subcommands: import and list athlete entries."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.table import Table

from journalbench.cli.common import console, fail, open_lab
from journalbench.errors import JournalbenchError
from journalbench.journal import load_entries_file
from journalbench.prompts import truncate

journal_app = typer.Typer(
    name="journal",
    help="Manage the journal entries experiments read.",
    no_args_is_help=True,
)


@journal_app.command(name="import")
def import_entries(
    file: Path = typer.Argument(..., help="YAML or JSON file with a list of entries"),
    athlete: Optional[int] = typer.Option(
        None,
        "--athlete", "-a",
        help="Athlete ID for every entry (overrides the file)",
    ),
) -> None:
    """Import journal entries from a file.

    Each entry is a mapping with entry_date, emotional_state,
    session_reflection, mental_barriers and optionally athlete_id.
    """
    if not file.exists():
        fail(f"File not found: {file}")

    try:
        entries = load_entries_file(file, athlete_id=athlete)
    except JournalbenchError as e:
        fail(e)

    lab = open_lab()
    try:
        for entry in entries:
            _ = lab.db.add_journal_entry(
                entry.athlete_id,
                entry.entry_date,
                emotional_state=entry.emotional_state,
                session_reflection=entry.session_reflection,
                mental_barriers=entry.mental_barriers,
                is_flagged=entry.is_flagged,
            )
    finally:
        lab.close()

    athletes = sorted({e.athlete_id for e in entries})
    console.print(
        f"[green]Imported {len(entries)} entries[/green] "
        f"for athlete(s) {', '.join(str(a) for a in athletes) or '-'}"
    )


@journal_app.command(name="list")
def list_entries(
    athlete: int = typer.Option(..., "--athlete", "-a", help="Athlete ID"),
    last: int = typer.Option(20, "--last", "-n", help="Number of entries to show"),
) -> None:
    """List an athlete's journal entries, newest first."""
    lab = open_lab()
    try:
        entries = lab.db.get_entries(athlete)[:last]
    finally:
        lab.close()

    if not entries:
        console.print(f"[dim]No entries for athlete {athlete}[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Date")
    table.add_column("Emotional state")
    table.add_column("Session")
    table.add_column("Barriers")

    for entry in entries:
        flag = " [red]⚑[/red]" if entry.is_flagged else ""
        table.add_row(
            str(entry.id),
            f"{entry.entry_date.isoformat()}{flag}",
            truncate(entry.emotional_state, 40),
            truncate(entry.session_reflection, 40),
            truncate(entry.mental_barriers, 40),
        )

    console.print(table)
