# Copyright (c) Syntropy Systems
"""journalbench report command - comparison reports for runs and batches."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from journalbench.cli.common import console, fail, open_lab
from journalbench.errors import JournalbenchError

FORMATS = ("console", "html", "json")


def report(
    run_ids: Optional[list[int]] = typer.Option(
        None,
        "--run", "-r",
        help="Run ID (repeat to compare several runs)",
    ),
    batch_id: Optional[str] = typer.Option(None, "--batch", "-b", help="Batch ID"),
    fmt: str = typer.Option("console", "--format", "-f", help="console, html or json"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to a file"),
) -> None:
    """Build a comparison report.

    Examples:
        journalbench report --batch 3f2a... --format html -o report.html
        journalbench report -r 12 -r 13 -r 14

    """
    fmt = fmt.lower()
    if fmt not in FORMATS:
        fail(f"--format must be one of {', '.join(FORMATS)}")
    if bool(run_ids) == bool(batch_id):
        fail("Give either --run or --batch")
    if fmt == "console" and output is not None:
        fail("--output needs --format html or json")

    lab = open_lab()
    try:
        try:
            if batch_id:
                built = lab.reports.build_batch_report(batch_id)
            elif run_ids and len(run_ids) == 1:
                built = lab.reports.build_run_report(run_ids[0])
            else:
                built = lab.reports.build_report(list(run_ids or []))
        except JournalbenchError as e:
            fail(e)

        if fmt == "console":
            lab.reports.render_console(built, console)
            return
        text = lab.reports.render_html(built) if fmt == "html" else lab.reports.render_json(built)
    finally:
        lab.close()

    if output is None:
        console.print(text, markup=False, highlight=False, soft_wrap=True)
    else:
        _ = output.write_text(text)
        console.print(f"[green]Report written to {output}[/green]")
