# Copyright (c) Syntropy Systems
"""Main CLI entry point for journalbench."""

import logging

import typer
from rich.logging import RichHandler

from journalbench.cli.batch import batch
from journalbench.cli.init_cmd import init
from journalbench.cli.journal import journal_app
from journalbench.cli.presets import presets_app
from journalbench.cli.report import report
from journalbench.cli.run import run
from journalbench.cli.runs import delete, runs, show
from journalbench.cli.server_cmd import server

app = typer.Typer(
    name="journalbench",
    help=(
        "LLM journal-summary experiments. Dispatch prompts to many providers, "
        "check every claim against the journal."
    ),
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=verbose, show_path=verbose)],
        force=True,
    )


# Register commands
_ = app.command()(init)
_ = app.command()(run)
_ = app.command()(batch)
_ = app.command()(runs)
_ = app.command()(show)
_ = app.command()(delete)
_ = app.command()(report)
_ = app.command()(server)

# Register sub-apps
app.add_typer(journal_app, name="journal")
app.add_typer(presets_app, name="presets")


if __name__ == "__main__":
    app()
