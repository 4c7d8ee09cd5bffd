# Copyright (c) Syntropy Systems
"""Helpers shared by journalbench CLI commands."""
from __future__ import annotations

from typing import NoReturn

import typer
from rich.console import Console

from journalbench.config import get_db_path, load_config, require_project_dir
from journalbench.lab import Lab
from journalbench.models.enums import EventType
from journalbench.models.experiment import ProgressEvent

console = Console()

EVENT_STYLES = {
    EventType.BATCH_STARTED: "bold",
    EventType.PROVIDER_STARTED: "cyan",
    EventType.PROVIDER_COMPLETE: "green",
    EventType.PROVIDER_ERROR: "red",
    EventType.CLAIM: "magenta",
    EventType.POSITION: "magenta",
    EventType.COMPLETE: "bold green",
    EventType.ERROR: "bold red",
    EventType.BATCH_COMPLETE: "bold",
}


def fail(message: object) -> NoReturn:
    """Print an error and exit 1."""
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


def open_lab() -> Lab:
    """Open the Lab for the nearest .journalbench project."""
    try:
        project_dir = require_project_dir()
    except RuntimeError as e:
        fail(e)
    config = load_config(project_dir)
    return Lab.open(get_db_path(project_dir), config=config)


def format_event(event: ProgressEvent) -> str:
    """One console line for a progress event."""
    style = EVENT_STYLES.get(event.type, "dim")
    clock = event.timestamp[11:19]
    who = f"{event.provider}/{event.model} " if event.provider else ""
    return f"[dim]{clock}[/dim] [{style}]{who}{event.message}[/{style}]"
