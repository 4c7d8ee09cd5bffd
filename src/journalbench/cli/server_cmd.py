# Copyright (c) Syntropy Systems
"""CLI command for running the journalbench API server."""

from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console

from journalbench.config import get_db_path, load_config, require_project_dir
from journalbench.server.app import create_app

console = Console()


def server(
    port: int = typer.Option(8080, "--port", "-p", help="Port to listen on"),
    host: str = typer.Option("127.0.0.1", "--host", "-h", help="Host to bind to"),
    db_path: Optional[Path] = typer.Option(
        None,
        "--db",
        envvar="JOURNALBENCH_DB",
        help="SQLite database (default: the project's .journalbench/journalbench.db)",
    ),
):
    """
    Start the journalbench HTTP API.

    Examples:

        # Serve the current project
        journalbench server

        # Bind to all interfaces (for remote access)
        journalbench server --host 0.0.0.0 --port 8080
    """
    project_dir = None
    if db_path is None:
        try:
            project_dir = require_project_dir()
        except RuntimeError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e
        db_path = get_db_path(project_dir)

    config = load_config(project_dir)

    console.print("[bold]journalbench server[/bold]")
    console.print(f"  Host: {host}")
    console.print(f"  Port: {port}")
    console.print(f"  Database: {db_path}")
    console.print(f"  Max concurrency: {config.max_concurrency}")
    if config.auto_run_on_startup:
        console.print(f"  Startup preset: {config.default_preset} (athlete {config.default_athlete_id})")
    if config.schedule:
        console.print(f"  Schedule: {config.schedule} UTC -> {config.scheduled_preset}")
    console.print()

    app = create_app(db_path, config=config)
    uvicorn.run(app, host=host, port=port, log_level="info")
