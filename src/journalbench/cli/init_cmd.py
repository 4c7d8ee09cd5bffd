# Copyright (c) Syntropy Systems
"""journalbench init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from journalbench.config import PROJECT_DIR_NAME, LabConfig
from journalbench.db import Database
from journalbench.presets import seed_default_presets

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a new journalbench project.

    Creates a .journalbench directory with configuration and database, and
    seeds the default experiment presets.
    """
    target = path.resolve()
    project_dir = target / PROJECT_DIR_NAME

    if project_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {project_dir}")
        return

    project_dir.mkdir(parents=True)

    config_path = project_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(LabConfig().to_dict(), f, default_flow_style=False)

    db_path = project_dir / "journalbench.db"
    db = Database(db_path)
    try:
        db.init_schema()
        seeded = seed_default_presets(db)
    finally:
        db.close()

    console.print(f"[green]Initialized journalbench project:[/green] {project_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]database:[/dim] {db_path}")
    console.print(f"  [dim]presets:[/dim] {seeded} default presets")
