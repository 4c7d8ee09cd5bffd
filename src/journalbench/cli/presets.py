# Copyright (c) Syntropy Systems
"""journalbench presets subcommands."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional, cast

import typer
import yaml
from rich.table import Table

from journalbench.cli.common import console, fail, open_lab
from journalbench.errors import JournalbenchError
from journalbench.models.base import JSONObject
from journalbench.models.preset import decode_preset_config, encode_preset_config

presets_app = typer.Typer(
    name="presets",
    help="Manage reusable experiment presets.",
    no_args_is_help=True,
)


@presets_app.command(name="list")
def list_presets() -> None:
    """List presets, defaults first."""
    lab = open_lab()
    try:
        presets = lab.db.list_presets()
    finally:
        lab.close()

    if not presets:
        console.print("[dim]No presets[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Providers")
    table.add_column("Description")
    table.add_column("", style="dim")

    for preset in presets:
        config = decode_preset_config(preset.config, preset_name=preset.name)
        if config.is_sweep:
            providers = ", ".join(str(p) for p in config.provider_sweep)
        else:
            providers = f"{config.provider or '-'}:{config.model or '-'}"
        table.add_row(
            preset.name,
            config.experiment_type.value,
            providers,
            preset.description or "-",
            "default" if preset.is_default else "",
        )

    console.print(table)


@presets_app.command()
def show(name: str = typer.Argument(..., help="Preset name")) -> None:
    """Show one preset's decoded configuration."""
    lab = open_lab()
    try:
        try:
            preset = lab.db.require_preset(name)
        except JournalbenchError as e:
            fail(e)
    finally:
        lab.close()

    config = decode_preset_config(preset.config, preset_name=preset.name)
    console.print(f"\n[bold]{preset.name}[/bold]" + (" [dim](default)[/dim]" if preset.is_default else ""))
    if preset.description:
        console.print(f"  {preset.description}")
    for key, value in config.model_dump(mode="json").items():
        if key == "provider_sweep":
            value = ", ".join(f"{p['provider']}:{p['model']}" for p in value) or "-"
        console.print(f"  [dim]{key}:[/dim] {value if value is not None else '-'}")


def _load_config_file(path: Path) -> JSONObject:
    text = path.read_text()
    try:
        data = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        fail(f"Cannot parse {path}: {e}")
    if not isinstance(data, dict):
        fail(f"{path} must contain a mapping")
    return cast("JSONObject", data)


@presets_app.command()
def add(
    name: str = typer.Argument(..., help="Preset name (unique)"),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Description"),
    config_file: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="YAML or JSON file with the preset config",
    ),
    experiment_type: Optional[str] = typer.Option(None, "--type", "-t", help="Experiment type"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="provider:model for single runs"),
    sweep: Optional[str] = typer.Option(None, "--sweep", help="Comma-separated provider:model pairs"),
    persona: Optional[str] = typer.Option(None, "--persona", help="Persona"),
    compare_persona: Optional[str] = typer.Option(None, "--compare-persona", help="Second persona"),
    temperature: Optional[float] = typer.Option(None, "--temperature", help="Sampling temperature"),
    max_entries: Optional[int] = typer.Option(None, "--max-entries", "-n", help="Most recent entries to use"),
    order: Optional[str] = typer.Option(None, "--order", help="Entry order"),
    needle: Optional[str] = typer.Option(None, "--needle", help="Needle fact"),
) -> None:
    """Create a preset from a config file and/or options.

    Options override values from the file.
    """
    config: JSONObject = _load_config_file(config_file) if config_file else {}
    options: JSONObject = {
        "experiment_type": experiment_type,
        "persona": persona,
        "compare_persona": compare_persona,
        "temperature": temperature,
        "max_entries": max_entries,
        "entry_order": order,
        "needle_fact": needle,
    }
    config.update({k: v for k, v in options.items() if v is not None})
    if provider:
        head, sep, tail = provider.partition(":")
        if not sep:
            fail(f"Malformed provider:model pair {provider!r}")
        config["provider"], config["model"] = head, tail
    if sweep:
        config["provider_sweep"] = [p.strip() for p in sweep.split(",") if p.strip()]

    lab = open_lab()
    try:
        _ = lab.db.create_preset(name, encode_preset_config(config), description=description)
    except JournalbenchError as e:
        fail(e)
    finally:
        lab.close()

    console.print(f"[green]Created preset:[/green] {name}")


@presets_app.command()
def delete(name: str = typer.Argument(..., help="Preset name")) -> None:
    """Delete a preset. Default presets cannot be deleted."""
    lab = open_lab()
    try:
        lab.db.delete_preset(name)
    except JournalbenchError as e:
        fail(e)
    finally:
        lab.close()

    console.print(f"[green]Deleted preset:[/green] {name}")
