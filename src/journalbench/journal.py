# Copyright (c) Syntropy Systems
"""Journal sources: where experiment runs read athlete entries from."""
from __future__ import annotations

import json
from datetime import date
from pathlib import Path
from typing import Protocol, cast

import yaml
from pydantic import ValidationError

from journalbench.errors import ConfigurationError
from journalbench.models.enums import EntryOrder
from journalbench.models.experiment import JournalEntry


class JournalSource(Protocol):
    """Read access to an athlete's journal."""

    def get_entries(self, athlete_id: int) -> list[JournalEntry]:
        ...


class InMemoryJournal:
    """Journal source backed by a list, for tests and scripted experiments."""

    def __init__(self, entries: list[JournalEntry] | None = None) -> None:
        self.entries = list(entries or [])

    def add(self, entry: JournalEntry) -> None:
        self.entries.append(entry)

    def get_entries(self, athlete_id: int) -> list[JournalEntry]:
        matching = [e for e in self.entries if e.athlete_id == athlete_id]
        return sorted(matching, key=lambda e: (e.entry_date, e.id), reverse=True)


def select_entries(
    entries: list[JournalEntry],
    order: EntryOrder,
    max_entries: int | None = None,
) -> list[JournalEntry]:
    """Order entries by date and keep at most max_entries.

    The cap always keeps the most recent entries; order only decides how the
    kept entries are presented.
    """
    newest_first = sorted(entries, key=lambda e: (e.entry_date, e.id), reverse=True)
    if max_entries is not None:
        newest_first = newest_first[:max_entries]
    if order is EntryOrder.CHRONOLOGICAL:
        return list(reversed(newest_first))
    return newest_first


def load_entries_file(path: Path, athlete_id: int | None = None) -> list[JournalEntry]:
    """Load entries from a YAML or JSON file holding a list of mappings.

    Missing ids are numbered from 1 in file order. ``athlete_id`` overrides
    whatever the file says.
    """
    text = path.read_text()
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot parse {path}: {e}") from e

    if isinstance(data, dict) and "entries" in data:
        data = cast("dict[str, object]", data)["entries"]
    if not isinstance(data, list):
        raise ConfigurationError(f"{path} must contain a list of journal entries")

    entries: list[JournalEntry] = []
    for index, raw in enumerate(cast("list[object]", data), start=1):
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Entry #{index} in {path} is not a mapping")
        item = dict(cast("dict[str, object]", raw))
        item.setdefault("id", index)
        item.setdefault("entry_date", date.today().isoformat())
        if athlete_id is not None:
            item["athlete_id"] = athlete_id
        try:
            entries.append(JournalEntry.model_validate(item))
        except ValidationError as e:
            raise ConfigurationError(f"Entry #{index} in {path}: {e.errors()[0]['msg']}") from e
    return entries
