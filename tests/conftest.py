# Copyright (c) Syntropy Systems
"""Pytest fixtures for journalbench tests."""

import os
import tempfile
from collections.abc import Generator
from datetime import date
from pathlib import Path

import pytest

from journalbench.config import LabConfig
from journalbench.db import Database, init_db
from journalbench.journal import InMemoryJournal
from journalbench.lab import Lab
from journalbench.models.experiment import JournalEntry

# Store original cwd at module load time
_original_cwd = Path.cwd()

ATHLETE_ID = 1

# Five weekdays, Monday 2024-03-11 to Friday 2024-03-15. The text avoids
# every word of the "sub-4 minute mile goal" needle used by position tests.
ENTRY_TEXT = [
    (
        "Nervous before the regional race",
        "Ran intervals on the track and my legs felt heavy",
        "Worried about letting the coach down",
    ),
    (
        "Calm and rested",
        "Easy recovery run along the river with teammates",
        "Hard to switch off from schoolwork",
    ),
    (
        "Frustrated after practice",
        "Struggled with hill repeats in the cold rain",
        "Doubting my endurance on long climbs",
    ),
    (
        "Excited about the new spikes",
        "Tempo workout went smoothly and pacing stayed even",
        "Comparing myself to faster teammates",
    ),
    (
        "Tired but proud",
        "Completed the long run with the club on Friday",
        "Sleep has been short all week",
    ),
]


def make_entries(athlete_id: int = ATHLETE_ID) -> list[JournalEntry]:
    return [
        JournalEntry(
            id=i,
            athlete_id=athlete_id,
            entry_date=date(2024, 3, 10 + i),
            emotional_state=emotional,
            session_reflection=reflection,
            mental_barriers=barriers,
        )
        for i, (emotional, reflection, barriers) in enumerate(ENTRY_TEXT, start=1)
    ]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def journalbench_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary journalbench project directory."""
    project_dir = temp_dir / ".journalbench"
    project_dir.mkdir()

    # Initialize database
    init_db(project_dir / "journalbench.db")

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def entries() -> list[JournalEntry]:
    return make_entries()


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """An initialized store in a temporary file."""
    database = Database(tmp_path / "test.db")
    database.init_schema()
    yield database
    database.close()


@pytest.fixture
def lab_config() -> LabConfig:
    return LabConfig(max_concurrency=2, call_timeout=5.0)


@pytest.fixture
def lab(tmp_path: Path, entries: list[JournalEntry], lab_config: LabConfig) -> Generator[Lab, None, None]:
    """A Lab reading the sample journal, with stub providers available."""
    database = Database(tmp_path / "lab.db")
    database.init_schema()
    instance = Lab(database, config=lab_config, journal=InMemoryJournal(entries))
    yield instance
    instance.close()
