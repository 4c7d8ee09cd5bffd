# Copyright (c) Syntropy Systems
"""SQLite store for runs, claims, receipts, position tests, presets and journal entries."""
from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional

from journalbench.errors import (
    ConfigurationError,
    NotFoundError,
    PersistenceError,
    RunStateError,
)
from journalbench.models.db import (
    ClaimRecord,
    JournalEntryRecord,
    PositionTestRecord,
    PresetRecord,
    ReceiptRecord,
    RunRecord,
)
from journalbench.models.enums import ExperimentStatus, ExperimentType
from journalbench.models.experiment import (
    ExperimentConfig,
    ExtractedClaim,
    JournalEntry,
    PositionOutcome,
)

# SQL schema for the journalbench database
SCHEMA = """
-- Experiment runs (one provider+model, one experiment type)
CREATE TABLE IF NOT EXISTS experiment_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_id TEXT,                 -- correlation id shared by sibling runs
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    temperature REAL NOT NULL,
    prompt_version TEXT NOT NULL,
    athlete_id INTEGER NOT NULL,
    persona TEXT NOT NULL,
    compare_persona TEXT,
    experiment_type TEXT NOT NULL,  -- position, persona, compression
    entries_used INTEGER DEFAULT 0,
    entry_order TEXT DEFAULT 'reverse',
    max_entries INTEGER,
    needle_fact TEXT,
    status TEXT DEFAULT 'pending',  -- pending, running, completed, failed

    -- Timestamps
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,

    -- Usage
    input_tokens INTEGER DEFAULT 0,
    output_tokens INTEGER DEFAULT 0,
    tokens_used INTEGER DEFAULT 0,
    estimated_cost REAL DEFAULT 0,

    error_message TEXT,
    is_deleted INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS experiment_claims (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER NOT NULL REFERENCES experiment_runs(id) ON DELETE CASCADE,
    claim_text TEXT NOT NULL,
    is_supported INTEGER NOT NULL,
    persona TEXT,
    claim_type TEXT,
    referenced_date TEXT,
    confidence REAL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS claim_receipts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    claim_id INTEGER NOT NULL REFERENCES experiment_claims(id) ON DELETE CASCADE,
    journal_entry_id INTEGER NOT NULL,
    matched_snippet TEXT,
    entry_date TEXT NOT NULL,
    field TEXT,
    confidence REAL DEFAULT 0,
    rank INTEGER DEFAULT 0          -- 0 is the primary receipt
);

CREATE TABLE IF NOT EXISTS position_tests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER NOT NULL REFERENCES experiment_runs(id) ON DELETE CASCADE,
    position TEXT NOT NULL,         -- start, middle, end
    needle_fact TEXT NOT NULL,
    fact_retrieved INTEGER NOT NULL,
    response_snippet TEXT,
    confidence REAL DEFAULT 0,
    UNIQUE (run_id, position)
);

CREATE TABLE IF NOT EXISTS experiment_presets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT,
    config TEXT NOT NULL,           -- JSON, see models/preset.py
    is_default INTEGER DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS journal_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    athlete_id INTEGER NOT NULL,
    entry_date TEXT NOT NULL,
    emotional_state TEXT,
    session_reflection TEXT,
    mental_barriers TEXT,
    is_flagged INTEGER DEFAULT 0,
    created_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_runs_batch ON experiment_runs(batch_id);
CREATE INDEX IF NOT EXISTS idx_runs_status ON experiment_runs(status);
CREATE INDEX IF NOT EXISTS idx_claims_run ON experiment_claims(run_id);
CREATE INDEX IF NOT EXISTS idx_receipts_claim ON claim_receipts(claim_id);
CREATE INDEX IF NOT EXISTS idx_position_run ON position_tests(run_id);
CREATE INDEX IF NOT EXISTS idx_journal_athlete ON journal_entries(athlete_id, entry_date);
"""

_ACTIVE = (ExperimentStatus.PENDING.value, ExperimentStatus.RUNNING.value)


def get_connection(db_path: Path | str) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode for concurrent readers/writers
    - busy_timeout to wait for locks instead of failing immediately
    - foreign keys on, so deleting a run cascades to its rows
    - Row factory for dict-like access
    - check_same_thread=False; callers serialize access with Database's lock
    """
    conn = sqlite3.connect(
        str(db_path),
        timeout=5.0,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def utcnow() -> str:
    """Get current UTC time as ISO format string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class Database:
    """Thread-safe access to the journalbench SQLite database.

    One connection is shared by every thread; an RLock serializes statements
    so the run-id sequence and the preset table stay consistent under
    concurrent runs. Every sqlite3 error surfaces as PersistenceError.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        try:
            self.conn = get_connection(db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {db_path}: {e}") from e

    def init_schema(self) -> None:
        with self._lock:
            try:
                self.conn.executescript(SCHEMA)
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot initialize schema: {e}") from e

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise PersistenceError(str(e)) from e
            try:
                yield self.conn
                self.conn.execute("COMMIT")
            except sqlite3.Error as e:
                self.conn.execute("ROLLBACK")
                raise PersistenceError(str(e)) from e
            except Exception:
                self.conn.execute("ROLLBACK")
                raise

    def _execute(self, query: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                return self.conn.execute(query, params)
            except sqlite3.Error as e:
                raise PersistenceError(str(e)) from e

    def _fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._execute(query, params).fetchone()

    def _fetchall(self, query: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._execute(query, params).fetchall()

    # --- Run Operations ---

    def create_run(self, config: ExperimentConfig, batch_id: Optional[str] = None) -> int:
        """Create a pending run and return its ID."""
        return self.create_runs([config], batch_id=batch_id)[0]

    def create_runs(
        self,
        configs: Sequence[ExperimentConfig],
        batch_id: Optional[str] = None,
    ) -> list[int]:
        """Create pending runs in one transaction, returning IDs in order."""
        now = utcnow()
        run_ids: list[int] = []
        with self._transaction() as conn:
            for config in configs:
                cursor = conn.execute(
                    """
                    INSERT INTO experiment_runs (
                        batch_id, provider, model, temperature, prompt_version,
                        athlete_id, persona, compare_persona, experiment_type,
                        entry_order, max_entries, needle_fact, status, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        batch_id,
                        config.provider,
                        config.model,
                        config.temperature,
                        config.prompt_version,
                        config.athlete_id,
                        config.persona.value,
                        config.compare_persona.value if config.compare_persona else None,
                        config.experiment_type.value,
                        config.entry_order.value,
                        config.max_entries,
                        config.needle_fact,
                        ExperimentStatus.PENDING.value,
                        now,
                    ),
                )
                run_ids.append(int(cursor.lastrowid or 0))
        return run_ids

    def mark_run_running(self, run_id: int, entries_used: int) -> None:
        """Move a pending run to running."""
        cursor = self._execute(
            """
            UPDATE experiment_runs
            SET status = 'running', started_at = ?, entries_used = ?
            WHERE id = ? AND status = 'pending'
            """,
            (utcnow(), entries_used, run_id),
        )
        if cursor.rowcount == 0:
            run = self.require_run(run_id)
            msg = f"Run {run_id} is {run.status.value}, expected pending"
            raise RunStateError(msg)

    def update_run_usage(
        self,
        run_id: int,
        input_tokens: int,
        output_tokens: int,
        estimated_cost: float,
    ) -> None:
        """Record accumulated token usage and cost on a running run."""
        self._execute(
            """
            UPDATE experiment_runs
            SET input_tokens = ?, output_tokens = ?, tokens_used = ?, estimated_cost = ?
            WHERE id = ? AND status = 'running'
            """,
            (input_tokens, output_tokens, input_tokens + output_tokens, estimated_cost, run_id),
        )

    def finish_run(
        self,
        run_id: int,
        status: ExperimentStatus,
        error_message: Optional[str] = None,
    ) -> bool:
        """Move an active run to a terminal status.

        Returns False if the run had already reached a terminal status.
        """
        if not status.is_terminal:
            msg = f"{status.value} is not a terminal status"
            raise RunStateError(msg)
        cursor = self._execute(
            """
            UPDATE experiment_runs
            SET status = ?, completed_at = ?, error_message = ?
            WHERE id = ? AND status IN (?, ?)
            """,
            (status.value, utcnow(), error_message, run_id, *_ACTIVE),
        )
        return cursor.rowcount > 0

    def get_run(self, run_id: int) -> Optional[RunRecord]:
        """Get a run by ID."""
        row = self._fetchone("SELECT * FROM experiment_runs WHERE id = ?", (run_id,))
        if row is None:
            return None
        return RunRecord.model_validate(dict(row))

    def require_run(self, run_id: int) -> RunRecord:
        run = self.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        return run

    def list_runs(
        self,
        athlete_id: Optional[int] = None,
        provider: Optional[str] = None,
        experiment_type: Optional[ExperimentType] = None,
        status: Optional[ExperimentStatus] = None,
        include_deleted: bool = False,
        limit: int = 50,
    ) -> list[RunRecord]:
        """Get runs with optional filtering, newest first."""
        query = "SELECT * FROM experiment_runs WHERE 1=1"
        params: list[Any] = []

        if not include_deleted:
            query += " AND is_deleted = 0"
        if athlete_id is not None:
            query += " AND athlete_id = ?"
            params.append(athlete_id)
        if provider:
            query += " AND provider = ?"
            params.append(provider.lower())
        if experiment_type is not None:
            query += " AND experiment_type = ?"
            params.append(experiment_type.value)
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)

        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        return [RunRecord.model_validate(dict(row)) for row in self._fetchall(query, params)]

    def get_batch_runs(self, batch_id: str) -> list[RunRecord]:
        """Get a batch's member runs in creation order."""
        rows = self._fetchall(
            "SELECT * FROM experiment_runs WHERE batch_id = ? ORDER BY id",
            (batch_id,),
        )
        return [RunRecord.model_validate(dict(row)) for row in rows]

    def soft_delete_run(self, run_id: int) -> None:
        """Hide a finished run from listings."""
        run = self.require_run(run_id)
        if not run.status.is_terminal:
            msg = f"Cannot delete run {run_id} while it is {run.status.value}"
            raise RunStateError(msg)
        self._execute("UPDATE experiment_runs SET is_deleted = 1 WHERE id = ?", (run_id,))

    def purge_run(self, run_id: int) -> None:
        """Delete a finished run and, by cascade, its claims, receipts and tests."""
        run = self.require_run(run_id)
        if not run.status.is_terminal:
            msg = f"Cannot delete run {run_id} while it is {run.status.value}"
            raise RunStateError(msg)
        with self._transaction() as conn:
            conn.execute("DELETE FROM experiment_runs WHERE id = ?", (run_id,))

    def run_stats(self) -> dict[str, Any]:
        """Aggregate counts and totals over non-deleted runs."""
        by_status = {s.value: 0 for s in ExperimentStatus}
        by_type = {t.value: 0 for t in ExperimentType}
        for row in self._fetchall(
            """
            SELECT status, experiment_type, COUNT(*) AS n
            FROM experiment_runs WHERE is_deleted = 0
            GROUP BY status, experiment_type
            """
        ):
            by_status[row["status"]] = by_status.get(row["status"], 0) + row["n"]
            by_type[row["experiment_type"]] = by_type.get(row["experiment_type"], 0) + row["n"]

        totals = self._fetchone(
            """
            SELECT COUNT(*) AS runs,
                   COALESCE(SUM(tokens_used), 0) AS tokens,
                   COALESCE(SUM(estimated_cost), 0) AS cost
            FROM experiment_runs WHERE is_deleted = 0
            """
        )
        claims = self._fetchone(
            """
            SELECT COUNT(*) AS total, COALESCE(SUM(c.is_supported), 0) AS supported
            FROM experiment_claims c
            JOIN experiment_runs r ON r.id = c.run_id
            WHERE r.is_deleted = 0
            """
        )
        return {
            "total_runs": totals["runs"] if totals else 0,
            "total_tokens": totals["tokens"] if totals else 0,
            "total_cost": round(totals["cost"], 6) if totals else 0.0,
            "runs_by_status": by_status,
            "runs_by_type": by_type,
            "total_claims": claims["total"] if claims else 0,
            "supported_claims": claims["supported"] if claims else 0,
        }

    # --- Claim Operations ---

    def add_claims(
        self,
        run_id: int,
        claims: Sequence[ExtractedClaim],
        persona: Optional[str] = None,
    ) -> list[int]:
        """Persist claims and their receipts atomically."""
        claim_ids: list[int] = []
        with self._transaction() as conn:
            for claim in claims:
                cursor = conn.execute(
                    """
                    INSERT INTO experiment_claims (
                        run_id, claim_text, is_supported, persona,
                        claim_type, referenced_date, confidence
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        claim.text,
                        int(claim.is_supported),
                        persona if persona is not None else claim.persona,
                        claim.claim_type,
                        claim.referenced_date.isoformat() if claim.referenced_date else None,
                        claim.confidence,
                    ),
                )
                claim_id = int(cursor.lastrowid or 0)
                claim_ids.append(claim_id)
                for rank, receipt in enumerate(claim.receipts):
                    conn.execute(
                        """
                        INSERT INTO claim_receipts (
                            claim_id, journal_entry_id, matched_snippet,
                            entry_date, field, confidence, rank
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            claim_id,
                            receipt.journal_entry_id,
                            receipt.snippet,
                            receipt.entry_date.isoformat(),
                            receipt.field,
                            receipt.confidence,
                            rank,
                        ),
                    )
        return claim_ids

    def get_claims(self, run_id: int) -> list[ClaimRecord]:
        """Get a run's claims in insertion order, receipts attached."""
        claim_rows = self._fetchall(
            "SELECT * FROM experiment_claims WHERE run_id = ? ORDER BY id",
            (run_id,),
        )
        receipt_rows = self._fetchall(
            """
            SELECT cr.* FROM claim_receipts cr
            JOIN experiment_claims c ON c.id = cr.claim_id
            WHERE c.run_id = ?
            ORDER BY cr.claim_id, cr.rank
            """,
            (run_id,),
        )
        receipts: dict[int, list[ReceiptRecord]] = {}
        for row in receipt_rows:
            record = ReceiptRecord.model_validate(dict(row))
            receipts.setdefault(record.claim_id, []).append(record)

        return [
            ClaimRecord.model_validate({**dict(row), "receipts": receipts.get(row["id"], [])})
            for row in claim_rows
        ]

    # --- Position Test Operations ---

    def add_position_test(self, run_id: int, outcome: PositionOutcome) -> int:
        """Persist one position outcome."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO position_tests (
                    run_id, position, needle_fact, fact_retrieved,
                    response_snippet, confidence
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    outcome.position.value,
                    outcome.needle_fact,
                    int(outcome.found),
                    outcome.snippet,
                    outcome.confidence,
                ),
            )
            return int(cursor.lastrowid or 0)

    def get_position_tests(self, run_id: int) -> list[PositionTestRecord]:
        rows = self._fetchall(
            """
            SELECT * FROM position_tests WHERE run_id = ?
            ORDER BY CASE position WHEN 'start' THEN 0 WHEN 'middle' THEN 1 ELSE 2 END
            """,
            (run_id,),
        )
        return [PositionTestRecord.model_validate(dict(row)) for row in rows]

    # --- Preset Operations ---

    def create_preset(
        self,
        name: str,
        config_json: str,
        description: Optional[str] = None,
        is_default: bool = False,
    ) -> PresetRecord:
        """Create a preset. Names are unique."""
        name = name.strip()
        if not name:
            raise ConfigurationError("Preset name must not be empty")
        with self._transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM experiment_presets WHERE name = ?", (name,)
            ).fetchone()
            if exists:
                raise ConfigurationError(f"Preset '{name}' already exists")
            conn.execute(
                """
                INSERT INTO experiment_presets (name, description, config, is_default, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (name, description, config_json, int(is_default), utcnow()),
            )
        return self.require_preset(name)

    def get_preset(self, name: str) -> Optional[PresetRecord]:
        row = self._fetchone("SELECT * FROM experiment_presets WHERE name = ?", (name,))
        if row is None:
            return None
        return PresetRecord.model_validate(dict(row))

    def require_preset(self, name: str) -> PresetRecord:
        preset = self.get_preset(name)
        if preset is None:
            raise NotFoundError(f"Preset '{name}' not found")
        return preset

    def list_presets(self) -> list[PresetRecord]:
        """Default presets first, then by name."""
        rows = self._fetchall(
            "SELECT * FROM experiment_presets ORDER BY is_default DESC, name"
        )
        return [PresetRecord.model_validate(dict(row)) for row in rows]

    def delete_preset(self, name: str) -> None:
        preset = self.require_preset(name)
        if preset.is_default:
            raise ConfigurationError(f"Preset '{name}' is a default preset and cannot be deleted")
        self._execute("DELETE FROM experiment_presets WHERE id = ?", (preset.id,))

    # --- Journal Operations ---

    def add_journal_entry(
        self,
        athlete_id: int,
        entry_date: date,
        emotional_state: str = "",
        session_reflection: str = "",
        mental_barriers: str = "",
        is_flagged: bool = False,
    ) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO journal_entries (
                    athlete_id, entry_date, emotional_state, session_reflection,
                    mental_barriers, is_flagged, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    athlete_id,
                    entry_date.isoformat(),
                    emotional_state,
                    session_reflection,
                    mental_barriers,
                    int(is_flagged),
                    utcnow(),
                ),
            )
            return int(cursor.lastrowid or 0)

    def get_entries(self, athlete_id: int) -> list[JournalEntry]:
        """Journal entries for an athlete, newest first."""
        rows = self._fetchall(
            """
            SELECT * FROM journal_entries WHERE athlete_id = ?
            ORDER BY entry_date DESC, id DESC
            """,
            (athlete_id,),
        )
        return [JournalEntryRecord.model_validate(dict(row)) for row in rows]
