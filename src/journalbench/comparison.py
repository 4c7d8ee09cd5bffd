# Copyright (c) Syntropy Systems
"""Cross-provider aggregation of runs that share a batch id.

Read-only: everything here is derived from persisted runs.
"""
from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Optional

from pydantic import Field

from journalbench.errors import NotFoundError
from journalbench.models.base import LabBaseModel
from journalbench.models.enums import (
    BatchStatus,
    ExperimentStatus,
    ExperimentType,
    NeedlePosition,
    batch_status,
)

if TYPE_CHECKING:
    from journalbench.db import Database
    from journalbench.models.db import RunRecord


class ProviderResult(LabBaseModel):
    """One member run of a batch, flattened for comparison."""

    run_id: int
    provider: str
    model: str
    status: ExperimentStatus
    experiment_type: ExperimentType
    entries_used: int = 0
    tokens_used: int = 0
    estimated_cost: float = 0.0
    duration_seconds: Optional[float] = None
    claim_count: int = 0
    supported_claim_count: int = 0
    position_found: dict[str, bool] = Field(default_factory=dict)
    error_message: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.provider}/{self.model}"


class PositionComparison(LabBaseModel):
    """Found/not-found per needle position, keyed by provider/model."""

    start_found: dict[str, bool] = Field(default_factory=dict)
    middle_found: dict[str, bool] = Field(default_factory=dict)
    end_found: dict[str, bool] = Field(default_factory=dict)

    def row(self, position: NeedlePosition) -> dict[str, bool]:
        return {
            NeedlePosition.START: self.start_found,
            NeedlePosition.MIDDLE: self.middle_found,
            NeedlePosition.END: self.end_found,
        }[position]


class CostComparison(LabBaseModel):
    cost_by_provider: dict[str, float] = Field(default_factory=dict)
    duration_by_provider: dict[str, Optional[float]] = Field(default_factory=dict)
    tokens_by_provider: dict[str, int] = Field(default_factory=dict)
    cheapest_provider: Optional[str] = None
    fastest_provider: Optional[str] = None


class CostSummary(LabBaseModel):
    total_cost: float = 0.0
    total_tokens: int = 0
    average_cost_per_provider: float = 0.0
    average_tokens_per_provider: float = 0.0
    cheapest_provider: Optional[str] = None
    cheapest_cost: Optional[float] = None
    most_expensive_provider: Optional[str] = None
    most_expensive_cost: Optional[float] = None


class BatchComparison(LabBaseModel):
    position_comparison: Optional[PositionComparison] = None
    cost_comparison: CostComparison = Field(default_factory=CostComparison)
    cost_summary: CostSummary = Field(default_factory=CostSummary)


class BatchResults(LabBaseModel):
    """Per-provider results of a batch plus the cross-provider comparison."""

    batch_id: str
    status: BatchStatus
    experiment_type: ExperimentType
    results: list[ProviderResult]
    comparison: BatchComparison

    @property
    def run_ids(self) -> list[int]:
        return [r.run_id for r in self.results]

    @property
    def failed(self) -> list[ProviderResult]:
        return [r for r in self.results if r.status is ExperimentStatus.FAILED]

    @property
    def completed(self) -> list[ProviderResult]:
        return [r for r in self.results if r.status is ExperimentStatus.COMPLETED]


def provider_result(db: Database, run: RunRecord) -> ProviderResult:
    claims = db.get_claims(run.id)
    tests = db.get_position_tests(run.id)
    return ProviderResult(
        run_id=run.id,
        provider=run.provider,
        model=run.model,
        status=run.status,
        experiment_type=run.experiment_type,
        entries_used=run.entries_used,
        tokens_used=run.tokens_used,
        estimated_cost=run.estimated_cost,
        duration_seconds=run.duration_seconds,
        claim_count=len(claims),
        supported_claim_count=sum(1 for c in claims if c.is_supported),
        position_found={t.position.value: t.fact_retrieved for t in tests},
        error_message=run.error_message,
    )


def build_comparison(results: Sequence[ProviderResult]) -> BatchComparison:
    """Cost, speed and (for position runs) retrieval across providers.

    Cheapest and fastest only consider completed runs; a failed run's zero
    cost is not a saving.
    """
    completed = [r for r in results if r.status is ExperimentStatus.COMPLETED]

    cost = CostComparison(
        cost_by_provider={r.key: r.estimated_cost for r in results},
        duration_by_provider={r.key: r.duration_seconds for r in results},
        tokens_by_provider={r.key: r.tokens_used for r in results},
    )
    if completed:
        cost.cheapest_provider = min(completed, key=lambda r: r.estimated_cost).key
        timed = [r for r in completed if r.duration_seconds is not None]
        if timed:
            cost.fastest_provider = min(timed, key=lambda r: r.duration_seconds or 0.0).key

    positions = None
    if any(r.experiment_type is ExperimentType.POSITION for r in results):
        positions = PositionComparison()
        for r in results:
            if r.experiment_type is not ExperimentType.POSITION or not r.position_found:
                continue
            for position in NeedlePosition:
                if position.value in r.position_found:
                    positions.row(position)[r.key] = r.position_found[position.value]

    summary = CostSummary(
        total_cost=round(sum(r.estimated_cost for r in results), 6),
        total_tokens=sum(r.tokens_used for r in results),
    )
    if results:
        summary.average_cost_per_provider = round(summary.total_cost / len(results), 6)
        summary.average_tokens_per_provider = round(summary.total_tokens / len(results), 1)
    if completed:
        cheapest = min(completed, key=lambda r: r.estimated_cost)
        priciest = max(completed, key=lambda r: r.estimated_cost)
        summary.cheapest_provider = cheapest.key
        summary.cheapest_cost = cheapest.estimated_cost
        summary.most_expensive_provider = priciest.key
        summary.most_expensive_cost = priciest.estimated_cost

    return BatchComparison(position_comparison=positions, cost_comparison=cost, cost_summary=summary)


def collect_runs(db: Database, runs: Sequence[RunRecord], batch_id: str) -> BatchResults:
    if not runs:
        raise NotFoundError(f"Batch {batch_id} not found")
    results = [provider_result(db, run) for run in runs]
    return BatchResults(
        batch_id=batch_id,
        status=batch_status([r.status for r in results]),
        experiment_type=runs[0].experiment_type,
        results=results,
        comparison=build_comparison(results),
    )


def collect_batch(db: Database, batch_id: str) -> BatchResults:
    """Results and comparison for every run in a batch."""
    return collect_runs(db, db.get_batch_runs(batch_id), batch_id)
