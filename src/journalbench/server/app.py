# Copyright (c) Syntropy Systems
"""FastAPI application for the journalbench experiment API."""

import logging
from collections.abc import Iterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response, StreamingResponse

import journalbench
from journalbench.batch import BatchHandle
from journalbench.comparison import BatchResults, collect_batch
from journalbench.config import LabConfig
from journalbench.errors import (
    ConfigurationError,
    NotFoundError,
    PersistenceError,
    RunStateError,
)
from journalbench.journal import JournalSource
from journalbench.lab import Lab
from journalbench.models.api import (
    BatchRunRequest,
    BatchStartedResponse,
    CancelResponse,
    HealthResponse,
    MessageResponse,
    PresetApply,
    PresetApplyResponse,
    PresetCreate,
    PresetListResponse,
    PresetResponse,
    RunDetailResponse,
    RunListResponse,
    RunRequest,
    RunStartedResponse,
    RunSummary,
    StatsResponse,
)
from journalbench.models.db import ClaimRecord, RunRecord
from journalbench.models.enums import (
    BatchStatus,
    EventType,
    ExperimentStatus,
    ExperimentType,
    NeedlePosition,
)
from journalbench.models.experiment import ProgressEvent
from journalbench.models.preset import encode_preset_config
from journalbench.position import describe_u_curve
from journalbench.progress import ProgressChannel
from journalbench.providers import ProviderFactory
from journalbench.report import Report
from journalbench.scheduler import ExperimentScheduler

logger = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
REPORT_FORMATS = ("html", "json")


def get_lab(request: Request) -> Lab:
    """Get the Lab the app was created with."""
    lab: Optional[Lab] = getattr(request.app.state, "lab", None)
    if lab is None:
        raise RuntimeError("Lab not initialized")
    return lab


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the FastAPI app."""
    scheduler: Optional[ExperimentScheduler] = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.start()

    yield

    # Shutdown
    if scheduler is not None:
        scheduler.stop()
    lab: Optional[Lab] = getattr(app.state, "lab", None)
    if lab is not None:
        lab.close()


def _event_stream(channel: ProgressChannel) -> Iterator[str]:
    """Relay a channel as SSE frames until a terminal event or close."""
    for event in channel.subscribe():
        yield event.to_sse()
        if event.type.is_terminal:
            return


def _single_event(event: ProgressEvent) -> Iterator[str]:
    yield event.to_sse()


def _sse(frames: Iterator[str]) -> StreamingResponse:
    return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)


def _run_status_event(run: RunRecord) -> ProgressEvent:
    """Stand-in event for a run whose channel is gone or never existed."""
    common = {
        "run_id": run.id,
        "batch_id": run.batch_id,
        "provider": run.provider,
        "model": run.model,
    }
    if run.status is ExperimentStatus.COMPLETED:
        return ProgressEvent(
            type=EventType.COMPLETE,
            message=f"Run {run.id} completed",
            data={"status": run.status.value, "tokens": run.tokens_used, "cost": run.estimated_cost},
            **common,
        )
    if run.status is ExperimentStatus.FAILED:
        return ProgressEvent(
            type=EventType.ERROR,
            message=run.error_message or f"Run {run.id} failed",
            data={"status": run.status.value},
            **common,
        )
    return ProgressEvent(
        type=EventType.PROGRESS,
        message="waiting",
        data={"status": run.status.value},
        **common,
    )


def _batch_status_event(results: BatchResults) -> ProgressEvent:
    if results.status is BatchStatus.RUNNING:
        return ProgressEvent(
            type=EventType.PROGRESS,
            message="waiting",
            batch_id=results.batch_id,
            data={"status": results.status.value},
        )
    return ProgressEvent(
        type=EventType.BATCH_COMPLETE,
        message=f"Batch {results.status.value}",
        batch_id=results.batch_id,
        data={
            "status": results.status.value,
            "results": [r.model_dump(mode="json") for r in results.results],
            "comparison": results.comparison.model_dump(mode="json"),
        },
    )


def create_app(
    db_path: Path | str,
    config: Optional[LabConfig] = None,
    providers: Optional[ProviderFactory] = None,
    journal: Optional[JournalSource] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        db_path: SQLite database path; created and seeded if missing
        config: Lab configuration (defaults when omitted)
        providers: Provider factory, e.g. one with a mock transport in tests
        journal: Journal source; the store's journal table when omitted

    Returns:
        Configured FastAPI application

    """
    lab = Lab.open(db_path, config=config, providers=providers, journal=journal)

    app = FastAPI(
        title="journalbench",
        description="LLM journal-summary experiment API",
        version=journalbench.__version__,
        lifespan=lifespan,
    )
    app.state.lab = lab
    app.state.scheduler = ExperimentScheduler(lab)

    # --- Error mapping ---

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def configuration_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": f"invalid configuration: {exc}"})

    @app.exception_handler(RunStateError)
    async def run_state_handler(request: Request, exc: RunStateError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def persistence_handler(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("Storage error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": str(exc), "retryable": True})

    # --- Experiment Endpoints ---

    @app.post("/api/v1/experiments/run", status_code=202, response_model=RunStartedResponse)
    def start_run(request: RunRequest, lab: Lab = Depends(get_lab)):
        """Start a single experiment run in the background."""
        handle = lab.dispatcher.start_run(request.model_dump(exclude_none=True))
        return RunStartedResponse(run_id=handle.run_id)

    @app.post("/api/v1/experiments/batch", status_code=202, response_model=BatchStartedResponse)
    def start_batch(request: BatchRunRequest, lab: Lab = Depends(get_lab)):
        """Start one run per provider:model pair."""
        handle = lab.dispatcher.start_batch(request.model_dump(exclude_none=True))
        return BatchStartedResponse(batch_id=handle.batch_id, run_ids=handle.run_ids)

    @app.get("/api/v1/experiments/runs", response_model=RunListResponse)
    def list_runs(
        athlete_id: Optional[int] = Query(None),
        provider: Optional[str] = Query(None),
        experiment_type: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        limit: int = Query(50, ge=1, le=500),
        lab: Lab = Depends(get_lab),
    ):
        """List runs with optional filtering, newest first."""
        runs = lab.db.list_runs(
            athlete_id=athlete_id,
            provider=provider,
            experiment_type=ExperimentType.parse(experiment_type) if experiment_type else None,
            status=ExperimentStatus.parse(status) if status else None,
            limit=limit,
        )
        return RunListResponse(runs=[RunSummary.from_record(r) for r in runs], count=len(runs))

    @app.get("/api/v1/experiments/runs/{run_id}", response_model=RunDetailResponse)
    def get_run(run_id: int, lab: Lab = Depends(get_lab)):
        """Get a run with its claims, receipts and position results."""
        run = lab.db.require_run(run_id)
        claims = lab.db.get_claims(run_id)
        by_persona: dict[str, list[ClaimRecord]] = {}
        for claim in claims:
            by_persona.setdefault(claim.persona or "default", []).append(claim)
        tests = lab.db.get_position_tests(run_id)
        conclusion = None
        if len(tests) == len(NeedlePosition):
            conclusion = describe_u_curve({t.position: t.fact_retrieved for t in tests})
        return RunDetailResponse(
            run=RunSummary.from_record(run),
            claims_by_persona=by_persona,
            position_results=tests,
            total_claims=len(claims),
            supported_claims=sum(1 for c in claims if c.is_supported),
            conclusion=conclusion,
        )

    @app.delete("/api/v1/experiments/runs/{run_id}", response_model=MessageResponse)
    def delete_run(run_id: int, lab: Lab = Depends(get_lab)):
        """Soft-delete a finished run."""
        lab.db.soft_delete_run(run_id)
        return MessageResponse(message=f"Run {run_id} deleted")

    @app.get("/api/v1/experiments/runs/{run_id}/stream")
    def stream_run(run_id: int, lab: Lab = Depends(get_lab)):
        """Server-sent progress events for one run."""
        run = lab.db.require_run(run_id)
        channel = lab.dispatcher.get_run_channel(run_id)
        if channel is None:
            return _sse(_single_event(_run_status_event(run)))
        return _sse(_event_stream(channel))

    @app.get("/api/v1/experiments/runs/{run_id}/report")
    def run_report(
        run_id: int,
        format: str = Query("html"),
        lab: Lab = Depends(get_lab),
    ):
        """Comparison report for one run."""
        return _report_response(lab, lab.reports.build_run_report(run_id), format)

    @app.get("/api/v1/experiments/batch/{batch_id}", response_model=BatchResults)
    def get_batch(batch_id: str, lab: Lab = Depends(get_lab)):
        """Per-provider results, comparison and status of a batch."""
        return collect_batch(lab.db, batch_id)

    @app.get("/api/v1/experiments/batch/{batch_id}/stream")
    def stream_batch(batch_id: str, lab: Lab = Depends(get_lab)):
        """Server-sent progress events for a batch."""
        channel = lab.dispatcher.get_progress_channel(batch_id)
        if channel is None:
            return _sse(_single_event(_batch_status_event(collect_batch(lab.db, batch_id))))
        return _sse(_event_stream(channel))

    @app.post("/api/v1/experiments/batch/{batch_id}/cancel", response_model=CancelResponse)
    def cancel_batch(batch_id: str, lab: Lab = Depends(get_lab)):
        """Stop a batch from issuing further provider calls."""
        if lab.dispatcher.cancel_batch(batch_id):
            return CancelResponse(
                batch_id=batch_id,
                cancelled=True,
                message="Cancellation requested; in-flight calls will finish",
            )
        results = collect_batch(lab.db, batch_id)
        msg = f"Batch {batch_id} is not running (status: {results.status.value})"
        raise RunStateError(msg)

    @app.get("/api/v1/experiments/batch/{batch_id}/report")
    def batch_report(
        batch_id: str,
        format: str = Query("html"),
        lab: Lab = Depends(get_lab),
    ):
        """Comparison report for a batch."""
        return _report_response(lab, lab.reports.build_batch_report(batch_id), format)

    @app.get("/api/v1/experiments/stats", response_model=StatsResponse)
    def get_stats(lab: Lab = Depends(get_lab)):
        """Run counts by status and type, plus token, cost and claim totals."""
        return StatsResponse.model_validate(lab.db.run_stats())

    # --- Preset Endpoints ---

    @app.get("/api/v1/presets", response_model=PresetListResponse)
    def list_presets(lab: Lab = Depends(get_lab)):
        """List presets, defaults first."""
        return PresetListResponse(
            presets=[PresetResponse.from_record(p) for p in lab.db.list_presets()]
        )

    @app.post("/api/v1/presets", status_code=201, response_model=PresetResponse)
    def create_preset(request: PresetCreate, lab: Lab = Depends(get_lab)):
        """Create a preset."""
        preset = lab.db.create_preset(
            request.name,
            encode_preset_config(request.config),
            description=request.description,
        )
        return PresetResponse.from_record(preset)

    @app.get("/api/v1/presets/{name}", response_model=PresetResponse)
    def get_preset(name: str, lab: Lab = Depends(get_lab)):
        """Get one preset."""
        return PresetResponse.from_record(lab.db.require_preset(name))

    @app.delete("/api/v1/presets/{name}", response_model=MessageResponse)
    def delete_preset(name: str, lab: Lab = Depends(get_lab)):
        """Delete a preset. Default presets cannot be deleted."""
        lab.db.delete_preset(name)
        return MessageResponse(message=f"Preset '{name}' deleted")

    @app.post("/api/v1/presets/{name}/apply", status_code=202, response_model=PresetApplyResponse)
    def apply_preset(name: str, request: PresetApply, lab: Lab = Depends(get_lab)):
        """Start a run, or a batch for provider sweeps, from a preset."""
        handle = lab.apply_preset(name, request.athlete_id, request.overrides)
        if isinstance(handle, BatchHandle):
            return PresetApplyResponse(preset=name, batch_id=handle.batch_id, run_ids=handle.run_ids)
        return PresetApplyResponse(preset=name, run_id=handle.run_id, run_ids=[handle.run_id])

    @app.get("/health", response_model=HealthResponse)
    def health_check():
        """Health check endpoint."""
        return HealthResponse(version=journalbench.__version__)

    return app


def _report_response(lab: Lab, report: Report, format: str) -> Response:
    fmt = format.lower()
    if fmt not in REPORT_FORMATS:
        msg = f"report format must be one of {', '.join(REPORT_FORMATS)}, got '{format}'"
        raise ConfigurationError(msg)
    if fmt == "json":
        return Response(content=lab.reports.render_json(report), media_type="application/json")
    return HTMLResponse(content=lab.reports.render_html(report))
