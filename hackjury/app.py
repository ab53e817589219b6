from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from hackjury import services
from hackjury.config import configure_logging, get_settings
from hackjury.db import init_db, session_generator
from hackjury.errors import JuryError, NotFound
from hackjury.reclaimer import periodic_sweep
from hackjury.schemas import (
    CompareScoresRequest,
    DeleteJobsOut,
    ExecuteLayerOut,
    ExecuteLayerRequest,
    JobOut,
    JuryProgressOut,
    JurySessionCreate,
    JurySessionOut,
    ProgressOut,
    TriggerOut,
    TriggerRequest,
    UnifiedScoreRequest,
)
from hackjury.services import Runtime

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    runtime: Runtime | None = getattr(app.state, "runtime", None)
    owned = runtime is None
    if owned:
        init_db()
        runtime = services.build_runtime(settings)
        app.state.runtime = runtime

    sweeper = None
    if settings.reclaim_interval_seconds > 0:
        sweeper = asyncio.create_task(periodic_sweep(runtime.reclaimer, settings.reclaim_interval_seconds))
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
        await runtime.shutdown()
        if owned:
            app.state.runtime = None


app = FastAPI(
    title="HackJury",
    version="0.1.0",
    description=(
        "Hackathon judging pipeline. Runs per-project analysis layers as background jobs "
        "under a global concurrency ceiling, and drives a four-layer AI jury tournament "
        "to a ranked result set. All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Analysis", "description": "Trigger and poll per-project analysis jobs."},
        {"name": "Jury", "description": "Four-layer elimination tournament per hackathon."},
        {"name": "Scoring", "description": "Unified 0-100 score from layer scores."},
        {"name": "Events", "description": "Notification log written by the core."},
        {"name": "Admin", "description": "Governor diagnostics and stuck-job reclamation."},
    ],
)


@app.exception_handler(JuryError)
async def jury_error_handler(request: Request, exc: JuryError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "data": exc.detail})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


# ---------------------------------------------------------------------------
# Routes: Analysis
# ---------------------------------------------------------------------------


@app.post("/api/projects/{project_id}/analysis/{layer_type}", response_model=TriggerOut, status_code=201,
          tags=["Analysis"], summary="Start an analysis job (returns immediately)")
async def trigger_analysis(
    project_id: int, layer_type: str, body: TriggerRequest | None = None,
    runtime: Runtime = Depends(get_runtime),
):
    runner = runtime.runner(layer_type)
    job_id = await runner.trigger(project_id, (body or TriggerRequest()).options)
    return {"job_id": job_id, "status": "PENDING", "layer_type": runner.layer, "project_id": project_id}


@app.get("/api/projects/{project_id}/analysis/{layer_type}/progress", response_model=ProgressOut,
         tags=["Analysis"], summary="Poll the latest job's progress (NOT_STARTED when none exists)")
async def analysis_progress(project_id: int, layer_type: str, runtime: Runtime = Depends(get_runtime)):
    return runtime.runner(layer_type).get_progress(project_id)


@app.get("/api/projects/{project_id}/analysis/{layer_type}", response_model=list[JobOut],
         tags=["Analysis"], summary="List every job of a layer type for a project, newest first")
async def list_analysis_jobs(project_id: int, layer_type: str, runtime: Runtime = Depends(get_runtime)):
    return runtime.runner(layer_type).list_jobs(project_id)


@app.delete("/api/projects/{project_id}/analysis/{layer_type}", response_model=DeleteJobsOut,
            tags=["Analysis"], summary="Delete a project's jobs for a layer type and release its slot")
async def delete_analysis_jobs(project_id: int, layer_type: str, runtime: Runtime = Depends(get_runtime)):
    return {"deleted": await runtime.runner(layer_type).delete_jobs(project_id)}


@app.get("/api/projects/{project_id}/unified-score", tags=["Scoring", "Analysis"],
         summary="Unified score from a project's latest completed analyses")
async def project_unified_score(
    project_id: int,
    configuration: str | None = Query(None, description="HACKATHON_STANDARD, INNOVATION_FOCUSED, TECHNICAL_FOCUSED, BALANCED"),
    apply_quality_adjustments: bool = Query(True),
    session: Session = Depends(db_session),
    runtime: Runtime = Depends(get_runtime),
):
    return services.project_unified_score(
        session, project_id, runtime.scoring, configuration, apply_quality_adjustments,
    )


# ---------------------------------------------------------------------------
# Routes: Jury
# ---------------------------------------------------------------------------


@app.post("/api/jury/sessions", response_model=JurySessionOut, status_code=201,
          tags=["Jury"], summary="Create a jury session for a hackathon")
async def create_jury_session(body: JurySessionCreate, runtime: Runtime = Depends(get_runtime)):
    criteria = body.eligibility_criteria.model_dump(exclude_none=True)
    return runtime.jury.create(body.hackathon_id, criteria)


@app.get("/api/jury/sessions", response_model=list[JurySessionOut],
         tags=["Jury"], summary="List jury sessions, optionally for one hackathon")
async def list_jury_sessions(
    hackathon_id: int | None = Query(None), runtime: Runtime = Depends(get_runtime),
):
    return runtime.jury.list_sessions(hackathon_id)


@app.get("/api/hackathons/{hackathon_id}/jury", tags=["Jury"],
         summary="Most recent jury session of a hackathon, with its layer results")
async def latest_jury_session(hackathon_id: int, runtime: Runtime = Depends(get_runtime)):
    latest = runtime.jury.latest_for_hackathon(hackathon_id)
    if latest is None:
        raise NotFound(f"No jury session for hackathon {hackathon_id}")
    return latest


@app.get("/api/jury/sessions/{session_id}", tags=["Jury"],
         summary="Get a jury session with its layer results")
async def get_jury_session(session_id: int, runtime: Runtime = Depends(get_runtime)):
    return runtime.jury.get_session(session_id)


@app.post("/api/jury/sessions/{session_id}/execute-layer", response_model=ExecuteLayerOut,
          tags=["Jury"], summary="Execute the session's current layer over all active projects")
async def execute_jury_layer(session_id: int, body: ExecuteLayerRequest, runtime: Runtime = Depends(get_runtime)):
    return await runtime.jury.execute_layer(session_id, body.layer)


@app.get("/api/jury/sessions/{session_id}/progress", response_model=JuryProgressOut,
         tags=["Jury"], summary="Per-layer totals, processed and eliminated counts")
async def jury_progress(session_id: int, runtime: Runtime = Depends(get_runtime)):
    return runtime.jury.get_progress(session_id)


@app.get("/api/jury/sessions/{session_id}/results", tags=["Jury"],
         summary="Final ranked results (409 until the session is COMPLETED)")
async def jury_results(session_id: int, runtime: Runtime = Depends(get_runtime)):
    return runtime.jury.get_results(session_id)


@app.post("/api/jury/sessions/{session_id}/reset", tags=["Jury"],
          summary="Clear all layer results and return the session to PENDING / layer 1")
async def reset_jury_session(session_id: int, runtime: Runtime = Depends(get_runtime)):
    return runtime.jury.reset(session_id)


# ---------------------------------------------------------------------------
# Routes: Scoring
# ---------------------------------------------------------------------------


@app.post("/api/scoring/unified", tags=["Scoring"], summary="Calculate a unified score from layer scores")
async def unified_score(body: UnifiedScoreRequest, runtime: Runtime = Depends(get_runtime)):
    return runtime.scoring.calculate(
        body.scores.model_dump(exclude_none=True),
        body.configuration,
        body.custom_weights,
        body.apply_quality_adjustments,
    )


@app.get("/api/scoring/configurations", tags=["Scoring"], summary="List named weighting configurations")
async def scoring_configurations(runtime: Runtime = Depends(get_runtime)):
    return {
        "default": runtime.scoring.default_configuration,
        "configurations": runtime.scoring.available_configurations(),
    }


@app.post("/api/scoring/compare", tags=["Scoring"], summary="Compare two unified scores (a - b)")
async def compare_scores(body: CompareScoresRequest, runtime: Runtime = Depends(get_runtime)):
    scores: list[dict[str, Any]] = [
        runtime.scoring.calculate(
            req.scores.model_dump(exclude_none=True), req.configuration,
            req.custom_weights, req.apply_quality_adjustments,
        )
        for req in (body.a, body.b)
    ]
    return {"a": scores[0], "b": scores[1], "comparison": runtime.scoring.compare(scores[0], scores[1])}


# ---------------------------------------------------------------------------
# Routes: Events
# ---------------------------------------------------------------------------


@app.get("/api/events", tags=["Events"], summary="List recent events, newest first")
async def list_events(
    subject_type: str | None = Query(None, description="project, job or session"),
    subject_id: int | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.events.list(subject_type, subject_id, limit)


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.get("/api/admin/governor", tags=["Admin"], summary="Running slots, ceiling and active job counts")
async def governor_status(runtime: Runtime = Depends(get_runtime)):
    return runtime.governor_diagnostics()


@app.delete("/api/admin/governor", tags=["Admin"], summary="Force-release every governor slot")
async def clear_governor(runtime: Runtime = Depends(get_runtime)):
    return {"cleared": runtime.governor.clear()}


@app.post("/api/admin/reclaim", tags=["Admin"], summary="Fail stuck jobs and evict stale governor slots")
async def reclaim_sweep(runtime: Runtime = Depends(get_runtime)):
    return runtime.reclaimer.sweep()


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    configure_logging()
    uvicorn.run("hackjury.app:app", host="127.0.0.1", port=8001)


if __name__ == "__main__":
    main()
