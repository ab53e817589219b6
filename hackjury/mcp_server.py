from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from hackjury import services
from hackjury.config import get_settings
from hackjury.db import init_db, session_scope
from hackjury.errors import JuryError, NotFound
from hackjury.scoring import CONFIGURATION_DESCRIPTIONS
from hackjury.services import Runtime

log = logging.getLogger(__name__)

_runtime: Runtime | None = None


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def hackjury_lifespan(server: FastMCP) -> AsyncIterator[None]:
    global _runtime
    init_db()
    _runtime = services.build_runtime(get_settings())
    try:
        yield
    finally:
        await _runtime.shutdown()
        _runtime = None


mcp = FastMCP(
    "HackJury",
    instructions=(
        "HackJury judges hackathon submissions. Trigger per-project analyses "
        "(CODE_QUALITY, TECH_DETECTION, COHERENCE, INNOVATION) and poll their progress, "
        "then run a jury session layer by layer (1 eligibility, 2 technology, "
        "3 code quality, 4 final analysis) to produce ranked winners per track. "
        "Read hackjury://overview first."
    ),
    lifespan=hackjury_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _rt() -> Runtime:
    if _runtime is None:
        raise RuntimeError("HackJury runtime is not initialised")
    return _runtime


def _error(exc: JuryError) -> dict[str, Any]:
    out: dict[str, Any] = {"error": exc.message, "status_code": exc.status_code}
    if exc.detail:
        out["detail"] = exc.detail
    return out


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("hackjury://overview")
def hackjury_overview() -> str:
    """Overview of HackJury: analysis layers, jury layers, and scoring configurations."""
    return json.dumps({
        "system": "HackJury - hackathon judging pipeline",
        "analysis_layers": {
            "CODE_QUALITY": "LLM review of repository structure, tests, docs and security.",
            "TECH_DETECTION": "Deterministic scan for Hedera SDK usage and other blockchain libraries.",
            "COHERENCE": "LLM check that the submission matches its track and description.",
            "INNOVATION": "LLM assessment of novelty, creativity and market impact.",
        },
        "jury_layers": {
            "1": "eligibility: submission recorded, repository accessible and public",
            "2": "technology_detection: Hedera usage from the TECH_DETECTION analysis",
            "3": "code_quality: CODE_QUALITY score, penalized when code richness is low",
            "4": "final_analysis: unified score ranking, top 5 per track",
        },
        "job_statuses": ["NOT_STARTED", "PENDING", "IN_PROGRESS", "COMPLETED", "FAILED"],
        "scoring_configurations": CONFIGURATION_DESCRIPTIONS,
        "concurrency": "At most max_concurrent_jobs analyses run at once across all layers; "
                       "a full governor answers with status_code 503 and retry guidance.",
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Analysis
# ---------------------------------------------------------------------------


@mcp.tool()
async def trigger_analysis(project_id: int, layer_type: str, options: dict[str, Any] | None = None) -> dict:
    """Start an analysis job for a project. Returns immediately with the job id.

    Args:
        project_id: Project to analyse.
        layer_type: CODE_QUALITY, TECH_DETECTION, COHERENCE or INNOVATION.
        options: Free-form analyzer options, stored with the job.
    """
    try:
        runner = _rt().runner(layer_type)
        job_id = await runner.trigger(project_id, options or {})
        return {"job_id": job_id, "status": "PENDING", "layer_type": runner.layer, "project_id": project_id}
    except JuryError as exc:
        return _error(exc)


@mcp.tool()
def get_analysis_progress(project_id: int, layer_type: str) -> dict:
    """Progress of the latest job of a layer type for a project (NOT_STARTED when none exists)."""
    try:
        return _rt().runner(layer_type).get_progress(project_id)
    except JuryError as exc:
        return _error(exc)


@mcp.tool()
def list_analysis_jobs(project_id: int, layer_type: str) -> list[dict] | dict:
    """Every job of a layer type for a project, newest first, including results."""
    try:
        return _rt().runner(layer_type).list_jobs(project_id)
    except JuryError as exc:
        return _error(exc)


@mcp.tool()
async def delete_analysis_jobs(project_id: int, layer_type: str) -> dict:
    """Delete a project's jobs for a layer type and release its concurrency slot."""
    try:
        return {"deleted": await _rt().runner(layer_type).delete_jobs(project_id)}
    except JuryError as exc:
        return _error(exc)


@mcp.tool()
def get_project_unified_score(project_id: int, configuration: str | None = None) -> dict:
    """Unified 0-100 score from a project's latest completed analyses."""
    try:
        with session_scope() as session:
            return services.project_unified_score(session, project_id, _rt().scoring, configuration)
    except JuryError as exc:
        return _error(exc)


# ---------------------------------------------------------------------------
# Tools: Jury
# ---------------------------------------------------------------------------


@mcp.tool()
def create_jury_session(
    hackathon_id: int,
    submission_deadline: bool = False,
    repository_access: bool = False,
    repository_public: bool = False,
    scoring_configuration: str | None = None,
) -> dict:
    """Create a jury session for a hackathon. Fails if one is already unfinished.

    Args:
        hackathon_id: Hackathon whose projects enter the tournament.
        submission_deadline: Eliminate projects without a recorded submission time.
        repository_access: Eliminate projects whose GitHub repository is unreachable.
        repository_public: Eliminate projects whose repository is private.
        scoring_configuration: Weighting used in layer 4.
    """
    criteria = {
        "submission_deadline": submission_deadline,
        "repository_access": repository_access,
        "repository_public": repository_public,
    }
    if scoring_configuration:
        criteria["scoring_configuration"] = scoring_configuration
    try:
        return _rt().jury.create(hackathon_id, criteria)
    except JuryError as exc:
        return _error(exc)


@mcp.tool()
async def execute_jury_layer(session_id: int, layer: int) -> dict:
    """Run the session's current layer (1-4) over every still-active project."""
    try:
        return await _rt().jury.execute_layer(session_id, layer)
    except JuryError as exc:
        return _error(exc)


@mcp.tool()
def get_jury_session(session_id: int) -> dict:
    """Jury session state with layer results grouped by layer."""
    try:
        return _rt().jury.get_session(session_id)
    except JuryError as exc:
        return _error(exc)


@mcp.tool()
def list_jury_sessions(hackathon_id: int | None = None) -> list[dict]:
    """List jury sessions, newest first."""
    return _rt().jury.list_sessions(hackathon_id)


@mcp.tool()
def get_latest_jury_session(hackathon_id: int) -> dict:
    """Most recent jury session of a hackathon, or an error when it has none."""
    latest = _rt().jury.latest_for_hackathon(hackathon_id)
    if latest is None:
        return _error(NotFound(f"No jury session for hackathon {hackathon_id}"))
    return latest


@mcp.tool()
def get_jury_progress(session_id: int) -> dict:
    """Per-layer totals, processed, eliminated and advanced counts."""
    try:
        return _rt().jury.get_progress(session_id)
    except JuryError as exc:
        return _error(exc)


@mcp.tool()
def get_jury_results(session_id: int) -> dict:
    """Final rankings and top projects per track. Only available once COMPLETED."""
    try:
        return _rt().jury.get_results(session_id)
    except JuryError as exc:
        return _error(exc)


@mcp.tool()
def reset_jury_session(session_id: int) -> dict:
    """Clear every layer result and return the session to PENDING at layer 1."""
    try:
        return _rt().jury.reset(session_id)
    except JuryError as exc:
        return _error(exc)


# ---------------------------------------------------------------------------
# Tools: Scoring & Admin
# ---------------------------------------------------------------------------


@mcp.tool()
def calculate_unified_score(
    code_quality: float | None = None,
    innovation: float | None = None,
    coherence: float | None = None,
    hedera: float | None = None,
    configuration: str | None = None,
    apply_quality_adjustments: bool = False,
) -> dict:
    """Unified score from raw layer scores (0-100). Missing layers are ignored."""
    scores = {k: v for k, v in {
        "code_quality": code_quality, "innovation": innovation,
        "coherence": coherence, "hedera": hedera,
    }.items() if v is not None}
    try:
        return _rt().scoring.calculate(scores, configuration, apply_quality_adjustments=apply_quality_adjustments)
    except JuryError as exc:
        return _error(exc)


@mcp.tool()
def get_governor_status() -> dict:
    """Running analysis slots, the concurrency ceiling, and active job counts."""
    return _rt().governor_diagnostics()


@mcp.tool()
def reclaim_stuck_jobs() -> dict:
    """Fail analysis jobs that stopped making progress and evict stale governor slots."""
    return _rt().reclaimer.sweep()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the HackJury MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
