"""Runtime wiring and shared operations for the HackJury API and MCP server."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from hackjury.analyzers import Analyzer, default_analyzers
from hackjury.config import Settings, get_settings
from hackjury.db import SessionFactory
from hackjury.errors import InputValidationError, NotFound
from hackjury.events import EventSink
from hackjury.github import GitHubClient
from hackjury.governor import ConcurrencyGovernor
from hackjury.jobs import AnalysisJobStore, job_to_dict
from hackjury.jury import JuryService
from hackjury.layers import DefaultLayerExecutor, LayerExecutor, ProjectInput, layer_scores_for
from hackjury.llm import LLMClient
from hackjury.models import AnalysisJob, JobStatus, LayerType, Project
from hackjury.reclaimer import StuckJobReclaimer
from hackjury.runner import AnalysisRunner
from hackjury.scoring import ScoringEngine

log = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    governor: ConcurrencyGovernor
    events: EventSink
    store: AnalysisJobStore
    reclaimer: StuckJobReclaimer
    scoring: ScoringEngine
    jury: JuryService
    runners: dict[str, AnalysisRunner] = field(default_factory=dict)

    def runner(self, layer_type: str) -> AnalysisRunner:
        key = str(layer_type).strip().upper().replace("-", "_")
        runner = self.runners.get(key)
        if runner is None:
            raise InputValidationError(
                f"Unknown layer type {layer_type!r}",
                {"valid_layer_types": [lt.value for lt in LayerType]},
            )
        return runner

    def governor_diagnostics(self) -> dict[str, Any]:
        return {
            **self.governor.status(),
            "active_jobs": self.store.count_active(),
            "running_tasks": {lt: r.running_job_ids() for lt, r in self.runners.items()},
            "slot_max_lifetime_seconds": self.settings.slot_max_lifetime_seconds,
            "layer_timeouts": self.settings.layer_timeouts(),
        }

    async def shutdown(self) -> None:
        await asyncio.gather(*(r.drain(cancel=True) for r in self.runners.values()))


def build_runtime(
    settings: Settings | None = None,
    session_factory: SessionFactory | None = None,
    analyzers: dict[str, Analyzer] | None = None,
    github: GitHubClient | None = None,
    executor: LayerExecutor | None = None,
    llm_client: LLMClient | None = None,
) -> Runtime:
    """Assemble the process-wide components. ``session_factory=None`` uses ``db.get_session``."""
    settings = settings or get_settings()
    governor = ConcurrencyGovernor(settings.max_concurrent_jobs)
    events = EventSink(session_factory)
    store = AnalysisJobStore(session_factory, events)
    reclaimer = StuckJobReclaimer(store, governor, settings)
    scoring = ScoringEngine(settings.scoring_configuration)
    github = github or GitHubClient(token=settings.github_token or None)
    analyzers = analyzers or default_analyzers(llm_client)

    runners = {
        lt.value: AnalysisRunner(lt, store, governor, reclaimer, analyzers[lt.value], github)
        for lt in LayerType
    }
    jury = JuryService(
        executor or DefaultLayerExecutor(github, scoring),
        session_factory,
        events,
        fanout=settings.jury_fanout,
    )
    return Runtime(
        settings=settings, governor=governor, events=events, store=store,
        reclaimer=reclaimer, scoring=scoring, jury=jury, runners=runners,
    )


# ---------------------------------------------------------------------------
# Project-detail reporting
# ---------------------------------------------------------------------------


def latest_reports(session: Session, project_id: int) -> dict[str, dict[str, Any]]:
    jobs = session.execute(
        select(AnalysisJob).where(AnalysisJob.project_id == project_id).order_by(AnalysisJob.id)
    ).scalars().all()
    latest: dict[str, dict[str, Any]] = {}
    for job in jobs:
        latest[job.layer_type] = job_to_dict(job)
    return latest


def project_unified_score(
    session: Session,
    project_id: int,
    scoring: ScoringEngine,
    configuration: str | None = None,
    apply_quality_adjustments: bool = True,
) -> dict[str, Any]:
    """Unified score of a project from its latest completed analyses."""
    project = session.get(Project, project_id)
    if project is None:
        raise NotFound(f"Project {project_id} not found")
    reports = latest_reports(session, project_id)
    inputs = layer_scores_for(ProjectInput(id=project.id, name=project.name, reports=reports))
    unified = scoring.calculate(inputs, configuration, apply_quality_adjustments=apply_quality_adjustments)
    return {
        "project_id": project.id,
        "project_name": project.name,
        "layer_inputs": inputs,
        "analysis_status": {lt: r["status"] for lt, r in reports.items()},
        "completed_layers": [lt for lt, r in reports.items() if r["status"] == JobStatus.COMPLETED],
        "unified_score": unified,
    }
