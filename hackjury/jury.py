"""AI jury: four-layer elimination tournament over a hackathon's projects.

A session moves PENDING -> IN_PROGRESS -> COMPLETED. Layers run strictly in
order; every still-active project gets one verdict per layer, and all verdicts
of a layer are persisted together with the session counters in a single
transaction. Execution is exclusive per session and independent across them.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from hackjury.db import SessionFactory, session_scope
from hackjury.errors import Conflict, ExternalBackendFailure, InputValidationError, JuryError, NotFound
from hackjury.events import EventSink
from hackjury.layers import LAYER_NAMES, LayerExecutor, ProjectInput, Verdict
from hackjury.jobs import job_to_dict
from hackjury.models import (
    TOTAL_JURY_LAYERS, AnalysisJob, Hackathon, JurySession, LayerResult, Project, SessionStatus, Track,
)
from hackjury.scoring import resolve_weights
from hackjury.utils import json_parse, utcnow

log = logging.getLogger(__name__)

TOP_PER_TRACK = 5


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def layer_result_to_dict(r: LayerResult) -> dict[str, Any]:
    return {
        "id": r.id,
        "session_id": r.session_id,
        "project_id": r.project_id,
        "layer": r.layer,
        "eliminated": r.eliminated,
        "score": r.score,
        "reason": r.reason,
        "evidence": json_parse(r.evidence_json),
        "processed_at": r.processed_at.isoformat() if r.processed_at else None,
    }


def session_to_dict(s: JurySession, include_results: bool = False) -> dict[str, Any]:
    data = {
        "id": s.id,
        "hackathon_id": s.hackathon_id,
        "status": s.status,
        "current_layer": s.current_layer,
        "total_layers": s.total_layers,
        "total_projects": s.total_projects,
        "eliminated_projects": s.eliminated_projects,
        "active_projects": s.total_projects - s.eliminated_projects,
        "eligibility_criteria": json_parse(s.eligibility_criteria_json),
        "final_results": json_parse(s.final_results_json) or None,
        "created_at": s.created_at.isoformat() if s.created_at else None,
        "updated_at": s.updated_at.isoformat() if s.updated_at else None,
    }
    if include_results:
        data["layer_results"] = group_layer_results(s.layer_results)
    return data


def group_layer_results(results: list[LayerResult]) -> dict[int, list[dict[str, Any]]]:
    grouped: dict[int, list[dict[str, Any]]] = {layer: [] for layer in range(1, TOTAL_JURY_LAYERS + 1)}
    for r in sorted(results, key=lambda r: (r.layer, -(r.score or 0), r.project_id)):
        grouped.setdefault(r.layer, []).append(layer_result_to_dict(r))
    return grouped


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class JuryService:
    def __init__(
        self,
        executor: LayerExecutor,
        session_factory: SessionFactory | None = None,
        events: EventSink | None = None,
        fanout: int = 8,
    ):
        self.executor = executor
        self._session_factory = session_factory
        self.events = events or EventSink(session_factory)
        self.fanout = max(1, fanout)
        self._locks: dict[int, asyncio.Lock] = {}

    def _session(self):
        return session_scope(self._session_factory)

    def _lock_for(self, session_id: int) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def is_executing(self, session_id: int) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    @staticmethod
    def _get(session: Session, session_id: int) -> JurySession:
        jury = session.get(JurySession, session_id)
        if jury is None:
            raise NotFound(f"Jury session {session_id} not found")
        return jury

    @staticmethod
    def _open_session_id(session: Session, hackathon_id: int, exclude: int | None = None) -> int | None:
        query = select(JurySession.id).where(
            JurySession.hackathon_id == hackathon_id,
            JurySession.status != SessionStatus.COMPLETED.value,
        )
        if exclude is not None:
            query = query.where(JurySession.id != exclude)
        return session.execute(query.limit(1)).scalar_one_or_none()

    @staticmethod
    def _project_count(session: Session, hackathon_id: int) -> int:
        return session.execute(
            select(func.count(Project.id)).where(Project.hackathon_id == hackathon_id)
        ).scalar_one()

    # -- create -------------------------------------------------------------

    def create(self, hackathon_id: int, eligibility_criteria: dict[str, Any] | None = None) -> dict[str, Any]:
        criteria = dict(eligibility_criteria or {})
        if criteria.get("scoring_configuration") or criteria.get("custom_weights"):
            resolve_weights(criteria.get("scoring_configuration"), criteria.get("custom_weights"))

        with self._session() as session:
            if session.get(Hackathon, hackathon_id) is None:
                raise NotFound(f"Hackathon {hackathon_id} not found")
            open_id = self._open_session_id(session, hackathon_id)
            if open_id is not None:
                raise Conflict(
                    f"Hackathon {hackathon_id} already has an unfinished jury session",
                    {"session_id": open_id},
                )
            jury = JurySession(
                hackathon_id=hackathon_id,
                status=SessionStatus.PENDING.value,
                current_layer=1,
                total_layers=TOTAL_JURY_LAYERS,
                total_projects=self._project_count(session, hackathon_id),
                eliminated_projects=0,
                eligibility_criteria_json=json.dumps(criteria),
                final_results_json="{}",
            )
            session.add(jury)
            session.commit()
            data = session_to_dict(jury)

        log.info("Created jury session %s for hackathon %s (%d projects)",
                 data["id"], hackathon_id, data["total_projects"])
        self.events.emit("session", data["id"], "session.created", {"hackathon_id": hackathon_id})
        return data

    # -- execute ------------------------------------------------------------

    async def execute_layer(self, session_id: int, layer: int) -> dict[str, Any]:
        if not isinstance(layer, int) or not 1 <= layer <= TOTAL_JURY_LAYERS:
            raise InputValidationError(f"Invalid layer {layer!r}; must be between 1 and {TOTAL_JURY_LAYERS}")
        lock = self._lock_for(session_id)
        if lock.locked():
            raise Conflict(f"A layer is already executing for jury session {session_id}")
        try:
            async with lock:
                return await self._execute_layer(session_id, layer)
        finally:
            self._locks.pop(session_id, None)

    async def _execute_layer(self, session_id: int, layer: int) -> dict[str, Any]:
        with self._session() as session:
            jury = self._get(session, session_id)
            self._check_executable(jury, layer)
            criteria = json_parse(jury.eligibility_criteria_json)
            hackathon_id = jury.hackathon_id
            projects = self._load_active_projects(session, jury, layer)

        log.info("Jury session %s layer %d (%s): evaluating %d project(s)",
                 session_id, layer, LAYER_NAMES[layer], len(projects))
        self.events.emit("session", session_id, "layer.started", {"layer": layer, "projects": len(projects)})

        verdicts = await self._evaluate_all(layer, projects, criteria)

        with self._session() as session:
            jury = self._get(session, session_id)
            self._check_executable(jury, layer)
            session.execute(delete(LayerResult).where(
                LayerResult.session_id == session_id, LayerResult.layer == layer,
            ))
            now = utcnow()
            for project, verdict in zip(projects, verdicts):
                session.add(LayerResult(
                    session_id=session_id,
                    project_id=project.id,
                    layer=layer,
                    eliminated=verdict.eliminated,
                    score=max(0.0, min(100.0, float(verdict.score))),
                    reason=verdict.reason,
                    evidence_json=json.dumps(verdict.evidence, default=str),
                    processed_at=now,
                ))

            eliminated = sum(1 for v in verdicts if v.eliminated)
            if layer == 1:
                jury.total_projects = len(projects)
            jury.eliminated_projects = (jury.eliminated_projects or 0) + eliminated
            if layer < TOTAL_JURY_LAYERS:
                jury.status = SessionStatus.IN_PROGRESS.value
                jury.current_layer = layer + 1
            else:
                jury.status = SessionStatus.COMPLETED.value
                jury.final_results_json = json.dumps(
                    self._final_results(session, hackathon_id, projects, verdicts, criteria), default=str,
                )
            session.commit()
            state = session_to_dict(jury)

        summary = {
            "session_id": session_id,
            "layer": layer,
            "layer_name": LAYER_NAMES[layer],
            "processed": len(verdicts),
            "eliminated": eliminated,
            "advanced": len(verdicts) - eliminated,
            "session": state,
        }
        log.info("Jury session %s layer %d done: %d eliminated, %d advanced",
                 session_id, layer, eliminated, summary["advanced"])
        self.events.emit("session", session_id, "layer.completed",
                         {k: summary[k] for k in ("layer", "processed", "eliminated", "advanced")})
        if state["status"] == SessionStatus.COMPLETED:
            self.events.emit("session", session_id, "session.completed",
                             {"total_winners": state["final_results"]["total_winners"]})
        return summary

    @staticmethod
    def _check_executable(jury: JurySession, layer: int) -> None:
        if jury.status == SessionStatus.COMPLETED:
            raise Conflict(f"Jury session {jury.id} is already completed", {"status": jury.status})
        if layer != jury.current_layer:
            raise Conflict(
                f"Layer {layer} cannot run now; jury session {jury.id} is at layer {jury.current_layer}",
                {"current_layer": jury.current_layer, "requested_layer": layer},
            )

    def _load_active_projects(self, session: Session, jury: JurySession, layer: int) -> list[ProjectInput]:
        eliminated_ids = set(session.execute(
            select(LayerResult.project_id).where(
                LayerResult.session_id == jury.id,
                LayerResult.layer < layer,
                LayerResult.eliminated.is_(True),
            )
        ).scalars().all())
        projects = [
            p for p in session.execute(
                select(Project).where(Project.hackathon_id == jury.hackathon_id).order_by(Project.id)
            ).scalars().all()
            if p.id not in eliminated_ids
        ]
        if layer > 1:
            # Only projects that were actually processed at the previous layer continue.
            processed_ids = set(session.execute(
                select(LayerResult.project_id).where(
                    LayerResult.session_id == jury.id, LayerResult.layer == layer - 1,
                )
            ).scalars().all())
            projects = [p for p in projects if p.id in processed_ids]

        latest: dict[tuple[int, str], AnalysisJob] = {}
        if projects:
            jobs = session.execute(
                select(AnalysisJob)
                .where(AnalysisJob.project_id.in_([p.id for p in projects]))
                .order_by(AnalysisJob.id)
            ).scalars().all()
            for job in jobs:
                latest[(job.project_id, job.layer_type)] = job

        inputs = []
        for p in projects:
            reports = {lt: job_to_dict(j) for (pid, lt), j in latest.items() if pid == p.id}
            inputs.append(ProjectInput(
                id=p.id,
                name=p.name,
                github_url=p.github_url or "",
                submitted_at=p.submitted_at,
                track_id=p.track_id,
                track_name=p.track.name if p.track else "",
                reports=reports,
            ))
        return inputs

    async def _evaluate_all(self, layer: int, projects: list[ProjectInput], criteria: dict[str, Any]) -> list[Verdict]:
        semaphore = asyncio.Semaphore(self.fanout)

        async def evaluate(project: ProjectInput) -> Verdict:
            async with semaphore:
                try:
                    return await self.executor.evaluate(layer, project, criteria)
                except JuryError:
                    raise
                except Exception as exc:
                    log.warning("Layer %d verdict failed for project %s: %s", layer, project.id, exc)
                    raise ExternalBackendFailure(
                        f"Layer {layer} evaluation failed for project {project.id}: {exc}",
                        {"project_id": project.id, "layer": layer},
                    ) from exc

        return list(await asyncio.gather(*(evaluate(p) for p in projects)))

    def _final_results(
        self,
        session: Session,
        hackathon_id: int,
        projects: list[ProjectInput],
        verdicts: list[Verdict],
        criteria: dict[str, Any],
    ) -> dict[str, Any]:
        survivors = [(p, v) for p, v in zip(projects, verdicts) if not v.eliminated]
        ranked = sorted(survivors, key=lambda pv: (-pv[1].score, pv[0].id))
        rankings = [
            {
                "rank": i,
                "project_id": p.id,
                "project_name": p.name,
                "track_id": p.track_id,
                "track_name": p.track_name,
                "score": v.score,
                "unified_score": v.evidence.get("unified_score"),
            }
            for i, (p, v) in enumerate(ranked, start=1)
        ]

        tracks = session.execute(
            select(Track).where(Track.hackathon_id == hackathon_id).order_by(Track.id)
        ).scalars().all()
        by_track: dict[str, list[int]] = defaultdict(list)
        for track in tracks:
            by_track[str(track.id)] = [
                r["project_id"] for r in rankings if r["track_id"] == track.id
            ][:TOP_PER_TRACK]

        return {
            "rankings": rankings,
            "top_projects_by_track": dict(by_track),
            "total_tracks": len(tracks),
            "total_winners": sum(len(ids) for ids in by_track.values()),
            "configuration": criteria.get("scoring_configuration")
                             or getattr(getattr(self.executor, "scoring", None), "default_configuration", None),
            "generated_at": utcnow().isoformat(),
        }

    # -- read side ------------------------------------------------------------

    def get_session(self, session_id: int, include_results: bool = True) -> dict[str, Any]:
        with self._session() as session:
            data = session_to_dict(self._get(session, session_id), include_results=include_results)
        data["is_executing"] = self.is_executing(session_id)
        return data

    def list_sessions(self, hackathon_id: int | None = None) -> list[dict[str, Any]]:
        with self._session() as session:
            query = select(JurySession)
            if hackathon_id is not None:
                query = query.where(JurySession.hackathon_id == hackathon_id)
            sessions = session.execute(query.order_by(JurySession.id.desc())).scalars().all()
            return [session_to_dict(s) for s in sessions]

    def latest_for_hackathon(self, hackathon_id: int) -> dict[str, Any] | None:
        with self._session() as session:
            jury = session.execute(
                select(JurySession).where(JurySession.hackathon_id == hackathon_id)
                .order_by(JurySession.id.desc()).limit(1)
            ).scalar_one_or_none()
            return session_to_dict(jury, include_results=True) if jury else None

    def get_progress(self, session_id: int) -> dict[str, Any]:
        """Per-layer totals derived from the persisted layer results only."""
        with self._session() as session:
            jury = self._get(session, session_id)
            results = list(jury.layer_results)
            state = session_to_dict(jury)

        layers = []
        for layer in range(1, TOTAL_JURY_LAYERS + 1):
            eliminated_before = sum(1 for r in results if r.layer < layer and r.eliminated)
            at_layer = [r for r in results if r.layer == layer]
            eliminated = sum(1 for r in at_layer if r.eliminated)
            if state["status"] == SessionStatus.COMPLETED or layer < state["current_layer"]:
                status = "completed"
            elif layer == state["current_layer"] and self.is_executing(session_id):
                status = "running"
            else:
                status = "pending"
            layers.append({
                "layer": layer,
                "name": LAYER_NAMES[layer],
                "total": state["total_projects"] - eliminated_before,
                "processed": len(at_layer),
                "eliminated": eliminated,
                "advanced": len(at_layer) - eliminated,
                "status": status,
            })

        return {
            "session_id": session_id,
            "status": state["status"],
            "current_layer": state["current_layer"],
            "total_layers": state["total_layers"],
            "total_projects": state["total_projects"],
            "eliminated_projects": state["eliminated_projects"],
            "active_projects": state["active_projects"],
            "is_executing": self.is_executing(session_id),
            "layers": layers,
        }

    def get_results(self, session_id: int) -> dict[str, Any]:
        with self._session() as session:
            jury = self._get(session, session_id)
            if jury.status != SessionStatus.COMPLETED:
                raise Conflict(
                    f"Jury session {session_id} is not completed yet",
                    {"status": jury.status, "current_layer": jury.current_layer},
                )
            data = session_to_dict(jury, include_results=True)
        return {
            "session": {k: v for k, v in data.items() if k not in ("final_results", "layer_results")},
            "final_results": data["final_results"],
            "layer_results": data["layer_results"],
        }

    # -- reset ----------------------------------------------------------------

    def reset(self, session_id: int) -> dict[str, Any]:
        if self.is_executing(session_id):
            raise Conflict(f"Cannot reset jury session {session_id} while a layer is executing")
        with self._session() as session:
            jury = self._get(session, session_id)
            if jury.status == SessionStatus.COMPLETED:
                open_id = self._open_session_id(session, jury.hackathon_id, exclude=jury.id)
                if open_id is not None:
                    raise Conflict(
                        f"Hackathon {jury.hackathon_id} already has an unfinished jury session",
                        {"session_id": open_id},
                    )
            session.execute(delete(LayerResult).where(LayerResult.session_id == session_id))
            jury.status = SessionStatus.PENDING.value
            jury.current_layer = 1
            jury.eliminated_projects = 0
            jury.final_results_json = "{}"
            session.commit()
            session.refresh(jury)
            data = session_to_dict(jury, include_results=True)

        log.info("Reset jury session %s", session_id)
        self.events.emit("session", session_id, "session.reset", {})
        return data
