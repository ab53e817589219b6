"""Durable analysis job records.

Each write opens, commits and closes its own session so nothing is held across
an ``await`` in the runner. Transitions are guarded: a terminal job is never
re-opened and progress never moves backwards.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from hackjury.db import SessionFactory, session_scope
from hackjury.events import EventSink
from hackjury.models import ACTIVE_JOB_STATUSES, AnalysisJob, JobStatus
from hackjury.utils import elapsed_ms, json_parse, utcnow

log = logging.getLogger(__name__)

NOT_STARTED = "NOT_STARTED"


def job_to_dict(job: AnalysisJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "project_id": job.project_id,
        "layer_type": job.layer_type,
        "status": job.status,
        "progress": job.progress,
        "current_stage": job.current_stage,
        "options": json_parse(job.options_json),
        "result": json_parse(job.result_json),
        "score": job.score,
        "error_message": job.error_message,
        "elapsed_ms": job.elapsed_ms,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


def progress_view(job: AnalysisJob | None) -> dict[str, Any]:
    """Polling view of a job; a synthetic NOT_STARTED state when there is none."""
    if job is None:
        return {
            "job_id": None, "status": NOT_STARTED, "progress": 0, "current_stage": None,
            "is_complete": False, "has_error": False, "error_message": None,
        }
    return {
        "job_id": job.id,
        "status": job.status,
        "progress": job.progress,
        "current_stage": job.current_stage,
        "is_complete": job.status == JobStatus.COMPLETED,
        "has_error": job.status == JobStatus.FAILED,
        "error_message": job.error_message,
    }


class AnalysisJobStore:
    def __init__(self, session_factory: SessionFactory | None = None, events: EventSink | None = None):
        self._session_factory = session_factory
        self.events = events or EventSink(session_factory)

    def session(self):
        return session_scope(self._session_factory)

    # -- creation (caller owns the transaction) --------------------------------

    @staticmethod
    def find_active(session: Session, project_id: int, layer_type: str) -> list[AnalysisJob]:
        return list(session.execute(
            select(AnalysisJob).where(
                AnalysisJob.project_id == project_id,
                AnalysisJob.layer_type == layer_type,
                AnalysisJob.status.in_(ACTIVE_JOB_STATUSES),
            ).order_by(AnalysisJob.id)
        ).scalars().all())

    @staticmethod
    def add_pending(session: Session, project_id: int, layer_type: str, options: dict | None = None) -> AnalysisJob:
        """Add a PENDING job and flush to obtain its id (caller must commit)."""
        job = AnalysisJob(
            project_id=project_id,
            layer_type=layer_type,
            status=JobStatus.PENDING.value,
            progress=0,
            current_stage="queued",
            options_json=json.dumps(options or {}),
        )
        session.add(job)
        session.flush()
        return job

    # -- transitions --------------------------------------------------------

    def mark_in_progress(self, job_id: int, stage: str = "starting", progress: int = 5) -> bool:
        with self.session() as session:
            job = session.get(AnalysisJob, job_id)
            if job is None or job.status != JobStatus.PENDING:
                return False
            job.status = JobStatus.IN_PROGRESS.value
            job.started_at = utcnow()
            job.current_stage = stage
            job.progress = max(job.progress or 0, progress)
            session.commit()
            project_id = job.project_id
        self.events.emit("job", job_id, "job.started", {"project_id": project_id, "stage": stage})
        return True

    def advance(self, job_id: int, stage: str, progress: int) -> bool:
        with self.session() as session:
            job = session.get(AnalysisJob, job_id)
            if job is None or job.status != JobStatus.IN_PROGRESS:
                return False
            job.current_stage = stage
            job.progress = max(job.progress or 0, min(100, progress))
            session.commit()
            progress = job.progress
        self.events.emit("job", job_id, "job.stage", {"stage": stage, "progress": progress})
        return True

    def complete(self, job_id: int, result: dict[str, Any], score: float | None = None) -> bool:
        with self.session() as session:
            job = session.get(AnalysisJob, job_id)
            if job is None or job.status != JobStatus.IN_PROGRESS:
                return False
            now = utcnow()
            job.status = JobStatus.COMPLETED.value
            job.progress = 100
            job.current_stage = "completed"
            job.result_json = json.dumps(result, default=str)
            job.score = score
            job.completed_at = now
            job.elapsed_ms = elapsed_ms(job.started_at or job.created_at, now)
            session.commit()
            payload = {"project_id": job.project_id, "layer_type": job.layer_type, "score": score}
        self.events.emit("job", job_id, "job.completed", payload)
        return True

    def fail(self, job_id: int, message: str, elapsed: int | None = None, event: str = "job.failed") -> bool:
        """Mark an active job FAILED. Returns False if it already reached a terminal state."""
        with self.session() as session:
            job = session.get(AnalysisJob, job_id)
            if job is None or job.status not in ACTIVE_JOB_STATUSES:
                return False
            now = utcnow()
            job.status = JobStatus.FAILED.value
            job.error_message = message
            job.completed_at = now
            job.elapsed_ms = elapsed if elapsed is not None else elapsed_ms(job.started_at or job.created_at, now)
            session.commit()
            payload = {"project_id": job.project_id, "layer_type": job.layer_type, "error": message}
        self.events.emit("job", job_id, event, payload)
        return True

    # -- reads --------------------------------------------------------------

    def get(self, job_id: int) -> dict[str, Any] | None:
        with self.session() as session:
            job = session.get(AnalysisJob, job_id)
            return job_to_dict(job) if job else None

    def progress(self, project_id: int, layer_type: str) -> dict[str, Any]:
        with self.session() as session:
            job = session.execute(
                select(AnalysisJob).where(
                    AnalysisJob.project_id == project_id,
                    AnalysisJob.layer_type == layer_type,
                ).order_by(AnalysisJob.id.desc()).limit(1)
            ).scalar_one_or_none()
            return progress_view(job)

    def list(self, project_id: int, layer_type: str | None = None) -> list[dict[str, Any]]:
        with self.session() as session:
            query = select(AnalysisJob).where(AnalysisJob.project_id == project_id)
            if layer_type:
                query = query.where(AnalysisJob.layer_type == layer_type)
            jobs = session.execute(query.order_by(AnalysisJob.id.desc())).scalars().all()
            return [job_to_dict(j) for j in jobs]

    def find_stale(
        self, cutoff: datetime, project_id: int | None = None, layer_type: str | None = None,
    ) -> list[dict[str, Any]]:
        """Active jobs whose ``updated_at`` is older than ``cutoff``."""
        with self.session() as session:
            query = select(AnalysisJob).where(
                AnalysisJob.status.in_(ACTIVE_JOB_STATUSES),
                AnalysisJob.updated_at < cutoff,
            )
            if project_id is not None:
                query = query.where(AnalysisJob.project_id == project_id)
            if layer_type is not None:
                query = query.where(AnalysisJob.layer_type == layer_type)
            return [job_to_dict(j) for j in session.execute(query).scalars().all()]

    def count_active(self) -> int:
        with self.session() as session:
            return session.execute(
                select(func.count(AnalysisJob.id)).where(AnalysisJob.status.in_(ACTIVE_JOB_STATUSES))
            ).scalar_one()

    def delete(self, project_id: int, layer_type: str) -> int:
        with self.session() as session:
            result = session.execute(
                delete(AnalysisJob).where(
                    AnalysisJob.project_id == project_id,
                    AnalysisJob.layer_type == layer_type,
                )
            )
            session.commit()
            return result.rowcount or 0


def cutoff_for(timeout_seconds: float, now: datetime | None = None) -> datetime:
    return (now or utcnow()) - timedelta(seconds=timeout_seconds)
