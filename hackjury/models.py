from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from hackjury.utils import utcnow


class Base(DeclarativeBase):
    pass


class LayerType(StrEnum):
    CODE_QUALITY = "CODE_QUALITY"
    TECH_DETECTION = "TECH_DETECTION"
    COHERENCE = "COHERENCE"
    INNOVATION = "INNOVATION"


class JobStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.IN_PROGRESS.value)
TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


class SessionStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


TOTAL_JURY_LAYERS = 4


# ---------------------------------------------------------------------------
# Hackathon entities (read by the core; CRUD lives elsewhere)
# ---------------------------------------------------------------------------


class Hackathon(Base):
    __tablename__ = "hackathons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    tracks: Mapped[list[Track]] = relationship("Track", back_populates="hackathon", cascade="all, delete-orphan")
    projects: Mapped[list[Project]] = relationship("Project", back_populates="hackathon", cascade="all, delete-orphan")


class Track(Base):
    __tablename__ = "tracks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hackathon_id: Mapped[int] = mapped_column(Integer, ForeignKey("hackathons.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")

    hackathon: Mapped[Hackathon] = relationship("Hackathon", back_populates="tracks")


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hackathon_id: Mapped[int] = mapped_column(Integer, ForeignKey("hackathons.id"), nullable=False)
    track_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("tracks.id"), nullable=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    github_url: Mapped[str] = mapped_column(String(500), default="")
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    hackathon: Mapped[Hackathon] = relationship("Hackathon", back_populates="projects")
    track: Mapped[Track | None] = relationship("Track")
    jobs: Mapped[list[AnalysisJob]] = relationship("AnalysisJob", back_populates="project", cascade="all, delete-orphan")


# ---------------------------------------------------------------------------
# Analysis jobs
# ---------------------------------------------------------------------------


class AnalysisJob(Base):
    __tablename__ = "analysis_jobs"
    __table_args__ = (
        Index("ix_analysis_jobs_project_layer_status", "project_id", "layer_type", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), nullable=False)
    layer_type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=JobStatus.PENDING.value)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    current_stage: Mapped[str] = mapped_column(String(100), default="queued")
    options_json: Mapped[str] = mapped_column(Text, default="{}")
    result_json: Mapped[str] = mapped_column(Text, default="{}")
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    elapsed_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    project: Mapped[Project] = relationship("Project", back_populates="jobs")


# ---------------------------------------------------------------------------
# AI jury
# ---------------------------------------------------------------------------


class JurySession(Base):
    __tablename__ = "jury_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hackathon_id: Mapped[int] = mapped_column(Integer, ForeignKey("hackathons.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=SessionStatus.PENDING.value)
    current_layer: Mapped[int] = mapped_column(Integer, default=1)
    total_layers: Mapped[int] = mapped_column(Integer, default=TOTAL_JURY_LAYERS)
    total_projects: Mapped[int] = mapped_column(Integer, default=0)
    eliminated_projects: Mapped[int] = mapped_column(Integer, default=0)
    eligibility_criteria_json: Mapped[str] = mapped_column(Text, default="{}")
    final_results_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    layer_results: Mapped[list[LayerResult]] = relationship(
        "LayerResult", back_populates="session", cascade="all, delete-orphan",
        order_by="LayerResult.layer",
    )


class LayerResult(Base):
    __tablename__ = "jury_layer_results"
    __table_args__ = (
        UniqueConstraint("session_id", "project_id", "layer", name="uq_layer_result"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(Integer, ForeignKey("jury_sessions.id"), nullable=False)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), nullable=False)
    layer: Mapped[int] = mapped_column(Integer, nullable=False)
    eliminated: Mapped[bool] = mapped_column(Boolean, default=False)
    score: Mapped[float] = mapped_column(Float, default=0.0)
    reason: Mapped[str] = mapped_column(Text, default="")
    evidence_json: Mapped[str] = mapped_column(Text, default="{}")
    processed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    session: Mapped[JurySession] = relationship("JurySession", back_populates="layer_results")


# ---------------------------------------------------------------------------
# Notification sink
# ---------------------------------------------------------------------------


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_type: Mapped[str] = mapped_column(String(30), nullable=False)  # "project" | "job" | "session"
    subject_id: Mapped[int] = mapped_column(Integer, nullable=False)
    event: Mapped[str] = mapped_column(String(100), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
