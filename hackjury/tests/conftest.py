"""Shared fixtures: in-memory database, seeded hackathons, fake GitHub and analyzers."""
from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from hackjury.analyzers import Analyzer
from hackjury.config import Settings
from hackjury.db import session_factory_for, sqlite_engine
from hackjury.github import RepoFile, RepoRef, RepoSnapshot
from hackjury.models import Hackathon, LayerType, Project, Track
from hackjury.services import build_runtime
from hackjury.utils import utcnow


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    return sqlite_engine(None)


@pytest.fixture()
def session_factory(engine):
    return session_factory_for(engine)


def seed_hackathon(
    factory,
    n_projects: int = 3,
    n_tracks: int = 2,
    with_github: bool = True,
    submitted: bool = True,
) -> dict[str, Any]:
    """Insert one hackathon with tracks and projects; returns their ids."""
    session = factory()
    try:
        hackathon = Hackathon(name="Test Hackathon", description="Build on Hedera")
        session.add(hackathon)
        session.flush()
        tracks = [
            Track(hackathon_id=hackathon.id, name=f"Track {i + 1}", description=f"Track {i + 1} brief")
            for i in range(n_tracks)
        ]
        session.add_all(tracks)
        session.flush()
        projects = [
            Project(
                hackathon_id=hackathon.id,
                track_id=tracks[i % n_tracks].id if tracks else None,
                name=f"Project {i + 1}",
                description=f"Submission number {i + 1}",
                github_url=f"https://github.com/team{i + 1}/repo{i + 1}" if with_github else "",
                submitted_at=utcnow() if submitted else None,
            )
            for i in range(n_projects)
        ]
        session.add_all(projects)
        session.commit()
        return {
            "hackathon_id": hackathon.id,
            "track_ids": [t.id for t in tracks],
            "project_ids": [p.id for p in projects],
        }
    finally:
        session.close()


@pytest.fixture()
def seeded(session_factory):
    return seed_hackathon(session_factory)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


def make_snapshot(files: dict[str, str] | None = None, readme: str | None = "# Demo") -> RepoSnapshot:
    ref = RepoRef(owner="team1", repo="repo1", url="https://github.com/team1/repo1")
    repo_files = [RepoFile(path=p, content=c, size=len(c)) for p, c in (files or {}).items()]
    return RepoSnapshot(
        ref=ref,
        metadata={"name": "repo1", "language": "TypeScript", "default_branch": "main"},
        readme=readme,
        files=repo_files,
        tree=[f.path for f in repo_files],
    )


def make_github(accessible: bool = True, is_public: bool = True) -> MagicMock:
    github = MagicMock()
    github.fetch_snapshot = AsyncMock(return_value=make_snapshot({"src/index.ts": "console.log('hi')"}))
    access: dict[str, Any] = {"accessible": accessible, "is_public": is_public}
    if accessible:
        access["metadata"] = {"name": "repo1"}
    else:
        access["error"] = "Repository not found or is private"
    github.check_accessibility = AsyncMock(return_value=access)
    return github


class FakeAnalyzer(Analyzer):
    """Returns a canned result; ``gate`` lets a test hold the analysis open."""

    score_field = "overall_score"

    def __init__(self, result: dict[str, Any] | None = None, exc: Exception | None = None):
        self.result = result if result is not None else {"overall_score": 75.0, "summary": "ok"}
        self.exc = exc
        self.gate = asyncio.Event()
        self.gate.set()
        self.calls = 0

    async def analyze(self, ctx, snapshot):
        self.calls += 1
        await self.gate.wait()
        if self.exc is not None:
            raise self.exc
        return dict(self.result)


@pytest.fixture()
def settings():
    return Settings(
        max_concurrent_jobs=2,
        slot_max_lifetime_seconds=1800,
        short_timeout_seconds=30,
        long_timeout_seconds=1800,
        short_timeout_layers={"COHERENCE"},
        reclaim_interval_seconds=0,
        jury_fanout=4,
        scoring_configuration="HACKATHON_STANDARD",
        github_token="",
    )


@pytest.fixture()
def github():
    return make_github()


@pytest.fixture()
def analyzers():
    return {lt.value: FakeAnalyzer() for lt in LayerType}


@pytest.fixture()
def runtime(settings, session_factory, analyzers, github):
    return build_runtime(settings, session_factory, analyzers=analyzers, github=github)
