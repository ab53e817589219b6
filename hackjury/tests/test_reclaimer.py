"""Tests for stuck-job reclamation and stale governor slot eviction."""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from hackjury.errors import AlreadyRunning
from hackjury.governor import ConcurrencyGovernor
from hackjury.jobs import AnalysisJobStore
from hackjury.models import AnalysisJob
from hackjury.reclaimer import StuckJobReclaimer, timeout_message
from hackjury.utils import utcnow


def _stuck_job(store: AnalysisJobStore, project_id: int, layer_type: str, minutes_ago: int) -> int:
    with store.session() as session:
        job = store.add_pending(session, project_id, layer_type)
        session.commit()
        job_id = job.id
    store.mark_in_progress(job_id)
    _backdate(store, job_id, minutes_ago)
    return job_id


def _backdate(store: AnalysisJobStore, job_id: int, minutes_ago: int) -> None:
    with store.session() as session:
        session.execute(
            update(AnalysisJob)
            .where(AnalysisJob.id == job_id)
            .values(updated_at=utcnow() - timedelta(minutes=minutes_ago))
        )
        session.commit()


class TestTimeoutMessage:
    def test_minutes(self):
        assert timeout_message("CODE_QUALITY", 1800) == "CODE_QUALITY analysis timed out after 30 minutes without progress"

    def test_seconds(self):
        assert timeout_message("COHERENCE", 30) == "COHERENCE analysis timed out after 30 seconds without progress"


class TestReclaimOnTrigger:
    @pytest.mark.asyncio
    async def test_stuck_job_is_reclaimed_and_retrigger_succeeds(self, runtime, seeded):
        pid = seeded["project_ids"][0]
        stuck_id = _stuck_job(runtime.store, pid, "CODE_QUALITY", minutes_ago=40)
        runtime.governor.start(f"CODE_QUALITY-{pid}", owner=stuck_id)

        runner = runtime.runner("CODE_QUALITY")
        new_id = await runner.trigger(pid)
        await runner.wait(new_id)

        stuck = runner.get_job(stuck_id)
        assert stuck["status"] == "FAILED"
        assert "timed out after 30 minutes" in stuck["error_message"]
        assert stuck["elapsed_ms"] == 1_800_000
        assert runner.get_job(new_id)["status"] == "COMPLETED"
        assert runtime.governor.status()["count"] == 0

    @pytest.mark.asyncio
    async def test_recent_job_is_left_alone(self, runtime, seeded):
        pid = seeded["project_ids"][0]
        live_id = _stuck_job(runtime.store, pid, "CODE_QUALITY", minutes_ago=10)
        with pytest.raises(AlreadyRunning):
            await runtime.runner("CODE_QUALITY").trigger(pid)
        assert runtime.store.get(live_id)["status"] == "IN_PROGRESS"

    def test_short_tier_applies_to_coherence(self, runtime, seeded):
        pid = seeded["project_ids"][0]
        coherence = _stuck_job(runtime.store, pid, "COHERENCE", minutes_ago=1)
        innovation = _stuck_job(runtime.store, pid, "INNOVATION", minutes_ago=1)

        assert runtime.reclaimer.reclaim(pid, "COHERENCE") == [coherence]
        assert runtime.reclaimer.reclaim(pid, "INNOVATION") == []
        assert runtime.store.get(innovation)["status"] == "IN_PROGRESS"

    def test_reclaim_does_not_release_another_jobs_slot(self, runtime, seeded):
        pid = seeded["project_ids"][0]
        stuck_id = _stuck_job(runtime.store, pid, "INNOVATION", minutes_ago=45)
        runtime.governor.start(f"INNOVATION-{pid}", owner=stuck_id + 100)

        assert runtime.reclaimer.reclaim(pid, "INNOVATION") == [stuck_id]
        assert runtime.governor.is_running(f"INNOVATION-{pid}")


class TestSweep:
    def test_sweep_covers_every_layer(self, runtime, seeded):
        p1, p2, _ = seeded["project_ids"]
        a = _stuck_job(runtime.store, p1, "CODE_QUALITY", minutes_ago=31)
        b = _stuck_job(runtime.store, p2, "COHERENCE", minutes_ago=1)
        fresh = _stuck_job(runtime.store, p2, "TECH_DETECTION", minutes_ago=5)

        result = runtime.reclaimer.sweep()
        assert sorted(result["reclaimed_jobs"]) == sorted([a, b])
        assert result["evicted_slots"] == []
        assert runtime.store.get(fresh)["status"] == "IN_PROGRESS"

        events = [e["event"] for e in runtime.events.list("job", a)]
        assert "job.reclaimed" in events

    def test_sweep_evicts_slots_past_lifetime(self, settings, session_factory, seeded):
        now = [0.0]
        governor = ConcurrencyGovernor(2, clock=lambda: now[0])
        store = AnalysisJobStore(session_factory)
        reclaimer = StuckJobReclaimer(store, governor, settings)

        pid = seeded["project_ids"][0]
        job_id = _stuck_job(store, pid, "CODE_QUALITY", minutes_ago=0)
        governor.start(f"CODE_QUALITY-{pid}", owner=job_id)
        now[0] = settings.slot_max_lifetime_seconds + 1

        result = reclaimer.sweep()
        assert result["evicted_slots"] == [f"CODE_QUALITY-{pid}"]
        assert result["reclaimed_jobs"] == [job_id]
        job = store.get(job_id)
        assert job["status"] == "FAILED"
        assert "lifetime" in job["error_message"]
        assert governor.status()["count"] == 0

    @pytest.mark.asyncio
    async def test_sweep_cancels_the_reclaimed_task(self, runtime, analyzers, seeded):
        pids = seeded["project_ids"]
        runner = runtime.runner("CODE_QUALITY")
        analyzers["CODE_QUALITY"].gate.clear()

        stuck_id = await runner.trigger(pids[0])
        await asyncio.sleep(0)
        _backdate(runtime.store, stuck_id, minutes_ago=60)

        assert runtime.reclaimer.sweep()["reclaimed_jobs"] == [stuck_id]
        await runner.wait(stuck_id)
        assert runner.running_job_ids() == []
        stuck = runner.get_job(stuck_id)
        assert stuck["status"] == "FAILED"
        assert "timed out after 30 minutes" in stuck["error_message"]

        analyzers["CODE_QUALITY"].gate.set()
        new_id = await runner.trigger(pids[1])
        assert runner.running_job_ids() == [new_id]
        await runner.wait(new_id)
        assert runner.get_job(new_id)["status"] == "COMPLETED"
        assert runtime.governor.status()["count"] == 0
