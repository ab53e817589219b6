"""Tests for the MCP tool functions and the event sink they expose."""
from __future__ import annotations

import json

import pytest

from hackjury import mcp_server
from hackjury.events import EventSink


@pytest.fixture()
def mcp_runtime(runtime, monkeypatch):
    monkeypatch.setattr(mcp_server, "_runtime", runtime)
    return runtime


class TestTools:
    @pytest.mark.asyncio
    async def test_trigger_and_progress(self, mcp_runtime, seeded):
        pid = seeded["project_ids"][0]
        out = await mcp_server.trigger_analysis(pid, "coherence")
        assert out["status"] == "PENDING"
        await mcp_runtime.runner("COHERENCE").wait(out["job_id"])

        progress = mcp_server.get_analysis_progress(pid, "COHERENCE")
        assert progress["status"] == "COMPLETED"

    @pytest.mark.asyncio
    async def test_errors_come_back_as_dicts(self, mcp_runtime):
        out = await mcp_server.trigger_analysis(9999, "CODE_QUALITY")
        assert out["status_code"] == 404
        assert "not found" in out["error"]

        assert mcp_server.get_jury_results(404)["status_code"] == 404

    @pytest.mark.asyncio
    async def test_jury_flow(self, mcp_runtime, seeded):
        created = mcp_server.create_jury_session(seeded["hackathon_id"], scoring_configuration="BALANCED")
        sid = created["id"]
        assert created["eligibility_criteria"]["scoring_configuration"] == "BALANCED"

        early = await mcp_server.execute_jury_layer(sid, 2)
        assert early["status_code"] == 409

        for layer in (1, 2, 3, 4):
            assert (await mcp_server.execute_jury_layer(sid, layer))["layer"] == layer
        assert mcp_server.get_jury_results(sid)["final_results"]["configuration"] == "BALANCED"
        assert mcp_server.get_latest_jury_session(seeded["hackathon_id"])["status"] == "COMPLETED"
        assert mcp_server.get_latest_jury_session(404)["status_code"] == 404

    def test_scoring_and_admin(self, mcp_runtime):
        assert mcp_server.calculate_unified_score(code_quality=80, configuration="BALANCED")["overall"] == 80.0
        assert mcp_server.calculate_unified_score(configuration="NOPE")["status_code"] == 400
        assert mcp_server.get_governor_status()["ceiling"] == 2
        assert mcp_server.reclaim_stuck_jobs() == {"reclaimed_jobs": [], "evicted_slots": []}

    def test_overview_resource(self):
        overview = json.loads(mcp_server.hackjury_overview())
        assert set(overview["analysis_layers"]) == {"CODE_QUALITY", "TECH_DETECTION", "COHERENCE", "INNOVATION"}
        assert "BALANCED" in overview["scoring_configurations"]


class TestEventSink:
    def test_emit_and_list(self, session_factory):
        sink = EventSink(session_factory)
        sink.emit("job", 1, "job.started", {"stage": "starting"})
        sink.emit("job", 2, "job.started")
        events = sink.list("job", 1)
        assert len(events) == 1
        assert events[0]["payload"] == {"stage": "starting"}

    def test_delivery_failure_is_swallowed(self):
        def broken_factory():
            raise RuntimeError("database is gone")

        EventSink(broken_factory).emit("job", 1, "job.started")
