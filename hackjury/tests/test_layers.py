"""Tests for the default jury layer verdicts."""
from __future__ import annotations

from typing import Any

import pytest

from conftest import make_github
from hackjury.layers import DefaultLayerExecutor, ProjectInput, layer_scores_for
from hackjury.utils import utcnow


def _report(layer_type: str, status: str = "COMPLETED", score: float | None = None,
            result: dict[str, Any] | None = None, job_id: int = 1) -> dict[str, Any]:
    return {
        "id": job_id,
        "layer_type": layer_type,
        "status": status,
        "score": score,
        "result": result or {},
        "created_at": utcnow().isoformat(),
    }


def _project(**kwargs) -> ProjectInput:
    defaults = dict(
        id=1, name="Demo", github_url="https://github.com/team1/repo1",
        submitted_at=utcnow(), track_id=1, track_name="DeFi",
    )
    defaults.update(kwargs)
    return ProjectInput(**defaults)


class TestEligibility:
    @pytest.mark.asyncio
    async def test_no_criteria_passes(self):
        executor = DefaultLayerExecutor(make_github())
        verdict = await executor.evaluate(1, _project(), {})
        assert not verdict.eliminated
        assert verdict.score == 100.0
        assert verdict.reason == "Meets all eligibility criteria"

    @pytest.mark.asyncio
    async def test_missing_submission(self):
        executor = DefaultLayerExecutor(make_github())
        verdict = await executor.evaluate(1, _project(submitted_at=None), {"submission_deadline": True})
        assert verdict.eliminated
        assert verdict.score == 0.0

    @pytest.mark.asyncio
    async def test_missing_repository_url(self):
        executor = DefaultLayerExecutor(make_github())
        verdict = await executor.evaluate(1, _project(github_url=""), {"repository_access": True})
        assert verdict.eliminated
        assert verdict.reason == "No GitHub repository URL provided"

    @pytest.mark.asyncio
    async def test_inaccessible_repository(self):
        github = make_github(accessible=False, is_public=False)
        executor = DefaultLayerExecutor(github)
        verdict = await executor.evaluate(1, _project(), {"repository_access": True})
        assert verdict.eliminated
        assert verdict.reason.startswith("Repository not accessible")
        github.check_accessibility.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_private_repository(self):
        executor = DefaultLayerExecutor(make_github(accessible=True, is_public=False))
        verdict = await executor.evaluate(1, _project(), {"repository_public": True})
        assert verdict.eliminated
        assert verdict.reason == "Repository must be public but appears to be private"

    @pytest.mark.asyncio
    async def test_repository_not_checked_without_criteria(self):
        github = make_github(accessible=False)
        executor = DefaultLayerExecutor(github)
        verdict = await executor.evaluate(1, _project(github_url=""), {})
        assert not verdict.eliminated
        github.check_accessibility.assert_not_awaited()


class TestTechnology:
    @pytest.mark.asyncio
    async def test_no_report_gets_default(self):
        verdict = await DefaultLayerExecutor(make_github()).evaluate(2, _project(), {})
        assert not verdict.eliminated
        assert verdict.score == 70.0
        assert verdict.evidence["default_score"] is True

    @pytest.mark.asyncio
    async def test_unfinished_report_gets_default(self):
        project = _project(reports={"TECH_DETECTION": _report("TECH_DETECTION", status="FAILED")})
        verdict = await DefaultLayerExecutor(make_github()).evaluate(2, project, {})
        assert verdict.score == 70.0
        assert "FAILED" in verdict.reason

    @pytest.mark.asyncio
    async def test_no_blockchain_is_eliminated(self):
        report = _report("TECH_DETECTION", score=0.0, result={"technology_category": "NO_BLOCKCHAIN", "confidence": 80})
        verdict = await DefaultLayerExecutor(make_github()).evaluate(2, _project(reports={"TECH_DETECTION": report}), {})
        assert verdict.eliminated
        assert verdict.score == 0.0

    @pytest.mark.asyncio
    async def test_hedera_uses_best_signal(self):
        report = _report("TECH_DETECTION", score=90.0, result={
            "technology_category": "HEDERA", "confidence": 75, "hedera_usage_score": 90,
            "detected_technologies": ["@hashgraph/sdk"],
        })
        verdict = await DefaultLayerExecutor(make_github()).evaluate(2, _project(reports={"TECH_DETECTION": report}), {})
        assert not verdict.eliminated
        assert verdict.score == 90.0
        assert verdict.evidence["blockchain_technology"] == "HEDERA"


class TestCodeQuality:
    @pytest.mark.asyncio
    async def test_no_report_gets_default(self):
        verdict = await DefaultLayerExecutor(make_github()).evaluate(3, _project(), {})
        assert not verdict.eliminated
        assert verdict.score == 60.0

    @pytest.mark.asyncio
    async def test_low_richness_is_penalized(self):
        report = _report("CODE_QUALITY", score=80.0, result={"overall_score": 80, "richness_score": 40})
        verdict = await DefaultLayerExecutor(make_github()).evaluate(3, _project(reports={"CODE_QUALITY": report}), {})
        assert not verdict.eliminated
        assert verdict.score == 40.0
        assert "below 50% threshold" in verdict.reason

    @pytest.mark.asyncio
    async def test_penalty_floor(self):
        report = _report("CODE_QUALITY", score=20.0, result={"overall_score": 20, "richness_score": 10})
        verdict = await DefaultLayerExecutor(make_github()).evaluate(3, _project(reports={"CODE_QUALITY": report}), {})
        assert verdict.score == 30.0

    @pytest.mark.asyncio
    async def test_rich_code_keeps_score(self):
        report = _report("CODE_QUALITY", score=82.0, result={"overall_score": 82, "richness_score": 70})
        verdict = await DefaultLayerExecutor(make_github()).evaluate(3, _project(reports={"CODE_QUALITY": report}), {})
        assert verdict.score == 82.0


class TestFinalAnalysis:
    def test_layer_scores_only_from_completed_reports(self):
        project = _project(reports={
            "CODE_QUALITY": _report("CODE_QUALITY", score=80.0),
            "INNOVATION": _report("INNOVATION", status="IN_PROGRESS", score=None),
        })
        assert layer_scores_for(project) == {
            "code_quality": 80.0, "innovation": None, "coherence": None, "hedera": None,
        }

    @pytest.mark.asyncio
    async def test_unified_score_drives_verdict(self):
        project = _project(reports={
            "CODE_QUALITY": _report("CODE_QUALITY", score=80.0),
            "INNOVATION": _report("INNOVATION", score=60.0),
            "COHERENCE": _report("COHERENCE", score=70.0),
            "TECH_DETECTION": _report("TECH_DETECTION", score=50.0),
        })
        verdict = await DefaultLayerExecutor(make_github()).evaluate(4, project, {})
        assert not verdict.eliminated
        assert verdict.score == pytest.approx(68.0)
        assert verdict.evidence["unified_score"]["breakdown"]["completeness"] == 1.0

    @pytest.mark.asyncio
    async def test_criteria_configuration_is_used(self):
        project = _project(reports={"CODE_QUALITY": _report("CODE_QUALITY", score=80.0)})
        verdict = await DefaultLayerExecutor(make_github()).evaluate(
            4, project, {"scoring_configuration": "BALANCED"},
        )
        # 80 with a 7.5 point penalty for three missing layers
        assert verdict.score == pytest.approx(72.5)
        assert "BALANCED" in verdict.reason
