"""Default jury layer verdicts.

1. eligibility  2. technology detection  3. code quality  4. final composite

Layers 2-4 read the latest analysis job of the matching layer type; a missing
or unfinished report keeps the project in with a default score. Only layers 1
and 2 can eliminate.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from hackjury.analyzers import HEDERA, NO_BLOCKCHAIN, OTHER_BLOCKCHAIN
from hackjury.errors import InputValidationError
from hackjury.github import GitHubClient, parse_github_url
from hackjury.models import JobStatus, LayerType
from hackjury.scoring import ScoringEngine
from hackjury.utils import utcnow

log = logging.getLogger(__name__)

LAYER_NAMES = {
    1: "eligibility",
    2: "technology_detection",
    3: "code_quality",
    4: "final_analysis",
}

DEFAULT_TECH_SCORE = 70.0
NEUTRAL_TECH_SCORE = 50.0
DEFAULT_CODE_QUALITY_SCORE = 60.0
RICHNESS_THRESHOLD = 50.0
RICHNESS_FLOOR_SCORE = 30.0


@dataclass
class ProjectInput:
    """Snapshot of one project as the jury sees it, loaded before any await."""
    id: int
    name: str
    github_url: str = ""
    submitted_at: datetime | None = None
    track_id: int | None = None
    track_name: str = ""
    # latest analysis job per layer type (job_to_dict shape), None when never run
    reports: dict[str, dict[str, Any] | None] = field(default_factory=dict)

    def report(self, layer_type: LayerType) -> dict[str, Any] | None:
        return self.reports.get(layer_type.value)


@dataclass
class Verdict:
    eliminated: bool
    score: float
    reason: str
    evidence: dict[str, Any] = field(default_factory=dict)


class LayerExecutor(Protocol):
    async def evaluate(self, layer: int, project: ProjectInput, criteria: dict[str, Any]) -> Verdict: ...


def _completed(report: dict[str, Any] | None) -> bool:
    return bool(report) and report["status"] == JobStatus.COMPLETED


def _report_status(report: dict[str, Any] | None) -> str:
    return report["status"] if report else "MISSING"


def layer_scores_for(project: ProjectInput) -> dict[str, float | None]:
    """Unified-score inputs from the latest completed analysis of each layer type."""
    def score(layer_type: LayerType) -> float | None:
        report = project.report(layer_type)
        return report.get("score") if _completed(report) else None

    return {
        "code_quality": score(LayerType.CODE_QUALITY),
        "innovation": score(LayerType.INNOVATION),
        "coherence": score(LayerType.COHERENCE),
        "hedera": score(LayerType.TECH_DETECTION),
    }


class DefaultLayerExecutor:
    def __init__(self, github: GitHubClient | None = None, scoring: ScoringEngine | None = None):
        self.github = github or GitHubClient()
        self.scoring = scoring or ScoringEngine()

    async def evaluate(self, layer: int, project: ProjectInput, criteria: dict[str, Any]) -> Verdict:
        if layer == 1:
            return await self.eligibility(project, criteria)
        if layer == 2:
            return self.technology(project)
        if layer == 3:
            return self.code_quality(project)
        if layer == 4:
            return self.final_analysis(project, criteria)
        raise InputValidationError(f"Invalid layer {layer}; must be between 1 and 4")

    async def eligibility(self, project: ProjectInput, criteria: dict[str, Any]) -> Verdict:
        evidence: dict[str, Any] = {}

        if criteria.get("submission_deadline"):
            evidence["submitted_at"] = project.submitted_at.isoformat() if project.submitted_at else None
            if project.submitted_at is None:
                return Verdict(True, 0.0, "Project was not properly submitted", evidence)

        check_access = bool(criteria.get("repository_access"))
        check_public = bool(criteria.get("repository_public"))
        if check_access or check_public:
            evidence["github_url"] = project.github_url
            if not (project.github_url or "").strip():
                return Verdict(True, 0.0, "No GitHub repository URL provided", evidence)
            try:
                ref = parse_github_url(project.github_url)
            except InputValidationError as exc:
                evidence["repository_error"] = exc.message
                return Verdict(True, 0.0, f"Invalid GitHub repository URL: {exc.message}", evidence)

            access = await self.github.check_accessibility(ref)
            evidence["repository_accessibility"] = {**access, "checked_at": utcnow().isoformat()}
            if check_access and not access["accessible"]:
                return Verdict(True, 0.0, f"Repository not accessible: {access.get('error')}", evidence)
            if check_public and not access["is_public"]:
                reason = (f"Repository accessibility issue: {access['error']}" if access.get("error")
                          else "Repository must be public but appears to be private")
                return Verdict(True, 0.0, reason, evidence)

        return Verdict(False, 100.0, "Meets all eligibility criteria", evidence)

    def technology(self, project: ProjectInput) -> Verdict:
        report = project.report(LayerType.TECH_DETECTION)
        if not _completed(report):
            status = _report_status(report)
            reason = (f"Technology analysis incomplete (status: {status}) - assigned default score" if report
                      else "No technology analysis report available - assigned default score")
            return Verdict(False, DEFAULT_TECH_SCORE, reason, {"default_score": True, "report_status": status})

        result = report["result"]
        category = result.get("technology_category")
        confidence = float(result.get("confidence") or 0)
        usage = float(result.get("hedera_usage_score") or 0)
        evidence = {
            "report": {
                "id": report["id"],
                "technology_category": category,
                "confidence": confidence,
                "detected_technologies": result.get("detected_technologies", []),
                "created_at": report["created_at"],
            },
        }
        if category == NO_BLOCKCHAIN:
            return Verdict(True, 0.0, "Project does not use blockchain technology", evidence)
        if category == OTHER_BLOCKCHAIN:
            evidence["blockchain_technology"] = OTHER_BLOCKCHAIN
            return Verdict(False, max(confidence, usage),
                           f"Project uses blockchain technology (confidence: {round(confidence)}%)", evidence)
        if category == HEDERA:
            evidence["blockchain_technology"] = HEDERA
            evidence["hedera_usage_score"] = usage
            return Verdict(False, max(confidence, usage),
                           f"Project uses Hedera technology (confidence: {round(confidence)}%, usage: {round(usage)}%)",
                           evidence)
        evidence["default_score"] = True
        return Verdict(False, NEUTRAL_TECH_SCORE,
                       "Unable to determine technology category - assigned neutral score", evidence)

    def code_quality(self, project: ProjectInput) -> Verdict:
        report = project.report(LayerType.CODE_QUALITY)
        if not _completed(report):
            status = _report_status(report)
            reason = (f"Code quality analysis incomplete (status: {status}) - assigned default score" if report
                      else "No code quality analysis report available - assigned default score")
            return Verdict(False, DEFAULT_CODE_QUALITY_SCORE, reason, {"default_score": True, "report_status": status})

        result = report["result"]
        richness = float(result.get("richness_score") or 0)
        overall = float(result.get("overall_score") or 0)
        evidence = {
            "report_id": report["id"],
            "richness_score": richness,
            "overall_score": overall,
            "technical_score": result.get("technical_score"),
            "security_score": result.get("security_score"),
        }
        if richness < RICHNESS_THRESHOLD:
            return Verdict(False, max(RICHNESS_FLOOR_SCORE, overall * 0.5),
                           f"Code richness score ({richness:g}%) is below {RICHNESS_THRESHOLD:g}% threshold"
                           " - penalized score applied", evidence)
        return Verdict(False, max(0.0, overall),
                       f"Code quality meets standards (richness: {richness:g}%, overall: {round(overall)}%)", evidence)

    def final_analysis(self, project: ProjectInput, criteria: dict[str, Any]) -> Verdict:
        configuration = criteria.get("scoring_configuration") or self.scoring.default_configuration
        inputs = layer_scores_for(project)
        unified = self.scoring.calculate(
            inputs,
            configuration=configuration,
            custom_weights=criteria.get("custom_weights"),
            apply_quality_adjustments=True,
        )
        present = unified["breakdown"]["present_layers"]
        reason = (f"Final analysis: unified score {unified['overall']:.1f}/100 "
                  f"from {len(present)}/4 analysis layers ({configuration})")
        return Verdict(False, unified["overall"], reason, {"unified_score": unified, "layer_inputs": inputs})
