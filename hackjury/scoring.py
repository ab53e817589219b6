"""Unified scoring: one 0-100 number from up to four layer scores.

Weights are renormalized over the layers that actually have a positive score,
so a missing layer does not drag the average towards zero. A score of exactly
0 is treated the same as "not analyzed"; ``breakdown.present_layers`` lists the
layers that counted so callers can tell the two apart.
"""
from __future__ import annotations

from typing import Any, Mapping

from hackjury.errors import InputValidationError

LAYER_KEYS = ("code_quality", "innovation", "coherence", "hedera")

_ALIASES = {"codeQuality": "code_quality"}

SCORING_CONFIGURATIONS: dict[str, dict[str, float]] = {
    "HACKATHON_STANDARD": {"code_quality": 0.35, "innovation": 0.25, "coherence": 0.25, "hedera": 0.15},
    "INNOVATION_FOCUSED": {"code_quality": 0.25, "innovation": 0.40, "coherence": 0.20, "hedera": 0.15},
    "TECHNICAL_FOCUSED": {"code_quality": 0.50, "innovation": 0.20, "coherence": 0.20, "hedera": 0.10},
    "BALANCED": {"code_quality": 0.25, "innovation": 0.25, "coherence": 0.25, "hedera": 0.25},
}

CONFIGURATION_DESCRIPTIONS = {
    "HACKATHON_STANDARD": "Standard hackathon evaluation with balanced technical and innovation focus",
    "INNOVATION_FOCUSED": "Innovation-focused evaluation for creativity competitions",
    "TECHNICAL_FOCUSED": "Technical implementation focused evaluation",
    "BALANCED": "Equal weight across all evaluation criteria",
}

_LAYER_LABELS = {
    "code_quality": "Code Quality",
    "innovation": "Innovation",
    "coherence": "Coherence",
    "hedera": "Blockchain Usage",
}

INCOMPLETE_PENALTY_POINTS = 10.0
EXCEPTIONAL_THRESHOLD = 90.0
EXCEPTIONAL_BONUS = 5.0
COMPLETENESS_THRESHOLD = 80.0
COMPLETENESS_BONUS = 2.0


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _canonical(key: str) -> str:
    key = _ALIASES.get(key, key)
    if key not in LAYER_KEYS:
        raise InputValidationError(f"Unknown scoring layer {key!r}", {"valid_layers": list(LAYER_KEYS)})
    return key


def normalize_scores(layer_scores: Mapping[str, Any] | None) -> dict[str, float]:
    provided = {_canonical(k): v for k, v in (layer_scores or {}).items()}
    normalized = {}
    for key in LAYER_KEYS:
        value = provided.get(key)
        if value is None:
            normalized[key] = 0.0
            continue
        try:
            normalized[key] = _clamp(float(value))
        except (TypeError, ValueError):
            raise InputValidationError(f"Score for {key} must be a number, got {value!r}")
    return normalized


def completeness(scores: Mapping[str, float]) -> float:
    return sum(1 for key in LAYER_KEYS if scores[key] > 0) / len(LAYER_KEYS)


def resolve_weights(configuration: str | None, custom_weights: Mapping[str, Any] | None = None) -> dict[str, float]:
    name = (configuration or "HACKATHON_STANDARD").upper()
    if name not in SCORING_CONFIGURATIONS:
        raise InputValidationError(
            f"Unknown scoring configuration {configuration!r}",
            {"available": list(SCORING_CONFIGURATIONS)},
        )
    weights = dict(SCORING_CONFIGURATIONS[name])
    for key, value in (custom_weights or {}).items():
        if value is None:
            continue
        key = _canonical(key)
        try:
            weight = float(value)
        except (TypeError, ValueError):
            raise InputValidationError(f"Weight for {key} must be a number, got {value!r}")
        if not 0.0 <= weight <= 1.0:
            raise InputValidationError(f"Weight for {key} must be within [0, 1], got {weight}")
        weights[key] = weight
    return weights


def methodology(configuration: str | None = None) -> str:
    name = (configuration or "HACKATHON_STANDARD").upper()
    weights = SCORING_CONFIGURATIONS.get(name, SCORING_CONFIGURATIONS["HACKATHON_STANDARD"])
    parts = ", ".join(f"{_LAYER_LABELS[k]} ({weights[k] * 100:g}%)" for k in LAYER_KEYS)
    return f"Unified scoring using {name.lower().replace('_', ' ')} configuration: {parts}"


def calculate_unified_score(
    layer_scores: Mapping[str, Any] | None,
    configuration: str | None = None,
    custom_weights: Mapping[str, Any] | None = None,
    apply_quality_adjustments: bool = False,
) -> dict[str, Any]:
    weights = resolve_weights(configuration, custom_weights)
    scores = normalize_scores(layer_scores)
    present = [key for key in LAYER_KEYS if scores[key] > 0]

    base = sum(scores[k] * weights[k] for k in present)
    total_weight = sum(weights[k] for k in present)
    adjusted = base / total_weight if total_weight > 0 else 0.0
    comp = completeness(scores)

    penalties: list[dict[str, Any]] = []
    bonuses: list[dict[str, Any]] = []
    final = adjusted
    if apply_quality_adjustments:
        if comp < 1:
            penalty = (1 - comp) * INCOMPLETE_PENALTY_POINTS
            missing = len(LAYER_KEYS) - len(present)
            penalties.append({
                "type": "incomplete_analysis",
                "amount": penalty,
                "reason": f"Missing {missing} analysis layer(s)",
            })
            final -= penalty
        if adjusted >= EXCEPTIONAL_THRESHOLD:
            bonuses.append({"type": "exceptional", "amount": EXCEPTIONAL_BONUS,
                            "reason": "Exceptional overall performance"})
            final += EXCEPTIONAL_BONUS
        if comp == 1 and adjusted >= COMPLETENESS_THRESHOLD:
            bonuses.append({"type": "completeness", "amount": COMPLETENESS_BONUS,
                            "reason": "Complete analysis across all layers"})
            final += COMPLETENESS_BONUS

    return {
        "overall": round(_clamp(final), 2),
        "layers": scores,
        "weights": weights,
        "methodology": methodology(configuration),
        "confidence": round(min(1.0, comp * 1.2), 4),
        "breakdown": {
            "base_scores": scores,
            "weighted_scores": {k: scores[k] * weights[k] for k in LAYER_KEYS},
            "adjusted_score": round(adjusted, 2),
            "completeness": comp,
            "present_layers": present,
            "missing_layers": [k for k in LAYER_KEYS if k not in present],
            "penalties": penalties,
            "bonuses": bonuses,
            "final_score": round(final, 2),
        },
    }


def available_configurations() -> list[dict[str, Any]]:
    return [
        {"name": name, "description": CONFIGURATION_DESCRIPTIONS[name], "weights": dict(weights)}
        for name, weights in SCORING_CONFIGURATIONS.items()
    ]


def compare_scores(a: Mapping[str, Any], b: Mapping[str, Any]) -> dict[str, Any]:
    """Difference between two unified scores (``a - b``)."""
    overall_diff = float(a["overall"]) - float(b["overall"])
    layer_diffs = {k: float(a["layers"].get(k, 0)) - float(b["layers"].get(k, 0)) for k in LAYER_KEYS}
    significant = abs(overall_diff) > 5 or any(abs(d) > 10 for d in layer_diffs.values())

    analysis = f"Overall difference: {overall_diff:.1f} points. "
    if significant:
        largest = max(LAYER_KEYS, key=lambda k: abs(layer_diffs[k]))
        analysis += f"Largest layer difference: {largest} ({layer_diffs[largest]:.1f} points)."
    else:
        analysis += "Differences are within normal variance."

    return {
        "overall_difference": overall_diff,
        "layer_differences": layer_diffs,
        "significant_difference": significant,
        "analysis": analysis,
    }


class ScoringEngine:
    """Stateless facade carrying the deployment's default configuration."""

    def __init__(self, default_configuration: str = "HACKATHON_STANDARD"):
        resolve_weights(default_configuration)
        self.default_configuration = default_configuration.upper()

    def calculate(
        self,
        layer_scores: Mapping[str, Any] | None,
        configuration: str | None = None,
        custom_weights: Mapping[str, Any] | None = None,
        apply_quality_adjustments: bool = False,
    ) -> dict[str, Any]:
        return calculate_unified_score(
            layer_scores,
            configuration or self.default_configuration,
            custom_weights,
            apply_quality_adjustments,
        )

    available_configurations = staticmethod(available_configurations)
    compare = staticmethod(compare_scores)
    methodology = staticmethod(methodology)
