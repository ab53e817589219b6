"""Analysis backends for the four per-project layers.

Code quality, coherence and innovation are LLM judgments over a repository
snapshot. Technology detection is a deterministic pattern scan over fetched
files and package manifests.

Every backend result goes through :func:`coerce_result`: a partial or
malformed answer is defaulted field by field (numbers to 0, lists to ``[]``,
text to ``""``) rather than failing the job. Only a failed backend call
raises, as :class:`ExternalBackendFailure`.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from hackjury.errors import ExternalBackendFailure
from hackjury.github import MANIFEST_FILES, RepoSnapshot
from hackjury.llm import LLMCallError, LLMClient
from hackjury.models import LayerType

log = logging.getLogger(__name__)

_MAX_FILE_CHARS = 4_000
_MAX_DOSSIER_CHARS = 60_000
_MAX_README_CHARS = 8_000


@dataclass
class AnalysisContext:
    """What the runner knows about the project being analyzed."""
    project_id: int
    project_name: str
    github_url: str
    description: str = ""
    track_name: str = ""
    track_description: str = ""
    options: dict[str, Any] = field(default_factory=dict)
    max_files: int = 40


# ---------------------------------------------------------------------------
# Result coercion
# ---------------------------------------------------------------------------

# Field kinds: "score" 0-100 float, "count" int >= 0, "list", "text", "bool", "dict"
CODE_QUALITY_FIELDS: dict[str, str] = {
    "overall_score": "score",
    "technical_score": "score",
    "security_score": "score",
    "documentation_score": "score",
    "performance_score": "score",
    "richness_score": "score",
    "code_smells_count": "count",
    "bugs_count": "count",
    "vulnerabilities_count": "count",
    "summary": "text",
    "strengths": "list",
    "improvements": "list",
}

COHERENCE_FIELDS: dict[str, str] = {
    "overall_score": "score",
    "summary": "text",
    "track_alignment": "score",
    "readme_quality": "score",
    "project_purpose": "text",
    "track_justification": "text",
    "inconsistencies": "list",
    "suggestions": "list",
    "evidence": "list",
}

INNOVATION_FIELDS: dict[str, str] = {
    "score": "score",
    "summary": "text",
    "novelty_score": "score",
    "creativity_score": "score",
    "technical_innovation": "score",
    "market_innovation": "score",
    "implementation_innovation": "score",
    "potential_impact": "score",
    "patent_potential": "bool",
    "evidence": "list",
}


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


def _lookup(raw: dict[str, Any], key: str) -> Any:
    if key in raw:
        return raw[key]
    return raw.get(_camel(key))


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return 0.0 if number != number else number  # NaN


def coerce_value(value: Any, kind: str) -> Any:
    if kind == "score":
        return max(0.0, min(100.0, _as_number(value)))
    if kind == "count":
        return max(0, int(_as_number(value)))
    if kind == "list":
        if isinstance(value, list):
            return value
        if isinstance(value, dict):
            return [f"{k}: {v}" for k, v in value.items()]
        return [value] if isinstance(value, str) and value else []
    if kind == "bool":
        if isinstance(value, str):
            return value.strip().lower() in ("true", "yes", "1")
        return bool(value)
    if kind == "dict":
        return value if isinstance(value, dict) else {}
    return "" if value is None else str(value)


def coerce_result(raw: Any, fields: dict[str, str]) -> dict[str, Any]:
    """Default every expected field; unknown extra keys are kept as-is."""
    raw = raw if isinstance(raw, dict) else {}
    result = {k: v for k, v in raw.items() if k not in fields and _snake(k) not in fields}
    for key, kind in fields.items():
        result[key] = coerce_value(_lookup(raw, key), kind)
    return result


def _snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


# ---------------------------------------------------------------------------
# Dossier
# ---------------------------------------------------------------------------


def build_dossier(ctx: AnalysisContext, snapshot: RepoSnapshot, include_code: bool = True) -> str:
    sections = [f"PROJECT: {ctx.project_name}", f"REPOSITORY: {snapshot.ref.full_name}"]
    if ctx.description:
        sections.append(f"DESCRIPTION: {ctx.description}")
    if ctx.track_name:
        sections.append(f"TRACK: {ctx.track_name}")
    if ctx.track_description:
        sections.append(f"TRACK DESCRIPTION: {ctx.track_description}")
    meta = snapshot.metadata
    if meta.get("language"):
        sections.append(f"PRIMARY LANGUAGE: {meta['language']}")

    sections.append("\n--- README ---")
    sections.append((snapshot.readme or "No README available")[:_MAX_README_CHARS])

    sections.append(f"\n--- FILE TREE ({len(snapshot.tree)} files) ---")
    sections.append("\n".join(f"- {p}" for p in snapshot.tree[:200]))

    if include_code:
        for f in snapshot.files:
            sections.append(f"\n--- FILE: {f.path} ---")
            sections.append(f.content[:_MAX_FILE_CHARS])

    return "\n".join(sections)[:_MAX_DOSSIER_CHARS]


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class Analyzer:
    """Base backend: ``analyze`` returns a coerced result dict."""

    layer_type: LayerType
    fields: dict[str, str] = {}
    score_field = "score"

    async def analyze(self, ctx: AnalysisContext, snapshot: RepoSnapshot) -> dict[str, Any]:
        raise NotImplementedError

    def headline_score(self, result: dict[str, Any]) -> float | None:
        value = result.get(self.score_field)
        return None if value is None else float(value)


class LLMAnalyzer(Analyzer):
    system_prompt = ""
    include_code = True

    def __init__(self, client: LLMClient | None = None):
        self._client = client

    @property
    def client(self) -> LLMClient:
        if self._client is None:
            self._client = LLMClient()
        return self._client

    async def analyze(self, ctx: AnalysisContext, snapshot: RepoSnapshot) -> dict[str, Any]:
        dossier = build_dossier(ctx, snapshot, include_code=self.include_code)
        try:
            raw = await self.client.call(self.system_prompt, dossier)
        except LLMCallError as exc:
            raise ExternalBackendFailure(str(exc), {"retryable": exc.retryable}) from exc
        result = coerce_result(raw, self.fields)
        result["agent_model"] = self.client.model
        return self.finalize(result, ctx, snapshot)

    def finalize(self, result: dict[str, Any], ctx: AnalysisContext, snapshot: RepoSnapshot) -> dict[str, Any]:
        return result


class CodeQualityAnalyzer(LLMAnalyzer):
    layer_type = LayerType.CODE_QUALITY
    fields = CODE_QUALITY_FIELDS
    score_field = "overall_score"
    system_prompt = """\
You are a senior engineer reviewing a hackathon submission's source code.

Score each dimension 0-100. "richness_score" measures how much real, working \
functionality the repository contains (100 = substantial original implementation, \
0 = empty template or boilerplate only).

Respond with ONLY valid JSON:
{
  "overall_score": 0-100,
  "technical_score": 0-100,
  "security_score": 0-100,
  "documentation_score": 0-100,
  "performance_score": 0-100,
  "richness_score": 0-100,
  "code_smells_count": <int>,
  "bugs_count": <int>,
  "vulnerabilities_count": <int>,
  "summary": "<2-3 sentences>",
  "strengths": ["..."],
  "improvements": ["..."]
}
"""


class CoherenceAnalyzer(LLMAnalyzer):
    layer_type = LayerType.COHERENCE
    fields = COHERENCE_FIELDS
    include_code = False
    system_prompt = """\
You are judging whether a hackathon project is coherent: does the README \
explain what the project does, does the code structure match it, and does the \
project fit the hackathon track it was submitted to?

Respond with ONLY valid JSON:
{
  "overall_score": 0-100,
  "summary": "<brief coherence summary>",
  "track_alignment": 0-100,
  "readme_quality": 0-100,
  "project_purpose": "<what the project does>",
  "track_justification": "<how it fits the track>",
  "inconsistencies": ["..."],
  "suggestions": ["..."],
  "evidence": ["..."]
}
"""

    def finalize(self, result: dict[str, Any], ctx: AnalysisContext, snapshot: RepoSnapshot) -> dict[str, Any]:
        result["score"] = result["overall_score"]
        result["readme_exists"] = bool(snapshot.readme)
        return result


class InnovationAnalyzer(LLMAnalyzer):
    layer_type = LayerType.INNOVATION
    fields = INNOVATION_FIELDS
    system_prompt = """\
You are assessing the innovation of a hackathon project: novelty of the idea, \
creativity of the approach, and the technical, market and implementation \
innovation visible in the repository.

Respond with ONLY valid JSON:
{
  "score": 0-100,
  "summary": "<2-3 sentences>",
  "novelty_score": 0-100,
  "creativity_score": 0-100,
  "technical_innovation": 0-100,
  "market_innovation": 0-100,
  "implementation_innovation": 0-100,
  "potential_impact": 0-100,
  "patent_potential": true|false,
  "evidence": ["..."]
}
"""


# ---------------------------------------------------------------------------
# Technology detection (deterministic)
# ---------------------------------------------------------------------------

HEDERA = "HEDERA"
OTHER_BLOCKCHAIN = "OTHER_BLOCKCHAIN"
NO_BLOCKCHAIN = "NO_BLOCKCHAIN"

HEDERA_PATTERNS: dict[str, tuple[str, ...]] = {
    "sdk_usage": ("@hashgraph/sdk", "hedera-sdk", "com.hedera.hashgraph", "hiero-sdk"),
    "hashconnect_integration": ("hashconnect", "hashpack", "@bladelabs"),
    "account_services": ("AccountCreateTransaction", "AccountBalanceQuery", "TransferTransaction"),
    "token_services": ("TokenCreateTransaction", "TokenMintTransaction", "TokenAssociateTransaction"),
    "smart_contracts": ("ContractCreateTransaction", "ContractExecuteTransaction", "IHederaTokenService", "0x167"),
    "consensus_services": ("TopicCreateTransaction", "TopicMessageSubmitTransaction"),
    "file_services": ("FileCreateTransaction", "FileAppendTransaction"),
    "mirror_node_usage": ("mirrornode.hedera.com", "mirror-node", "mirrornode"),
}

OTHER_BLOCKCHAIN_PATTERNS: tuple[str, ...] = (
    "ethers", "web3", "wagmi", "viem", "hardhat", "truffle", "foundry",
    "@solana/web3.js", "@coral-xyz/anchor", "pragma solidity", "@openzeppelin",
    "cosmjs", "near-api-js", "polkadot", "bitcoinjs-lib",
)

_SERVICE_CATEGORIES = (
    "account_services", "token_services", "smart_contracts", "consensus_services",
    "file_services", "mirror_node_usage",
)


def _pattern(term: str) -> re.Pattern[str]:
    return re.compile(r"(?<![\w-])" + re.escape(term) + r"(?![\w-])", re.IGNORECASE)


_HEDERA_RES = {cat: [(t, _pattern(t)) for t in terms] for cat, terms in HEDERA_PATTERNS.items()}
_OTHER_RES = [(t, _pattern(t)) for t in OTHER_BLOCKCHAIN_PATTERNS]
_HEDERA_MENTION = _pattern("hedera")


def detect_technologies(snapshot: RepoSnapshot) -> dict[str, Any]:
    detected: dict[str, list[str]] = {cat: [] for cat in HEDERA_PATTERNS}
    other: list[str] = []
    evidence_files: list[dict[str, Any]] = []
    manifest_hit = False

    for f in snapshot.files:
        found: list[str] = []
        for cat, patterns in _HEDERA_RES.items():
            for term, rx in patterns:
                if rx.search(f.content):
                    found.append(term)
                    if term not in detected[cat]:
                        detected[cat].append(term)
                    if f.path.rsplit("/", 1)[-1] in MANIFEST_FILES:
                        manifest_hit = True
        for term, rx in _OTHER_RES:
            if rx.search(f.content):
                found.append(term)
                if term not in other:
                    other.append(term)
        if found:
            evidence_files.append({"file": f.path, "patterns": found})

    readme_mentions = bool(snapshot.readme and _HEDERA_MENTION.search(snapshot.readme))
    hedera_categories = [cat for cat, terms in detected.items() if terms]
    services = [cat for cat in _SERVICE_CATEGORIES if detected[cat]]

    if hedera_categories:
        category = HEDERA
        confidence = min(100.0, 50.0 + 10.0 * len(hedera_categories) + (10.0 if manifest_hit else 0.0)
                         + (5.0 if readme_mentions else 0.0))
        usage = min(100.0, 20.0 * len(services) + (20.0 if detected["sdk_usage"] else 0.0))
        complexity = "SIMPLE" if len(hedera_categories) <= 2 else "MODERATE" if len(hedera_categories) <= 4 else "ADVANCED"
        summary = f"Hedera usage detected across {len(hedera_categories)} pattern group(s)"
    elif readme_mentions:
        category = HEDERA
        confidence, usage, complexity = 35.0, 0.0, "SIMPLE"
        summary = "Hedera is mentioned in the README but no SDK or service usage was found in code"
    elif other:
        category = OTHER_BLOCKCHAIN
        confidence, usage, complexity = min(100.0, 40.0 + 15.0 * len(other)), 0.0, None
        summary = f"Non-Hedera blockchain libraries detected: {', '.join(other)}"
    else:
        category = NO_BLOCKCHAIN
        confidence = 80.0 if snapshot.files else 30.0
        usage, complexity = 0.0, None
        summary = "No blockchain technology detected"

    technologies = [t for terms in detected.values() for t in terms] + other
    return {
        "technology_category": category,
        "confidence": confidence,
        "hedera_usage_score": usage,
        "hedera_presence_detected": category == HEDERA,
        "complexity_level": complexity,
        "detected_technologies": technologies,
        "detected_patterns": detected,
        "other_blockchain_libs": other,
        "evidence_files": evidence_files,
        "files_scanned": len(snapshot.files),
        "summary": summary,
    }


class TechDetectionAnalyzer(Analyzer):
    layer_type = LayerType.TECH_DETECTION

    async def analyze(self, ctx: AnalysisContext, snapshot: RepoSnapshot) -> dict[str, Any]:
        return detect_technologies(snapshot)

    def headline_score(self, result: dict[str, Any]) -> float | None:
        if result.get("technology_category") == NO_BLOCKCHAIN:
            return 0.0
        return max(float(result.get("confidence") or 0), float(result.get("hedera_usage_score") or 0))


def default_analyzers(client: LLMClient | None = None) -> dict[str, Analyzer]:
    return {
        LayerType.CODE_QUALITY.value: CodeQualityAnalyzer(client),
        LayerType.TECH_DETECTION.value: TechDetectionAnalyzer(),
        LayerType.COHERENCE.value: CoherenceAnalyzer(client),
        LayerType.INNOVATION.value: InnovationAnalyzer(client),
    }
