"""Tests for analysis backends, result coercion, and the GitHub client."""
from __future__ import annotations

import base64
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from conftest import make_snapshot
from hackjury.analyzers import (
    CODE_QUALITY_FIELDS, AnalysisContext, CodeQualityAnalyzer, CoherenceAnalyzer,
    TechDetectionAnalyzer, coerce_result, detect_technologies,
)
from hackjury.errors import ExternalBackendFailure, InputValidationError
from hackjury.github import GitHubClient, parse_github_url, select_paths
from hackjury.llm import LLMCallError, extract_json_text, parse_json_object


def _ctx() -> AnalysisContext:
    return AnalysisContext(project_id=1, project_name="Demo", github_url="https://github.com/team1/repo1",
                           track_name="DeFi")


def _llm(answer) -> MagicMock:
    client = MagicMock()
    client.model = "test-model"
    if isinstance(answer, Exception):
        client.call = AsyncMock(side_effect=answer)
    else:
        client.call = AsyncMock(return_value=answer)
    return client


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


class TestCoercion:
    def test_partial_result_is_defaulted(self):
        result = coerce_result({"overall_score": "88.5", "strengths": "fast"}, CODE_QUALITY_FIELDS)
        assert result["overall_score"] == 88.5
        assert result["security_score"] == 0.0
        assert result["bugs_count"] == 0
        assert result["strengths"] == ["fast"]
        assert result["improvements"] == []
        assert result["summary"] == ""

    def test_camel_case_keys_and_extras(self):
        result = coerce_result({"overallScore": 120, "codeSmellsCount": -3, "notes": "kept"}, CODE_QUALITY_FIELDS)
        assert result["overall_score"] == 100.0
        assert result["code_smells_count"] == 0
        assert result["notes"] == "kept"
        assert "overallScore" not in result

    def test_non_dict_becomes_all_defaults(self):
        result = coerce_result(["not", "a", "dict"], CODE_QUALITY_FIELDS)
        assert set(CODE_QUALITY_FIELDS) <= set(result)
        assert result["overall_score"] == 0.0


class TestLLMAnalyzers:
    @pytest.mark.asyncio
    async def test_code_quality_headline_score(self):
        analyzer = CodeQualityAnalyzer(_llm({"overall_score": 77, "richness_score": 64}))
        result = await analyzer.analyze(_ctx(), make_snapshot({"src/app.ts": "export {}"}))
        assert analyzer.headline_score(result) == 77.0
        assert result["agent_model"] == "test-model"

    @pytest.mark.asyncio
    async def test_coherence_skips_code_and_records_readme(self):
        client = _llm({"overallScore": 66, "inconsistencies": {"readme": "mentions a mobile app"}})
        analyzer = CoherenceAnalyzer(client)
        result = await analyzer.analyze(_ctx(), make_snapshot({"src/secret.ts": "UNIQUE_CODE_MARKER"}, readme=None))

        assert result["score"] == 66.0
        assert result["readme_exists"] is False
        assert result["inconsistencies"] == ["readme: mentions a mobile app"]
        _, dossier = client.call.call_args.args
        assert "UNIQUE_CODE_MARKER" not in dossier
        assert "TRACK: DeFi" in dossier

    @pytest.mark.asyncio
    async def test_backend_error_is_external_failure(self):
        analyzer = CodeQualityAnalyzer(_llm(LLMCallError("rate limited", retryable=True)))
        with pytest.raises(ExternalBackendFailure) as exc_info:
            await analyzer.analyze(_ctx(), make_snapshot())
        assert exc_info.value.detail == {"retryable": True}

    def test_extract_json_from_fence(self):
        assert extract_json_text('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_parse_json_object(self):
        assert parse_json_object('{"score": 50}') == {"score": 50}
        with pytest.raises(LLMCallError) as exc_info:
            parse_json_object("not json")
        assert exc_info.value.retryable is False
        with pytest.raises(LLMCallError):
            parse_json_object("[1, 2]")

    def test_unknown_provider(self):
        from hackjury.llm import LLMClient
        with pytest.raises(ValueError):
            LLMClient(provider="bard")


# ---------------------------------------------------------------------------
# Technology detection
# ---------------------------------------------------------------------------


class TestTechDetection:
    def test_hedera_sdk_and_services(self):
        snapshot = make_snapshot({
            "package.json": '{"dependencies": {"@hashgraph/sdk": "^2.40.0"}}',
            "src/token.ts": "const tx = new TokenCreateTransaction(); new TopicCreateTransaction();",
        }, readme="Built on Hedera")
        result = detect_technologies(snapshot)
        assert result["technology_category"] == "HEDERA"
        assert result["hedera_presence_detected"] is True
        assert "@hashgraph/sdk" in result["detected_technologies"]
        assert result["detected_patterns"]["token_services"] == ["TokenCreateTransaction"]
        # sdk + token + consensus, manifest hit, README mention
        assert result["confidence"] == 95.0
        assert result["hedera_usage_score"] == 60.0
        assert result["complexity_level"] == "MODERATE"
        assert {f["file"] for f in result["evidence_files"]} == {"package.json", "src/token.ts"}

    def test_readme_mention_only(self):
        result = detect_technologies(make_snapshot({"src/a.py": "print('hi')"}, readme="We plan to use Hedera"))
        assert result["technology_category"] == "HEDERA"
        assert result["confidence"] == 35.0
        assert result["hedera_usage_score"] == 0.0

    def test_other_blockchain(self):
        result = detect_technologies(make_snapshot({"contracts/Token.sol": "pragma solidity ^0.8.0;"}, readme=None))
        assert result["technology_category"] == "OTHER_BLOCKCHAIN"
        assert result["other_blockchain_libs"] == ["pragma solidity"]

    def test_no_blockchain(self):
        snapshot = make_snapshot({"src/app.py": "import flask"}, readme="A todo app")
        result = detect_technologies(snapshot)
        assert result["technology_category"] == "NO_BLOCKCHAIN"
        assert TechDetectionAnalyzer().headline_score(result) == 0.0

    def test_word_boundaries(self):
        result = detect_technologies(make_snapshot({"src/a.ts": "const tethers = web3ish;"}, readme=None))
        assert result["technology_category"] == "NO_BLOCKCHAIN"

    @pytest.mark.asyncio
    async def test_headline_score_takes_best_signal(self):
        snapshot = make_snapshot({"package.json": '"@hashgraph/sdk"'}, readme=None)
        analyzer = TechDetectionAnalyzer()
        result = await analyzer.analyze(_ctx(), snapshot)
        assert analyzer.headline_score(result) == max(result["confidence"], result["hedera_usage_score"])


# ---------------------------------------------------------------------------
# GitHub
# ---------------------------------------------------------------------------


class TestParseGithubUrl:
    def test_plain_and_git_suffix(self):
        ref = parse_github_url("https://github.com/hashgraph/hedera-sdk-js.git")
        assert (ref.owner, ref.repo) == ("hashgraph", "hedera-sdk-js")
        assert ref.full_name == "hashgraph/hedera-sdk-js"

    def test_deep_link(self):
        ref = parse_github_url("https://github.com/team1/repo1/tree/main/src")
        assert ref.repo == "repo1"

    @pytest.mark.parametrize("url", ["", None, "https://gitlab.com/a/b", "not a url"])
    def test_invalid(self, url):
        with pytest.raises(InputValidationError):
            parse_github_url(url)


class TestSelectPaths:
    def test_manifests_first_then_shallow_sources(self):
        paths = ["src/deep/x.ts", "README.md", "index.ts", "package.json", "image.png", "src/a.ts"]
        assert select_paths(paths, 3) == ["package.json", "index.ts", "src/a.ts"]


def _json(status: int, payload) -> httpx.Response:
    return httpx.Response(status, json=payload)


class TestGitHubClient:
    @pytest.mark.asyncio
    async def test_accessibility(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/repos/team1/public":
                return _json(200, {"name": "public", "private": False, "default_branch": "main"})
            return _json(404, {"message": "Not Found"})

        client = GitHubClient(token="", transport=httpx.MockTransport(handler))
        ok = await client.check_accessibility(parse_github_url("https://github.com/team1/public"))
        missing = await client.check_accessibility(parse_github_url("https://github.com/team1/gone"))

        assert ok["accessible"] and ok["is_public"]
        assert ok["metadata"]["default_branch"] == "main"
        assert missing == {"accessible": False, "is_public": False, "error": "Repository not found or is private"}

    @pytest.mark.asyncio
    async def test_fetch_snapshot(self):
        def encoded(text: str) -> dict:
            return {"content": base64.b64encode(text.encode()).decode(), "size": len(text)}

        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path == "/repos/team1/repo1":
                return _json(200, {"name": "repo1", "private": False, "default_branch": "dev"})
            if path == "/repos/team1/repo1/git/trees/dev":
                return _json(200, {"tree": [
                    {"path": "package.json", "type": "blob"},
                    {"path": "src/index.ts", "type": "blob"},
                    {"path": "node_modules/x/index.js", "type": "blob"},
                    {"path": "src", "type": "tree"},
                ]})
            if path == "/repos/team1/repo1/readme":
                return _json(200, encoded("# Repo One"))
            if path == "/repos/team1/repo1/contents/package.json":
                return _json(200, encoded('{"name": "repo1"}'))
            if path == "/repos/team1/repo1/contents/src/index.ts":
                return _json(200, encoded("export const x = 1;"))
            return _json(404, {})

        client = GitHubClient(token="", transport=httpx.MockTransport(handler))
        snapshot = await client.fetch_snapshot(parse_github_url("https://github.com/team1/repo1"))

        assert snapshot.ref.branch == "dev"
        assert snapshot.readme == "# Repo One"
        assert snapshot.tree == ["package.json", "src/index.ts"]
        assert [f.path for f in snapshot.files] == ["package.json", "src/index.ts"]
        assert snapshot.files[1].content == "export const x = 1;"

    @pytest.mark.asyncio
    async def test_inaccessible_snapshot_raises(self):
        client = GitHubClient(token="", transport=httpx.MockTransport(lambda r: _json(404, {})))
        with pytest.raises(ExternalBackendFailure):
            await client.fetch_snapshot(parse_github_url("https://github.com/team1/gone"))
