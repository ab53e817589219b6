"""GitHub artifact fetching over the REST API (httpx)."""
from __future__ import annotations

import asyncio
import base64
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any

import httpx

from hackjury.errors import ExternalBackendFailure, InputValidationError

log = logging.getLogger(__name__)

_USER_AGENT = "HackJury/1.0"
_TIMEOUT = 15.0
_MAX_FILE_BYTES = 100_000

GITHUB_API = "https://api.github.com"

_REPO_RE = re.compile(r"github\.com/([^/]+)/([^/]+)")

# Files worth reading for analysis; everything else is listed but not fetched.
SOURCE_EXTENSIONS = (
    ".py", ".js", ".jsx", ".ts", ".tsx", ".sol", ".rs", ".go", ".java", ".kt",
    ".rb", ".php", ".cs", ".cpp", ".c", ".h", ".swift", ".move", ".vue", ".svelte",
)
MANIFEST_FILES = (
    "package.json", "requirements.txt", "pyproject.toml", "Cargo.toml", "go.mod",
    "pom.xml", "build.gradle", "hardhat.config.js", "hardhat.config.ts", "truffle-config.js",
    "foundry.toml",
)
_SKIP_DIRS = ("node_modules/", "dist/", "build/", "vendor/", ".git/", "coverage/")


@dataclass
class RepoRef:
    owner: str
    repo: str
    url: str
    branch: str = "main"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass
class RepoFile:
    path: str
    content: str
    size: int


@dataclass
class RepoSnapshot:
    """Everything the analyzers read from a repository."""
    ref: RepoRef
    metadata: dict[str, Any] = field(default_factory=dict)
    readme: str | None = None
    files: list[RepoFile] = field(default_factory=list)
    tree: list[str] = field(default_factory=list)


def parse_github_url(url: str | None) -> RepoRef:
    """Extract owner/repo from a GitHub URL. Raises ``InputValidationError`` when malformed."""
    url = (url or "").strip()
    if not url:
        raise InputValidationError("No GitHub repository URL provided")
    m = _REPO_RE.search(url)
    if not m:
        raise InputValidationError(f"Invalid GitHub URL: {url!r}", {"github_url": url})
    owner = m.group(1)
    repo = re.sub(r"\.git$", "", m.group(2).split("?")[0].split("#")[0])
    if not owner or not repo:
        raise InputValidationError(f"Invalid GitHub URL: {url!r}", {"github_url": url})
    return RepoRef(owner=owner, repo=repo, url=url)


def _headers(token: str | None = None) -> dict[str, str]:
    headers = {"Accept": "application/vnd.github+json", "User-Agent": _USER_AGENT}
    token = token if token is not None else os.environ.get("GITHUB_TOKEN", "")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


class GitHubClient:
    """Thin async wrapper around the endpoints the analyzers need."""

    def __init__(self, token: str | None = None, base_url: str = GITHUB_API, transport: httpx.AsyncBaseTransport | None = None):
        self._headers = _headers(token)
        self._base_url = base_url
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=httpx.Timeout(_TIMEOUT),
            follow_redirects=True,
            transport=self._transport,
        )

    async def _get(self, client: httpx.AsyncClient, path: str) -> tuple[int, Any]:
        try:
            resp = await client.get(path)
        except httpx.HTTPError as exc:
            log.debug("GitHub API request failed for %s: %s", path, exc)
            return 0, None
        if resp.status_code >= 400:
            return resp.status_code, None
        return resp.status_code, resp.json()

    async def check_accessibility(self, ref: RepoRef) -> dict[str, Any]:
        async with self._client() as client:
            status, data = await self._get(client, f"/repos/{ref.owner}/{ref.repo}")
        if status == 200 and isinstance(data, dict):
            return {
                "accessible": True,
                "is_public": not data.get("private", False),
                "metadata": {
                    "name": data.get("name"),
                    "full_name": data.get("full_name"),
                    "description": data.get("description"),
                    "stars": data.get("stargazers_count", 0),
                    "forks": data.get("forks_count", 0),
                    "language": data.get("language"),
                    "default_branch": data.get("default_branch"),
                    "created_at": data.get("created_at"),
                    "updated_at": data.get("updated_at"),
                },
            }
        if status == 404:
            return {"accessible": False, "is_public": False, "error": "Repository not found or is private"}
        return {"accessible": False, "is_public": False, "error": f"GitHub API returned status {status or 'error'}"}

    async def get_readme(self, ref: RepoRef) -> str | None:
        async with self._client() as client:
            status, data = await self._get(client, f"/repos/{ref.owner}/{ref.repo}/readme")
        if status != 200 or not isinstance(data, dict):
            return None
        return _decode_content(data)

    async def fetch_snapshot(self, ref: RepoRef, max_files: int = 40) -> RepoSnapshot:
        """Fetch metadata, README, file tree and a bounded set of source/manifest files.

        Raises ``ExternalBackendFailure`` when the repository itself cannot be read.
        """
        access = await self.check_accessibility(ref)
        if not access["accessible"]:
            raise ExternalBackendFailure(
                f"Repository {ref.full_name} is not accessible: {access.get('error')}",
                {"repository": ref.full_name},
            )
        metadata = access["metadata"]
        ref.branch = metadata.get("default_branch") or ref.branch

        async with self._client() as client:
            (s_tree, tree), readme = await asyncio.gather(
                self._get(client, f"/repos/{ref.owner}/{ref.repo}/git/trees/{ref.branch}?recursive=1"),
                self.get_readme(ref),
            )
            paths: list[str] = []
            if s_tree == 200 and isinstance(tree, dict):
                paths = [
                    item["path"] for item in tree.get("tree", [])
                    if item.get("type") == "blob" and not any(d in item["path"] for d in _SKIP_DIRS)
                ]
            selected = select_paths(paths, max_files)
            results = await asyncio.gather(*(
                self._get(client, f"/repos/{ref.owner}/{ref.repo}/contents/{p}") for p in selected
            ))

        files: list[RepoFile] = []
        for path, (status, data) in zip(selected, results):
            if status != 200 or not isinstance(data, dict):
                log.warning("Failed to fetch %s from %s (status %s)", path, ref.full_name, status)
                continue
            content = _decode_content(data)
            if content is not None:
                files.append(RepoFile(path=path, content=content, size=data.get("size", len(content))))

        return RepoSnapshot(ref=ref, metadata=metadata, readme=readme, files=files, tree=paths)


def select_paths(paths: list[str], max_files: int) -> list[str]:
    """Manifests first, then source files, shallowest paths first."""
    manifests = [p for p in paths if p.rsplit("/", 1)[-1] in MANIFEST_FILES]
    sources = sorted(
        (p for p in paths if p.endswith(SOURCE_EXTENSIONS) and p not in manifests),
        key=lambda p: (p.count("/"), p),
    )
    return (manifests + sources)[:max_files]


def _decode_content(data: dict[str, Any]) -> str | None:
    raw = data.get("content")
    if not raw or data.get("size", 0) > _MAX_FILE_BYTES:
        return None
    try:
        return base64.b64decode(raw).decode("utf-8", errors="replace")
    except (ValueError, TypeError):
        return None
