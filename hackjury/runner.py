"""Per-layer analysis runner.

``trigger`` admits a job through the governor, records it PENDING and returns;
the analysis itself runs as an asyncio task owned by the runner. The job
record always ends COMPLETED or FAILED and the governor slot is released on
every exit path, cancellation included.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any

from hackjury.analyzers import AnalysisContext, Analyzer
from hackjury.errors import AlreadyRunning, CapacityExceeded, InputValidationError, JuryError, NotFound
from hackjury.github import GitHubClient, parse_github_url
from hackjury.governor import ConcurrencyGovernor, process_id_for
from hackjury.jobs import AnalysisJobStore
from hackjury.models import LayerType, Project
from hackjury.reclaimer import StuckJobReclaimer

log = logging.getLogger(__name__)

# (stage label, progress) in execution order
STAGES: tuple[tuple[str, int], ...] = (
    ("queued", 0),
    ("starting", 5),
    ("fetching_repository", 15),
    ("analyzing", 40),
    ("parsing_results", 85),
    ("completed", 100),
)
STAGE_PROGRESS = dict(STAGES)

DEFAULT_MAX_FILES = 40


def max_files_option(options: dict[str, Any]) -> int:
    """Validated ``max_files`` option; rejected before any job or slot exists."""
    raw = options.get("max_files", DEFAULT_MAX_FILES)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise InputValidationError(f"max_files must be an integer, got {raw!r}", {"option": "max_files"}) from None
    if value < 1:
        raise InputValidationError(f"max_files must be at least 1, got {value}", {"option": "max_files"})
    return value


class AnalysisRunner:
    def __init__(
        self,
        layer_type: LayerType,
        store: AnalysisJobStore,
        governor: ConcurrencyGovernor,
        reclaimer: StuckJobReclaimer,
        analyzer: Analyzer,
        github: GitHubClient | None = None,
    ):
        self.layer_type = LayerType(layer_type)
        self.store = store
        self.governor = governor
        self.reclaimer = reclaimer
        self.analyzer = analyzer
        self.github = github or GitHubClient()
        self._tasks: dict[int, asyncio.Task] = {}
        reclaimer.add_listener(self._cancel)

    @property
    def layer(self) -> str:
        return self.layer_type.value

    def process_id(self, project_id: int) -> str:
        return process_id_for(self.layer, project_id)

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    async def trigger(self, project_id: int, options: dict[str, Any] | None = None) -> int:
        """Admit and schedule an analysis; returns the new job id without waiting for it.

        Raises ``NotFound``/``InputValidationError`` before anything is created,
        ``AlreadyRunning`` for a live duplicate and ``CapacityExceeded`` when the
        governor is full. Nothing in here awaits, so admission is atomic on the loop.
        """
        pid = self.process_id(project_id)
        self.reclaimer.reclaim(project_id, self.layer)

        ctx = self._load_context(project_id, options or {})

        with self.store.session() as session:
            active = self.store.find_active(session, project_id, self.layer)
            if active:
                raise AlreadyRunning(
                    f"{self.layer} analysis is already running for project {project_id}",
                    {"job_id": active[0].id, "status": active[0].status, "process_id": pid},
                )
            job = self.store.add_pending(session, project_id, self.layer, options)
            if not self.governor.start(pid, owner=job.id):
                session.rollback()
                status = self.governor.status()
                if pid in status["process_ids"]:
                    raise AlreadyRunning(
                        f"Process {pid} already holds a governor slot",
                        {"process_id": pid, "governor": status},
                    )
                raise CapacityExceeded(
                    f"Maximum concurrent analyses reached ({status['count']}/{status['ceiling']})",
                    {
                        "governor": status,
                        "retry_guidance": "Retry once a running analysis finishes. "
                                          "If the running set never drains, inspect the governor for leaked slots.",
                    },
                )
            try:
                session.commit()
            except Exception:
                self.governor.end(pid, owner=job.id)
                raise
            job_id = job.id

        log.info("Queued %s analysis job %s for project %s", self.layer, job_id, project_id)
        self.store.events.emit("project", project_id, "analysis.queued", {"job_id": job_id, "layer_type": self.layer})

        task = asyncio.get_running_loop().create_task(self._execute(job_id, ctx), name=f"analysis-{pid}-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(functools.partial(self._on_done, job_id, pid))
        return job_id

    def _load_context(self, project_id: int, options: dict[str, Any]) -> AnalysisContext:
        with self.store.session() as session:
            project = session.get(Project, project_id)
            if project is None:
                raise NotFound(f"Project {project_id} not found")
            parse_github_url(project.github_url)
            track = project.track
            return AnalysisContext(
                project_id=project.id,
                project_name=project.name,
                github_url=project.github_url,
                description=project.description or "",
                track_name=track.name if track else "",
                track_description=(track.description or "") if track else "",
                options=options,
                max_files=max_files_option(options),
            )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, job_id: int, ctx: AnalysisContext) -> None:
        pid = self.process_id(ctx.project_id)
        try:
            if not self.store.mark_in_progress(job_id, "starting", STAGE_PROGRESS["starting"]):
                log.warning("Job %s was no longer PENDING when its runner started", job_id)
                return

            self.store.advance(job_id, "fetching_repository", STAGE_PROGRESS["fetching_repository"])
            snapshot = await self.github.fetch_snapshot(
                parse_github_url(ctx.github_url), max_files=ctx.max_files,
            )

            self.store.advance(job_id, "analyzing", STAGE_PROGRESS["analyzing"])
            result = await self.analyzer.analyze(ctx, snapshot)

            self.store.advance(job_id, "parsing_results", STAGE_PROGRESS["parsing_results"])
            score = self.analyzer.headline_score(result)
            if self.store.complete(job_id, result, score):
                log.info("%s analysis job %s completed (score=%s)", self.layer, job_id, score)
            else:
                log.warning("Dropped late result for job %s; it was reclaimed while running", job_id)
        except asyncio.CancelledError:
            self.store.fail(job_id, "Analysis cancelled")
            raise
        except JuryError as exc:
            log.warning("%s analysis job %s failed: %s", self.layer, job_id, exc.message)
            self.store.fail(job_id, exc.message)
        except Exception as exc:
            log.exception("%s analysis job %s crashed", self.layer, job_id)
            self.store.fail(job_id, f"Unexpected error: {exc}")
        finally:
            self.governor.end(pid, owner=job_id)

    def _on_done(self, job_id: int, pid: str, task: asyncio.Task) -> None:
        self._tasks.pop(job_id, None)
        if task.cancelled():
            # cancelled before its first step, _execute never ran its finally block
            self.store.fail(job_id, "Analysis cancelled")
            self.governor.end(pid, owner=job_id)
            return
        exc = task.exception()
        if exc is not None:
            log.error("Analysis task for job %s raised outside its handler: %s", job_id, exc, exc_info=exc)

    def _cancel(self, job_id: int) -> asyncio.Task | None:
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()
            return task
        return None

    async def wait(self, job_id: int) -> None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def drain(self, cancel: bool = False) -> None:
        """Wait for (or cancel) every in-flight task."""
        tasks = list(self._tasks.values())
        if cancel:
            for task in tasks:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def running_job_ids(self) -> list[int]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    # ------------------------------------------------------------------
    # Read side and administrative reset
    # ------------------------------------------------------------------

    def get_progress(self, project_id: int) -> dict[str, Any]:
        return self.store.progress(project_id, self.layer)

    def get_job(self, job_id: int) -> dict[str, Any] | None:
        job = self.store.get(job_id)
        if job is None or job["layer_type"] != self.layer:
            return None
        return job

    def list_jobs(self, project_id: int) -> list[dict[str, Any]]:
        return self.store.list(project_id, self.layer)

    async def delete_jobs(self, project_id: int) -> int:
        """Delete every job of this layer for the project and free its slot."""
        self.reclaimer.reclaim(project_id, self.layer)
        cancelled = [
            t for t in (self._cancel(job["id"]) for job in self.store.list(project_id, self.layer)) if t
        ]
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)
        deleted = self.store.delete(project_id, self.layer)
        self.governor.end(self.process_id(project_id))
        log.info("Deleted %d %s job(s) for project %s", deleted, self.layer, project_id)
        self.store.events.emit("project", project_id, "analysis.deleted", {"layer_type": self.layer, "deleted": deleted})
        return deleted
