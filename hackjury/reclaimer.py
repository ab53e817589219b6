from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from hackjury.config import Settings, get_settings
from hackjury.errors import JobTimeout
from hackjury.governor import ConcurrencyGovernor, process_id_for
from hackjury.jobs import AnalysisJobStore, cutoff_for
from hackjury.models import LayerType

log = logging.getLogger(__name__)


def timeout_message(layer_type: str, timeout_seconds: float) -> str:
    if timeout_seconds >= 60 and timeout_seconds % 60 == 0:
        window = f"{int(timeout_seconds // 60)} minutes"
    else:
        window = f"{int(timeout_seconds)} seconds"
    return f"{layer_type} analysis timed out after {window} without progress"


class StuckJobReclaimer:
    """Fails jobs that stopped reporting and hands their governor slots back."""

    def __init__(
        self,
        store: AnalysisJobStore,
        governor: ConcurrencyGovernor,
        settings: Settings | None = None,
    ):
        self.store = store
        self.governor = governor
        self.settings = settings or get_settings()
        self._listeners: list[Callable[[int], Any]] = []

    def add_listener(self, callback: Callable[[int], Any]) -> None:
        """Register a callback invoked with each reclaimed job id (runners cancel the live task)."""
        self._listeners.append(callback)

    def _notify(self, job_id: int) -> None:
        for callback in self._listeners:
            try:
                callback(job_id)
            except Exception:
                log.exception("Reclaim listener failed for job %s", job_id)

    def reclaim(self, project_id: int, layer_type: str, timeout: float | None = None) -> list[int]:
        """Reclaim stuck jobs for one (project, layer type). Returns the reclaimed job ids."""
        layer_type = str(layer_type)
        if timeout is None:
            timeout = self.settings.timeout_for(layer_type)
        stale = self.store.find_stale(cutoff_for(timeout), project_id=project_id, layer_type=layer_type)
        return [job["id"] for job in stale if self._reclaim_job(job, timeout)]

    def sweep(self) -> dict[str, Any]:
        """Reclaim across every project and layer type, then evict stale governor slots."""
        reclaimed: list[int] = []
        for lt in LayerType:
            timeout = self.settings.timeout_for(lt.value)
            for job in self.store.find_stale(cutoff_for(timeout), layer_type=lt.value):
                if self._reclaim_job(job, timeout):
                    reclaimed.append(job["id"])

        lifetime = self.settings.slot_max_lifetime_seconds
        evicted = self.governor.sweep_stale(lifetime)
        for slot in evicted:
            if slot.owner is None:
                continue
            message = f"Governor slot {slot.process_id} exceeded its {lifetime}s lifetime"
            if self.store.fail(slot.owner, message, elapsed=lifetime * 1000, event="job.reclaimed"):
                reclaimed.append(slot.owner)
                self._notify(slot.owner)

        if reclaimed or evicted:
            log.info("Reclaim sweep: %d job(s) failed, %d slot(s) evicted", len(reclaimed), len(evicted))
        return {"reclaimed_jobs": reclaimed, "evicted_slots": [s.process_id for s in evicted]}

    def _reclaim_job(self, job: dict[str, Any], timeout: float) -> bool:
        error = JobTimeout(
            timeout_message(job["layer_type"], timeout),
            {"job_id": job["id"], "timeout_seconds": timeout},
        )
        failed = self.store.fail(job["id"], error.message, elapsed=int(timeout * 1000), event="job.reclaimed")
        pid = process_id_for(job["layer_type"], job["project_id"])
        self.governor.end(pid, owner=job["id"])
        if failed:
            log.warning("Reclaimed stuck job %s (%s): %s", job["id"], pid, error)
            self._notify(job["id"])
        return failed


async def periodic_sweep(reclaimer: StuckJobReclaimer, interval: float) -> None:
    """Run ``reclaimer.sweep()`` every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            reclaimer.sweep()
        except Exception:
            log.exception("Periodic reclaim sweep failed")
