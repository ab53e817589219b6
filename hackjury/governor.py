"""In-process admission control for expensive analysis jobs.

Every analysis run holds one slot for its lifetime. The slot count is capped
by a single ceiling shared by all layer types; slots that outlive
``max_lifetime`` seconds are considered stale and can be swept.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

log = logging.getLogger(__name__)


def process_id_for(layer_type: Any, project_id: int) -> str:
    """Stable slot key for a (layer type, project) pair, e.g. ``COHERENCE-12``."""
    return f"{getattr(layer_type, 'value', layer_type)}-{project_id}"


@dataclass
class GovernorSlot:
    process_id: str
    acquired_at: float
    owner: int | None = None

    def age(self, now: float) -> float:
        return now - self.acquired_at


class ConcurrencyGovernor:
    """Caps concurrently running jobs; every mutation happens under ``_lock``."""

    def __init__(self, ceiling: int = 2, clock: Callable[[], float] = time.monotonic):
        if ceiling < 1:
            raise ValueError(f"Governor ceiling must be >= 1, got {ceiling}")
        self.ceiling = ceiling
        self._clock = clock
        self._lock = threading.Lock()
        self._slots: dict[str, GovernorSlot] = {}

    def can_start(self, process_id: str) -> bool:
        with self._lock:
            return self._has_capacity_for(process_id)

    def is_running(self, process_id: str) -> bool:
        with self._lock:
            return process_id in self._slots

    def start(self, process_id: str, owner: int | None = None) -> bool:
        """Take a slot. Capacity is re-checked under the lock, so losing a race returns False."""
        with self._lock:
            if not self._has_capacity_for(process_id):
                return False
            self._slots[process_id] = GovernorSlot(process_id, self._clock(), owner)
            count = len(self._slots)
        log.info("Slot acquired: %s (owner=%s, %d/%d)", process_id, owner, count, self.ceiling)
        return True

    def end(self, process_id: str, owner: int | None = None) -> bool:
        """Release a slot. Missing slots are a no-op.

        With ``owner`` given, the slot is only released if that owner holds it.
        """
        with self._lock:
            slot = self._slots.get(process_id)
            if slot is None:
                return False
            if owner is not None and slot.owner is not None and slot.owner != owner:
                log.debug("Slot %s held by job %s, not releasing for job %s", process_id, slot.owner, owner)
                return False
            del self._slots[process_id]
            count = len(self._slots)
        log.info("Slot released: %s (%d/%d)", process_id, count, self.ceiling)
        return True

    def sweep_stale(self, max_lifetime: float) -> list[GovernorSlot]:
        """Remove and return every slot older than ``max_lifetime`` seconds."""
        with self._lock:
            now = self._clock()
            stale = [s for s in self._slots.values() if s.age(now) > max_lifetime]
            for slot in stale:
                del self._slots[slot.process_id]
        for slot in stale:
            log.warning("Evicted stale slot %s (owner=%s)", slot.process_id, slot.owner)
        return stale

    def clear(self) -> int:
        with self._lock:
            count = len(self._slots)
            self._slots.clear()
        if count:
            log.warning("Force-cleared %d governor slot(s)", count)
        return count

    def status(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            slots = sorted(self._slots.values(), key=lambda s: s.acquired_at)
            return {
                "count": len(slots),
                "ceiling": self.ceiling,
                "process_ids": [s.process_id for s in slots],
                "slots": [
                    {"process_id": s.process_id, "owner": s.owner, "age_seconds": round(s.age(now), 1)}
                    for s in slots
                ],
            }

    def _has_capacity_for(self, process_id: str) -> bool:
        return len(self._slots) < self.ceiling and process_id not in self._slots
