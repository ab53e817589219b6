from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import select

from hackjury.db import SessionFactory, session_scope
from hackjury.models import Event
from hackjury.utils import json_parse

log = logging.getLogger(__name__)


class EventSink:
    """Write-only notification log. Delivery failures never reach the caller."""

    def __init__(self, session_factory: SessionFactory | None = None):
        self._session_factory = session_factory

    def emit(self, subject_type: str, subject_id: int, event: str, payload: dict[str, Any] | None = None) -> None:
        try:
            with session_scope(self._session_factory) as session:
                session.add(Event(
                    subject_type=subject_type,
                    subject_id=subject_id,
                    event=event,
                    payload_json=json.dumps(payload or {}, default=str),
                ))
                session.commit()
        except Exception as exc:
            log.warning("Dropped event %s for %s %s: %s", event, subject_type, subject_id, exc)
            return
        log.debug("Event %s %s: %s", subject_type, subject_id, event)

    def list(
        self, subject_type: str | None = None, subject_id: int | None = None, limit: int = 100,
    ) -> list[dict[str, Any]]:
        with session_scope(self._session_factory) as session:
            query = select(Event)
            if subject_type:
                query = query.where(Event.subject_type == subject_type)
            if subject_id is not None:
                query = query.where(Event.subject_id == subject_id)
            rows = session.execute(query.order_by(Event.id.desc()).limit(limit)).scalars().all()
            return [
                {
                    "id": e.id,
                    "subject_type": e.subject_type,
                    "subject_id": e.subject_id,
                    "event": e.event,
                    "payload": json_parse(e.payload_json),
                    "timestamp": e.created_at.isoformat() if e.created_at else None,
                }
                for e in rows
            ]
