"""Audit trail for the events a parent or operator may need to reconstruct later."""

from __future__ import annotations

import logging
from typing import FrozenSet

from .db.session import session_scope
from .repositories.audit import audit_events
from .telemetry import TelemetryEvent, register_listener

logger = logging.getLogger(__name__)

MONITORED_EVENTS: FrozenSet[str] = frozenset(
    {
        "stuck_mark_committed",
        "stuck_mark_cancelled",
        "parent_notified",
        "side_effect_failed",
        "sync_completed",
    }
)


def persist_event(event: TelemetryEvent) -> None:
    """Write a monitored event to ``audit_events`` in its own transaction.

    A failed write is logged and dropped; the action being audited has already
    committed.
    """
    if event.name not in MONITORED_EVENTS:
        return
    try:
        with session_scope() as session:
            audit_events.record(session, event.name, dict(event.payload), student_id=event.student_id)
    except Exception:  # noqa: BLE001
        logger.exception("Could not audit %s for student=%s", event.name, event.student_id)


def install() -> None:
    register_listener(persist_event)


__all__ = ["MONITORED_EVENTS", "install", "persist_event"]
