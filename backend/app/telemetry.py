"""In-process event bus for engine telemetry.

Engine operations call ``emit_event`` after their transaction commits. Each
event is handed to every registered listener (the audit pipeline, tests) and
then written to the ``studyflow.telemetry`` logger as one JSON line.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("studyflow.telemetry")


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    payload: Dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def student_id(self) -> Optional[str]:
        value = self.payload.get("student_id")
        return None if value is None else str(value)


Listener = Callable[[TelemetryEvent], None]

_registry: List[Listener] = []
_registry_lock = RLock()


def register_listener(listener: Listener) -> None:
    """Subscribe ``listener``; registering the same callable twice is a no-op."""
    with _registry_lock:
        if listener not in _registry:
            _registry.append(listener)


def unregister_listener(listener: Listener) -> None:
    with _registry_lock:
        if listener in _registry:
            _registry.remove(listener)


def clear_listeners() -> None:
    with _registry_lock:
        _registry.clear()


def emit_event(name: str, **fields: Any) -> None:
    event = TelemetryEvent(name=name, payload={key: _plain(value) for key, value in fields.items()})

    with _registry_lock:
        subscribers = tuple(_registry)
    for subscriber in subscribers:
        try:
            subscriber(event)
        except Exception:  # noqa: BLE001
            logger.exception("Telemetry listener %r failed on %s", subscriber, name)

    logger.info("TELEMETRY %s", _render(event))


def _plain(value: Any) -> Any:
    """Reduce temporal values and sets to JSON-friendly forms; leave the rest alone."""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(_plain(item) for item in value)
    return value


def _render(event: TelemetryEvent) -> str:
    record = {"event": event.name, "at": event.emitted_at.isoformat(), **event.payload}
    return json.dumps(record, default=str, sort_keys=True)


__all__ = [
    "Listener",
    "TelemetryEvent",
    "clear_listeners",
    "emit_event",
    "register_listener",
    "unregister_listener",
]
