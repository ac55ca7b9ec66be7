"""Print one JSON line with pool counters and the stuck-mark backlog.

Useful from cron or a container healthcheck: a growing ``overdue_stuck_marks``
count means the sweeper is not running.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func, select

from app.db.models import PendingStuckMarkModel
from app.db.monitoring import get_pool_snapshot
from app.db.session import get_engine, session_scope
from app.logging_config import configure_logging
from app.repositories import stuck_marks

LOGGER = logging.getLogger("studyflow.db_metrics")


def collect(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    with session_scope(commit=False) as session:
        pending = session.scalar(
            select(func.count()).select_from(PendingStuckMarkModel).where(PendingStuckMarkModel.state == "pending")
        )
        overdue = len(stuck_marks.list_due(session, now))
    return {
        "timestamp": now.isoformat(),
        "pool": get_pool_snapshot(get_engine()),
        "pending_stuck_marks": int(pending or 0),
        "overdue_stuck_marks": overdue,
    }


def main() -> int:
    configure_logging()
    try:
        payload = collect()
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Could not read database metrics: %s", exc)
        return 1
    print(json.dumps(payload))
    return 0


if __name__ == "__main__":
    sys.exit(main())
