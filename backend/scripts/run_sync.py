"""Pull Canvas coursework for each configured student and reconcile it."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from app.canvas_feed import CanvasFeedClient, CanvasFeedError
from app.config import get_settings
from app.logging_config import configure_logging
from app.planner import get_planner

LOGGER = logging.getLogger("studyflow.sync")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile Canvas assignments into the planner.")
    parser.add_argument(
        "students",
        nargs="*",
        help="Student ids to sync (default: every student with a Canvas token).",
    )
    return parser.parse_args(argv)


def sync_student(student_id: str) -> bool:
    """Return ``True`` when the feed and every record were processed cleanly."""
    settings = get_settings()
    planner = get_planner()
    try:
        with CanvasFeedClient.for_student(settings, student_id) as client:
            batch = client.fetch_assignments(student_id)
    except CanvasFeedError as exc:
        LOGGER.error("Canvas feed unavailable for student=%s: %s", student_id, exc)
        return False

    report = planner.reconciler.reconcile(batch.records)
    print(json.dumps({"student_id": student_id, "failed_courses": batch.failed_courses, **report.model_dump()}))
    for failure in report.failures:
        LOGGER.warning("Record %d (%s) rejected: %s", failure.index, failure.title, failure.error)
    return not report.failures and not batch.failed_courses


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging()
    args = parse_args(argv)
    students = args.students or sorted(get_settings().canvas_tokens)
    if not students:
        LOGGER.error("No students configured; set STUDYFLOW_CANVAS_TOKENS.")
        return 1
    ok = True
    try:
        for student_id in students:
            ok = sync_student(student_id) and ok
    finally:
        get_planner().shutdown()
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
