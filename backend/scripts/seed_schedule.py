"""Load weekly templates and the Bible reading plan from a JSON file.

Expected shape::

    {
      "templates": {"alex": [{"weekday": "Monday", "block_number": 1, ...}]},
      "bible_readings": [{"week_number": 1, "day_of_week": 1, "title": "Genesis 1"}]
    }

Either key may be omitted. Templates replace the student's whole week.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from app.config import get_settings
from app.db.session import session_scope
from app.errors import StudyFlowError
from app.logging_config import configure_logging
from app.planner import build_planner
from app.repositories import bible_curriculum
from app.schedule_models import BibleReading

LOGGER = logging.getLogger("studyflow.seed")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed schedule templates and Bible readings.")
    parser.add_argument("path", type=Path, help="JSON file with 'templates' and/or 'bible_readings'.")
    return parser.parse_args(argv)


def seed(payload: Dict[str, Any]) -> Dict[str, int]:
    planner = build_planner(get_settings())
    counts = {"students": 0, "template_blocks": 0, "bible_readings": 0}
    try:
        for student_id, blocks in (payload.get("templates") or {}).items():
            saved = planner.replace_template(student_id, blocks)
            counts["students"] += 1
            counts["template_blocks"] += len(saved)
            LOGGER.info("Loaded %d template blocks for student=%s", len(saved), student_id)

        readings = [BibleReading.model_validate(row) for row in payload.get("bible_readings") or []]
        if readings:
            with session_scope() as session:
                counts["bible_readings"] = bible_curriculum.replace_curriculum(session, readings)
            LOGGER.info("Loaded %d Bible readings", counts["bible_readings"])
    finally:
        planner.shutdown()
    return counts


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging()
    args = parse_args(argv)
    try:
        payload = json.loads(args.path.read_text(encoding="utf-8"))
        counts = seed(payload)
    except (OSError, ValueError, StudyFlowError) as exc:
        LOGGER.error("Seeding from %s failed: %s", args.path, exc)
        return 1
    print(json.dumps(counts))
    return 0


if __name__ == "__main__":
    sys.exit(main())
