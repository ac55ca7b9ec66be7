"""Database-backed stores used by the scheduling engine."""

from .assignments import AssignmentRepository, assignments
from .audit import AuditRepository, audit_events
from .bible import BibleRepository, bible_curriculum
from .block_statuses import BlockStatusRepository, block_statuses
from .ledger import PointsLedgerRepository, points_ledger
from .preferences import PreferenceRepository, preferences
from .stuck_marks import StuckMarkRepository, stuck_marks
from .templates import TemplateRepository, templates

__all__ = [
    "AssignmentRepository",
    "AuditRepository",
    "BibleRepository",
    "BlockStatusRepository",
    "PointsLedgerRepository",
    "PreferenceRepository",
    "StuckMarkRepository",
    "TemplateRepository",
    "assignments",
    "audit_events",
    "bible_curriculum",
    "block_statuses",
    "points_ledger",
    "preferences",
    "stuck_marks",
    "templates",
]
