"""
Database module for Caseflow.
"""

from caseflow.db.orm import (
    TERMINAL_STATUSES,
    Attachment,
    AuditLog,
    Base,
    Case,
    CaseAssignmentHistory,
    CaseStatus,
    Device,
    LocationSample,
    LocationSource,
)

__all__ = [
    "Base",
    "Case",
    "CaseStatus",
    "TERMINAL_STATUSES",
    "CaseAssignmentHistory",
    "Attachment",
    "LocationSample",
    "LocationSource",
    "Device",
    "AuditLog",
]
