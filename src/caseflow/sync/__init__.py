"""
Offline-first mobile sync.

Services live in submodules (processor, reconciler, provisioner,
enterprise); this package exports the error taxonomy and change records
only, since the security layer imports it.
"""

from caseflow.sync.changes import (
    AttachmentCreate,
    AttachmentDelete,
    CaseCreate,
    CaseUpdate,
    ChangeAction,
    ChangeRecord,
    EntityKind,
    LocationCreate,
    MalformedChangeError,
    UnsupportedActionError,
    parse_change,
)
from caseflow.sync.errors import (
    AccessDeniedError,
    CapacityError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    SyncError,
    ValidationError,
    VersionUnsupportedError,
)

__all__ = [
    "AccessDeniedError",
    "AttachmentCreate",
    "AttachmentDelete",
    "CapacityError",
    "CaseCreate",
    "CaseUpdate",
    "ChangeAction",
    "ChangeRecord",
    "ConflictError",
    "EntityKind",
    "InvalidTransitionError",
    "LocationCreate",
    "MalformedChangeError",
    "NotFoundError",
    "SyncError",
    "UnsupportedActionError",
    "ValidationError",
    "VersionUnsupportedError",
    "parse_change",
]
