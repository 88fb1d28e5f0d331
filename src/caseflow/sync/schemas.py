"""
Wire models for the mobile sync endpoints.

Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from caseflow.db.orm import Case
from caseflow.db.types import isoformat_utc, to_naive_utc


class WireModel(BaseModel):
    """Base for camelCase request and response bodies."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


def _naive(v: Optional[datetime]) -> Optional[datetime]:
    return to_naive_utc(v) if v is not None else None


# =============================================================================
# Case representation sent to devices
# =============================================================================


class CaseDTO(WireModel):
    """A case as the mobile app stores it."""

    id: UUID
    case_id: int
    title: Optional[str] = None
    description: Optional[str] = None

    customer_name: Optional[str] = None
    customer_calling_code: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None

    address_street: Optional[str] = None
    address_city: Optional[str] = None
    address_state: Optional[str] = None
    address_pincode: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    status: str
    priority: int
    assigned_to: Optional[str] = None
    assigned_at: Optional[str] = None
    updated_at: str
    completed_at: Optional[str] = None

    verification_type: Optional[str] = None
    verification_outcome: Optional[str] = None
    applicant_type: Optional[str] = None
    backend_contact_number: Optional[str] = None
    notes: Optional[str] = None
    form_data: Optional[dict[str, Any]] = None

    sync_status: str = "SYNCED"

    @classmethod
    def from_case(cls, case: Case) -> "CaseDTO":
        """Build the DTO from an ORM row."""
        return cls(
            id=case.id,
            case_id=case.case_number,
            title=case.title,
            description=case.description,
            customer_name=case.customer_name,
            customer_calling_code=case.customer_calling_code,
            customer_phone=case.customer_phone,
            customer_email=case.customer_email,
            address_street=case.address_street,
            address_city=case.address_city,
            address_state=case.address_state,
            address_pincode=case.address_pincode,
            latitude=case.latitude,
            longitude=case.longitude,
            status=case.status.value,
            priority=case.priority,
            assigned_to=case.assigned_to,
            assigned_at=isoformat_utc(case.assigned_at or case.created_at),
            updated_at=isoformat_utc(case.updated_at),
            completed_at=isoformat_utc(case.completed_at),
            verification_type=case.verification_type,
            verification_outcome=case.verification_outcome,
            applicant_type=case.applicant_type,
            backend_contact_number=case.backend_contact_number,
            notes=case.notes,
            form_data=case.form_data,
        )


# =============================================================================
# Upload
# =============================================================================


class LocalChanges(WireModel):
    """
    A device's pending change-set.

    Items stay raw here; each one is parsed on its own so that one bad
    record cannot fail the whole upload.
    """

    cases: list[Any] = Field(default_factory=list)
    attachments: list[Any] = Field(default_factory=list)
    locations: list[Any] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.cases) + len(self.attachments) + len(self.locations)


class DeviceInfo(WireModel):
    """Device metadata sent with an upload."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    device_id: Optional[str] = Field(None, max_length=255)
    platform: Optional[str] = Field(None, max_length=20)
    app_version: Optional[str] = Field(None, max_length=20)


class SyncUploadRequest(WireModel):
    local_changes: Optional[LocalChanges] = None
    device_info: Optional[DeviceInfo] = None
    last_sync_timestamp: Optional[datetime] = None

    @field_validator("last_sync_timestamp")
    @classmethod
    def normalize_timestamp(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _naive(v)


class SyncConflict(WireModel):
    """An update not applied because the server copy is newer."""

    entity_type: str
    entity_id: str
    case_id: Optional[str] = None
    conflict_type: str = "VERSION_CONFLICT"
    local_version: Optional[dict[str, Any]] = None
    server_version: Optional[dict[str, Any]] = None
    message: Optional[str] = None


class SyncErrorItem(WireModel):
    """A change record rejected by the server."""

    entity_type: str
    entity_id: Optional[str] = None
    reason: str
    message: str


class SyncUploadReport(WireModel):
    processed_cases: int = 0
    processed_attachments: int = 0
    processed_locations: int = 0
    conflicts: list[SyncConflict] = Field(default_factory=list)
    errors: list[SyncErrorItem] = Field(default_factory=list)


class SyncUploadResponse(WireModel):
    sync_timestamp: str
    results: SyncUploadReport


# =============================================================================
# Download
# =============================================================================


class NextCheckpoint(WireModel):
    """Watermark of the last case in a page: pass both back to resume."""

    updated_at: str
    id: UUID


class SyncDownloadResponse(WireModel):
    cases: list[CaseDTO] = Field(default_factory=list)
    deleted_case_ids: list[UUID] = Field(default_factory=list)
    conflicts: list[SyncConflict] = Field(default_factory=list)
    sync_timestamp: str
    has_more: bool = False
    next_checkpoint: Optional[NextCheckpoint] = None


# =============================================================================
# Enterprise
# =============================================================================


class EnterpriseSyncRequest(WireModel):
    device_id: Optional[str] = Field(None, max_length=255)
    last_sync_timestamp: Optional[datetime] = None
    last_sync_id: Optional[UUID] = None
    limit: Optional[int] = None
    app_version: str = Field("1.0.0", max_length=20)
    platform: str = Field("ANDROID", max_length=20)
    local_changes: Optional[LocalChanges] = None

    @field_validator("last_sync_timestamp")
    @classmethod
    def normalize_timestamp(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _naive(v)

    @field_validator("platform")
    @classmethod
    def upper_platform(cls, v: str) -> str:
        return v.strip().upper() or "ANDROID"


class SyncMetadata(WireModel):
    total_updated_cases: int
    total_deleted_cases: int
    sync_duration_ms: int
    server_timestamp: str


class EnterpriseSyncResponse(SyncDownloadResponse):
    results: Optional[SyncUploadReport] = None
    metadata: SyncMetadata


# =============================================================================
# Device registry
# =============================================================================


class DeviceStatus(WireModel):
    device_id: str
    platform: Optional[str] = None
    app_version: Optional[str] = None
    last_sync_at: Optional[str] = None
    last_active_at: Optional[str] = None
    sync_count: int = 0


class SyncStats(WireModel):
    active_users: int
    active_devices: int
    average_sync_count: float
    last_sync_at: Optional[str] = None
    syncs_last_hour: int
