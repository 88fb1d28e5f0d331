"""
SQLAlchemy database models for Caseflow.

Implements the entity store used by mobile sync:
- Verification cases with lifecycle status and last-write-wins timestamps
- Assignment history (drives "no longer visible" reporting to devices)
- Attachments captured in the field
- Append-only GPS location samples
- Registered mobile devices
- Audit log of every sync transaction
"""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from caseflow.db.types import JSONType, UTCDateTime, utcnow


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class CaseStatus(str, enum.Enum):
    """Case lifecycle status."""

    CREATED = "CREATED"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({CaseStatus.COMPLETED, CaseStatus.CANCELLED})


class LocationSource(str, enum.Enum):
    """How a location sample was obtained."""

    GPS = "GPS"
    NETWORK = "NETWORK"
    MANUAL = "MANUAL"


class Case(Base):
    """
    A unit of verification work assigned to a field agent.

    updated_at is advanced on every server-side mutation and is the
    watermark devices use as their sync checkpoint.
    """

    __tablename__ = "cases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Human-readable sequence number
    case_number: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)

    title: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text)

    # Assignment
    assigned_to: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    created_by: Mapped[Optional[str]] = mapped_column(String(100))

    status: Mapped[CaseStatus] = mapped_column(
        SQLEnum(CaseStatus, name="case_status"), default=CaseStatus.CREATED, nullable=False
    )
    priority: Mapped[int] = mapped_column(Integer, default=2, nullable=False)

    # Customer
    customer_name: Mapped[Optional[str]] = mapped_column(String(255))
    customer_calling_code: Mapped[Optional[str]] = mapped_column(String(10))
    customer_phone: Mapped[Optional[str]] = mapped_column(String(20))
    customer_email: Mapped[Optional[str]] = mapped_column(String(255))

    # Address
    address_street: Mapped[Optional[str]] = mapped_column(Text)
    address_city: Mapped[Optional[str]] = mapped_column(String(100))
    address_state: Mapped[Optional[str]] = mapped_column(String(100))
    address_pincode: Mapped[Optional[str]] = mapped_column(String(10))
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)

    # Verification
    verification_type: Mapped[Optional[str]] = mapped_column(String(100))
    verification_outcome: Mapped[Optional[str]] = mapped_column(String(100))
    applicant_type: Mapped[Optional[str]] = mapped_column(String(50))
    backend_contact_number: Mapped[Optional[str]] = mapped_column(String(20))
    notes: Mapped[Optional[str]] = mapped_column(Text)

    # Opaque verification payload shaped by the mobile forms
    form_data: Mapped[Optional[dict]] = mapped_column(JSONType)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    attachments: Mapped[list["Attachment"]] = relationship(
        "Attachment", back_populates="case"
    )

    __table_args__ = (
        Index("idx_cases_assigned_updated", "assigned_to", "updated_at"),
        Index("idx_cases_updated", "updated_at", "id"),
    )


class CaseAssignmentHistory(Base):
    """Append-only record of every change to a case's assignee."""

    __tablename__ = "case_assignment_history"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    case_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("cases.id"), nullable=False)
    from_user_id: Mapped[Optional[str]] = mapped_column(String(100))
    to_user_id: Mapped[Optional[str]] = mapped_column(String(100))
    assigned_by: Mapped[str] = mapped_column(String(100), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("idx_assignment_history_from", "from_user_id", "assigned_at"),
        Index("idx_assignment_history_case", "case_id"),
    )


class Attachment(Base):
    """
    A file captured for a case.

    Rows are created only after the file itself has been stored, so the
    row never points at bytes that do not exist.
    """

    __tablename__ = "attachments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    case_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("cases.id"), nullable=False)

    storage_path: Mapped[str] = mapped_column(Text, nullable=False)
    original_name: Mapped[Optional[str]] = mapped_column(String(255))
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    uploaded_by: Mapped[str] = mapped_column(String(100), nullable=False)

    # Optional capture location
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)
    accuracy: Mapped[Optional[float]] = mapped_column(Float)
    geo_timestamp: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    geo_address: Mapped[Optional[str]] = mapped_column(Text)

    uploaded_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    case: Mapped["Case"] = relationship("Case", back_populates="attachments")

    __table_args__ = (Index("idx_attachments_case", "case_id"),)


class LocationSample(Base):
    """Immutable GPS ping captured by a user while working a case."""

    __tablename__ = "location_samples"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    case_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("cases.id"), nullable=False)
    captured_by: Mapped[str] = mapped_column(String(100), nullable=False)

    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy: Mapped[Optional[float]] = mapped_column(Float)
    captured_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    source: Mapped[LocationSource] = mapped_column(
        SQLEnum(LocationSource, name="location_source"), default=LocationSource.GPS, nullable=False
    )
    activity_type: Mapped[Optional[str]] = mapped_column(String(30))

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_locations_case", "case_id", "captured_at"),
        Index("idx_locations_user", "captured_by", "captured_at"),
    )


class Device(Base):
    """A mobile device a user syncs from."""

    __tablename__ = "mobile_devices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    device_id: Mapped[str] = mapped_column(String(255), nullable=False)

    platform: Mapped[Optional[str]] = mapped_column(String(20))
    app_version: Mapped[Optional[str]] = mapped_column(String(20))

    last_active_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    sync_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "device_id", name="uq_mobile_devices_user_device"),
        Index("idx_mobile_devices_last_sync", "last_sync_at"),
    )


class AuditLog(Base):
    """
    Append-only log of sync transactions.

    One row per upload, download or enterprise sync call with the
    per-call summary in details.
    """

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    # Who
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_role: Mapped[Optional[str]] = mapped_column(String(30))

    # What
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(255))
    details: Mapped[dict] = mapped_column(JSONType, default=dict)

    # Request metadata
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    user_agent: Mapped[Optional[str]] = mapped_column(String(500))

    __table_args__ = (
        Index("idx_audit_actor", "actor_id"),
        Index("idx_audit_timestamp", "timestamp"),
        Index("idx_audit_resource", "resource_type", "resource_id"),
    )
