"""
Change records submitted by devices during upload sync.

Every supported (entity, action) pair is its own model, so the change
processor dispatches on the record's type rather than on action strings.
Unsupported pairs (deleting a case, updating a location sample, ...) are
refused while parsing.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union
from uuid import UUID

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from caseflow.db.orm import CaseStatus, LocationSource
from caseflow.db.types import to_naive_utc


class EntityKind(str, Enum):
    """Entity types a device can change."""

    CASE = "CASE"
    ATTACHMENT = "ATTACHMENT"
    LOCATION = "LOCATION"


class ChangeAction(str, Enum):
    """What a change record does to its entity."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class MalformedChangeError(ValueError):
    """Change record is missing fields or carries invalid values."""


class UnsupportedActionError(ValueError):
    """The action is not supported for the entity type."""


class _Payload(BaseModel):
    """Wire payloads use camelCase; snake_case is accepted too."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class CaseFields(_Payload):
    """Case fields a device may send; only fields present are written."""

    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    assigned_to: Optional[str] = Field(None, max_length=100)
    status: Optional[CaseStatus] = None
    priority: Optional[int] = Field(None, ge=1, le=5)

    customer_name: Optional[str] = Field(None, max_length=255)
    customer_calling_code: Optional[str] = Field(None, max_length=10)
    customer_phone: Optional[str] = Field(None, max_length=20)
    customer_email: Optional[str] = Field(None, max_length=255)

    address_street: Optional[str] = None
    address_city: Optional[str] = Field(None, max_length=100)
    address_state: Optional[str] = Field(None, max_length=100)
    address_pincode: Optional[str] = Field(None, max_length=10)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    verification_type: Optional[str] = Field(None, max_length=100)
    verification_outcome: Optional[str] = Field(None, max_length=100)
    applicant_type: Optional[str] = Field(None, max_length=50)
    backend_contact_number: Optional[str] = Field(None, max_length=20)
    notes: Optional[str] = None

    form_data: Optional[dict[str, Any]] = Field(
        None,
        validation_alias=AliasChoices("formData", "form_data", "verificationData"),
    )

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        """Accept 'InProgress', 'in progress' and similar spellings."""
        if isinstance(v, str):
            text = v.strip().replace("-", "_").replace(" ", "_")
            if text.upper() == "INPROGRESS":
                return CaseStatus.IN_PROGRESS
            return text.upper()
        return v

    @model_validator(mode="after")
    def non_nullable_fields(self) -> "CaseFields":
        for name in ("status", "priority"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changed_fields(self) -> dict[str, Any]:
        """Column values explicitly supplied by the device."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class CaseCreateFields(CaseFields):
    """Case fields plus the optional human-readable sequence number."""

    case_number: Optional[int] = Field(
        None,
        ge=1,
        validation_alias=AliasChoices("caseId", "caseNumber", "case_number"),
    )


class GeoLocation(_Payload):
    """Where an attachment was captured."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0)
    timestamp: Optional[datetime] = None
    address: Optional[str] = None


class AttachmentFields(_Payload):
    """Metadata for a file already stored through the upload endpoint."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    case_id: UUID
    storage_path: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("storagePath", "storage_path", "filePath", "url"),
    )
    original_name: Optional[str] = Field(None, max_length=255)
    mime_type: str = Field(
        ...,
        min_length=1,
        max_length=100,
        validation_alias=AliasChoices("mimeType", "mime_type", "contentType"),
    )
    size: int = Field(..., ge=0)
    geo_location: Optional[GeoLocation] = None


class LocationFields(_Payload):
    """A GPS ping captured on the device."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    case_id: UUID
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0)
    timestamp: Optional[datetime] = None
    source: LocationSource = LocationSource.GPS
    activity_type: Optional[Literal["CASE_START", "CASE_PROGRESS", "CASE_COMPLETE", "TRAVEL"]] = None

    @field_validator("source", mode="before")
    @classmethod
    def normalize_source(cls, v: Any) -> Any:
        # Older app builds report passive fixes separately
        if v is None:
            return LocationSource.GPS
        if isinstance(v, str):
            v = v.strip().upper()
            if v == "PASSIVE":
                return LocationSource.NETWORK
        return v


class _Change(BaseModel):
    """Fields common to every change record."""

    model_config = ConfigDict(frozen=True)

    entity_id: UUID
    client_timestamp: datetime

    @field_validator("client_timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return to_naive_utc(v)


class CaseCreate(_Change):
    kind: Literal[EntityKind.CASE] = EntityKind.CASE
    action: Literal[ChangeAction.CREATE] = ChangeAction.CREATE
    payload: CaseCreateFields


class CaseUpdate(_Change):
    kind: Literal[EntityKind.CASE] = EntityKind.CASE
    action: Literal[ChangeAction.UPDATE] = ChangeAction.UPDATE
    payload: CaseFields

    @model_validator(mode="after")
    def has_changes(self) -> "CaseUpdate":
        if not self.payload.model_fields_set:
            raise ValueError("update carries no fields")
        return self


class AttachmentCreate(_Change):
    kind: Literal[EntityKind.ATTACHMENT] = EntityKind.ATTACHMENT
    action: Literal[ChangeAction.CREATE] = ChangeAction.CREATE
    payload: AttachmentFields


class AttachmentDelete(_Change):
    kind: Literal[EntityKind.ATTACHMENT] = EntityKind.ATTACHMENT
    action: Literal[ChangeAction.DELETE] = ChangeAction.DELETE


class LocationCreate(_Change):
    kind: Literal[EntityKind.LOCATION] = EntityKind.LOCATION
    action: Literal[ChangeAction.CREATE] = ChangeAction.CREATE
    payload: LocationFields


ChangeRecord = Union[CaseCreate, CaseUpdate, AttachmentCreate, AttachmentDelete, LocationCreate]

CHANGE_VARIANTS: dict[tuple[EntityKind, ChangeAction], type[_Change]] = {
    (EntityKind.CASE, ChangeAction.CREATE): CaseCreate,
    (EntityKind.CASE, ChangeAction.UPDATE): CaseUpdate,
    (EntityKind.ATTACHMENT, ChangeAction.CREATE): AttachmentCreate,
    (EntityKind.ATTACHMENT, ChangeAction.DELETE): AttachmentDelete,
    (EntityKind.LOCATION, ChangeAction.CREATE): LocationCreate,
}


def raw_entity_id(raw: Any) -> Optional[str]:
    """Best-effort id of a raw wire item, for reporting unparseable records."""
    if isinstance(raw, dict) and raw.get("id") is not None:
        return str(raw["id"])
    return None


def _summarize(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors()[:5]:
        location = ".".join(str(p) for p in item["loc"] if p != "payload")
        parts.append(f"{location or 'record'}: {item['msg']}")
    return "; ".join(parts)


def parse_change(kind: EntityKind, raw: Any) -> ChangeRecord:
    """
    Turn one wire item {id, action, data, timestamp} into a change record.

    Location samples may omit the action; they are always inserts.

    Raises:
        MalformedChangeError: If fields are missing or invalid
        UnsupportedActionError: If the entity type does not support the action
    """
    if not isinstance(raw, dict):
        raise MalformedChangeError("change record must be an object")

    action_value = raw.get("action")
    if action_value is None:
        if kind is not EntityKind.LOCATION:
            raise MalformedChangeError("action is required")
        action_value = ChangeAction.CREATE.value

    try:
        action = ChangeAction(str(action_value).strip().upper())
    except ValueError:
        raise UnsupportedActionError(f"Unsupported {kind.value.lower()} action: {action_value}") from None

    variant = CHANGE_VARIANTS.get((kind, action))
    if variant is None:
        raise UnsupportedActionError(f"Unsupported {kind.value.lower()} action: {action.value}")

    data = raw.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedChangeError("data must be an object")

    fields: dict[str, Any] = {
        "entity_id": raw.get("id"),
        "client_timestamp": raw.get("timestamp"),
    }
    if "payload" in variant.model_fields:
        fields["payload"] = data

    try:
        return variant.model_validate(fields)
    except PydanticValidationError as e:
        raise MalformedChangeError(_summarize(e)) from e
