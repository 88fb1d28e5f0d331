"""
Change processor: applies one device change record to the entity store.

Every call yields exactly one ChangeOutcome (applied, conflicted or
rejected). Domain failures never escape apply(); store failures do, so
the caller can roll back the record's transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import func, literal, or_
from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.config import Settings, settings as default_settings
from caseflow.db.orm import TERMINAL_STATUSES, Case, CaseStatus
from caseflow.db.repositories import (
    AttachmentRepository,
    CaseRepository,
    LocationRepository,
)
from caseflow.db.types import UTCDateTime, to_naive_utc, utcnow
from caseflow.security.access import AuthorizationPolicy, policy_for
from caseflow.security.auth import Caller
from caseflow.sync.changes import (
    AttachmentCreate,
    AttachmentDelete,
    CaseCreate,
    CaseUpdate,
    ChangeRecord,
    EntityKind,
    LocationCreate,
    MalformedChangeError,
    UnsupportedActionError,
    parse_change,
    raw_entity_id,
)
from caseflow.sync.errors import (
    AccessDeniedError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
)
from caseflow.sync.schemas import CaseDTO

logger = logging.getLogger(__name__)

# Smallest step that keeps updated_at strictly increasing
TIMESTAMP_STEP = timedelta(microseconds=1)


class ProcessingStatus(str, Enum):
    APPLIED = "APPLIED"
    CONFLICTED = "CONFLICTED"
    REJECTED = "REJECTED"


class RejectionReason(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    ACCESS_DENIED = "ACCESS_DENIED"
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
    UNSUPPORTED_ACTION = "UNSUPPORTED_ACTION"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    STORE_ERROR = "STORE_ERROR"


@dataclass
class ChangeOutcome:
    """What happened to one change record."""

    entity_type: EntityKind
    entity_id: Optional[str]
    status: ProcessingStatus
    reason: Optional[RejectionReason] = None
    message: Optional[str] = None
    local_version: Optional[dict[str, Any]] = None
    server_version: Optional[dict[str, Any]] = None
    conflict_type: Optional[str] = None
    noop: bool = False

    @property
    def applied(self) -> bool:
        return self.status == ProcessingStatus.APPLIED

    @classmethod
    def ok(cls, entity_type: EntityKind, entity_id: Any, noop: bool = False) -> "ChangeOutcome":
        return cls(entity_type, str(entity_id), ProcessingStatus.APPLIED, noop=noop)

    @classmethod
    def rejected(
        cls,
        entity_type: EntityKind,
        entity_id: Optional[Any],
        reason: RejectionReason,
        message: str,
    ) -> "ChangeOutcome":
        return cls(
            entity_type,
            str(entity_id) if entity_id is not None else None,
            ProcessingStatus.REJECTED,
            reason=reason,
            message=message,
        )


def _payload_dump(change: ChangeRecord) -> Optional[dict[str, Any]]:
    payload = getattr(change, "payload", None)
    if payload is None:
        return None
    return payload.model_dump(mode="json", by_alias=True, exclude_unset=True)


class ChangeProcessor:
    """
    Applies change records on behalf of an authenticated caller.

    Authorization decisions come from the caller's AuthorizationPolicy;
    conflict detection is a single guarded UPDATE per case edit.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.settings = settings or default_settings
        self.clock = clock
        self.cases = CaseRepository(session)
        self.attachments = AttachmentRepository(session)
        self.locations = LocationRepository(session)

        self._handlers: dict[type, Callable[..., Awaitable[ChangeOutcome]]] = {
            CaseCreate: self._create_case,
            CaseUpdate: self._update_case,
            AttachmentCreate: self._create_attachment,
            AttachmentDelete: self._delete_attachment,
            LocationCreate: self._create_location,
        }

    def handles(self, variant: type) -> bool:
        return variant in self._handlers

    async def apply_raw(self, kind: EntityKind, raw: Any, caller: Caller) -> ChangeOutcome:
        """Parse a wire item and apply it."""
        try:
            change = parse_change(kind, raw)
        except UnsupportedActionError as e:
            return ChangeOutcome.rejected(
                kind, raw_entity_id(raw), RejectionReason.UNSUPPORTED_ACTION, str(e)
            )
        except MalformedChangeError as e:
            return ChangeOutcome.rejected(
                kind, raw_entity_id(raw), RejectionReason.MALFORMED_PAYLOAD, str(e)
            )
        return await self.apply(change, caller)

    async def apply(self, change: ChangeRecord, caller: Caller) -> ChangeOutcome:
        """
        Apply one change record.

        Returns:
            The outcome; store exceptions propagate to the caller
        """
        handler = self._handlers[type(change)]
        policy = policy_for(caller.role)

        try:
            return await handler(change, caller, policy)
        except ConflictError as e:
            logger.warning(
                f"Conflict on {change.kind.value} {change.entity_id} from user {caller.id}: {e.message}"
            )
            return ChangeOutcome(
                change.kind,
                str(change.entity_id),
                ProcessingStatus.CONFLICTED,
                message=e.message,
                local_version=_payload_dump(change),
                server_version=e.server_version,
                conflict_type=e.code,
            )
        except NotFoundError as e:
            reason, message = RejectionReason.NOT_FOUND, e.message
        except AccessDeniedError as e:
            reason, message = RejectionReason.ACCESS_DENIED, e.message
        except InvalidTransitionError as e:
            reason, message = RejectionReason.INVALID_STATUS_TRANSITION, e.message

        logger.warning(
            f"Rejected {change.kind.value} {change.action.value} {change.entity_id} "
            f"from user {caller.id}: {reason.value} ({message})"
        )
        return ChangeOutcome.rejected(change.kind, change.entity_id, reason, message)

    # -------------------------------------------------------------------------
    # Cases
    # -------------------------------------------------------------------------

    async def _create_case(
        self, change: CaseCreate, caller: Caller, policy: AuthorizationPolicy
    ) -> ChangeOutcome:
        if not policy.can_create_case(caller):
            raise AccessDeniedError(f"Role {caller.role.value} cannot create cases")

        existing = await self.cases.get_by_id(change.entity_id)
        if existing is not None:
            logger.debug(f"Case {change.entity_id} already exists, treating create as replay")
            return ChangeOutcome.ok(EntityKind.CASE, change.entity_id, noop=True)

        fields = change.payload.changed_fields()
        case_number = fields.pop("case_number", None) or await self.cases.next_case_number()
        assignee = fields.get("assigned_to")
        status = fields.pop("status", None) or (
            CaseStatus.ASSIGNED if assignee else CaseStatus.CREATED
        )
        updated_at = self.clock()
        if assignee:
            fields["assigned_at"] = updated_at

        await self.cases.create(
            case_id=change.entity_id,
            case_number=case_number,
            created_by=caller.id,
            created_at=change.client_timestamp,
            updated_at=updated_at,
            status=status,
            fields=fields,
        )
        if assignee:
            await self.cases.record_assignment(
                case_id=change.entity_id,
                from_user_id=None,
                to_user_id=assignee,
                assigned_by=caller.id,
                assigned_at=updated_at,
                reason="Assigned on creation",
            )

        logger.info(f"Case {change.entity_id} (#{case_number}) created by {caller.id}")
        return ChangeOutcome.ok(EntityKind.CASE, change.entity_id)

    async def _update_case(
        self, change: CaseUpdate, caller: Caller, policy: AuthorizationPolicy
    ) -> ChangeOutcome:
        current = await self.cases.get_by_id(change.entity_id)
        if current is None:
            raise NotFoundError(f"Case {change.entity_id} not found")

        fields = change.payload.changed_fields()
        policy.check_case_fields(caller, fields)

        # Server time only; the device clock is never stored
        new_ts = max(self.clock(), current.updated_at + TIMESTAMP_STEP)
        values: dict[str, Any] = dict(fields)
        values["updated_at"] = new_ts

        # Pins the row version new_ts was derived from
        guards = [Case.updated_at == current.updated_at]
        new_status: Optional[CaseStatus] = fields.get("status")
        if new_status is not None:
            if new_status == CaseStatus.COMPLETED:
                values["completed_at"] = func.coalesce(Case.completed_at, literal(new_ts, UTCDateTime()))
            if not policy.can_override_terminal_status():
                guards.append(
                    or_(Case.status.not_in(list(TERMINAL_STATUSES)), Case.status == new_status)
                )

        reassigning = "assigned_to" in fields
        previous_assignee = current.assigned_to
        if reassigning:
            if previous_assignee is None:
                guards.append(Case.assigned_to.is_(None))
            else:
                guards.append(Case.assigned_to == previous_assignee)
            if previous_assignee != fields["assigned_to"]:
                values["assigned_at"] = new_ts

        updated = await self.cases.conditional_update(
            change.entity_id,
            values,
            client_ts=change.client_timestamp,
            scope=policy.case_scope(caller),
            guards=guards,
        )
        if not updated:
            await self._classify_failed_update(change, caller, policy, new_status)

        if reassigning and previous_assignee != fields["assigned_to"]:
            await self.cases.record_assignment(
                case_id=change.entity_id,
                from_user_id=previous_assignee,
                to_user_id=fields["assigned_to"],
                assigned_by=caller.id,
                assigned_at=new_ts,
                reason="Reassigned via mobile sync",
            )

        return ChangeOutcome.ok(EntityKind.CASE, change.entity_id)

    async def _classify_failed_update(
        self,
        change: CaseUpdate,
        caller: Caller,
        policy: AuthorizationPolicy,
        new_status: Optional[CaseStatus],
    ) -> None:
        """Work out why a guarded update matched no row. Always raises."""
        case = await self.cases.get_by_id(change.entity_id)
        if case is None:
            raise NotFoundError(f"Case {change.entity_id} not found")

        if not policy.can_view_case(caller, case):
            raise AccessDeniedError(f"Case {change.entity_id} is not assigned to {caller.id}")

        server_version = CaseDTO.from_case(case).model_dump(mode="json", by_alias=True)

        if case.updated_at > change.client_timestamp:
            raise ConflictError(
                "Server version is newer than the local change",
                server_version=server_version,
            )

        if (
            new_status is not None
            and case.status.is_terminal
            and case.status != new_status
            and not policy.can_override_terminal_status()
        ):
            raise InvalidTransitionError(
                f"Case {change.entity_id} is {case.status.value} and cannot move to {new_status.value}"
            )

        # Row changed between the first read and the guarded write
        raise ConflictError(
            "Case was modified concurrently",
            server_version=server_version,
            code="CONCURRENT_MODIFICATION",
        )

    # -------------------------------------------------------------------------
    # Attachments
    # -------------------------------------------------------------------------

    async def _create_attachment(
        self, change: AttachmentCreate, caller: Caller, policy: AuthorizationPolicy
    ) -> ChangeOutcome:
        payload = change.payload
        case = await self.cases.get_by_id(payload.case_id)
        if case is None:
            raise NotFoundError(f"Case {payload.case_id} not found")
        if not policy.can_modify_attachments(caller, case):
            raise AccessDeniedError(f"Cannot add attachments to case {payload.case_id}")

        if await self.attachments.get_by_id(change.entity_id) is not None:
            return ChangeOutcome.ok(EntityKind.ATTACHMENT, change.entity_id, noop=True)

        geo = payload.geo_location
        await self.attachments.create(
            id=change.entity_id,
            case_id=payload.case_id,
            storage_path=payload.storage_path,
            original_name=payload.original_name,
            mime_type=payload.mime_type,
            size=payload.size,
            uploaded_by=caller.id,
            latitude=geo.latitude if geo else None,
            longitude=geo.longitude if geo else None,
            accuracy=geo.accuracy if geo else None,
            geo_timestamp=to_naive_utc(geo.timestamp) if geo and geo.timestamp else None,
            geo_address=geo.address if geo else None,
            uploaded_at=change.client_timestamp,
        )
        return ChangeOutcome.ok(EntityKind.ATTACHMENT, change.entity_id)

    async def _delete_attachment(
        self, change: AttachmentDelete, caller: Caller, policy: AuthorizationPolicy
    ) -> ChangeOutcome:
        attachment = await self.attachments.get_by_id(change.entity_id)
        if attachment is None:
            return ChangeOutcome.ok(EntityKind.ATTACHMENT, change.entity_id, noop=True)

        case = await self.cases.get_by_id(attachment.case_id)
        if case is None or not policy.can_modify_attachments(caller, case):
            raise AccessDeniedError(f"Cannot remove attachments from case {attachment.case_id}")

        if (
            self.settings.sync_enforce_attachment_completion_lock
            and case.status == CaseStatus.COMPLETED
        ):
            raise InvalidTransitionError(
                "Cannot delete attachments from completed cases", code="CASE_COMPLETED"
            )

        await self.attachments.delete(attachment)
        logger.info(f"Attachment {change.entity_id} deleted by {caller.id}")
        return ChangeOutcome.ok(EntityKind.ATTACHMENT, change.entity_id)

    # -------------------------------------------------------------------------
    # Location samples
    # -------------------------------------------------------------------------

    async def _create_location(
        self, change: LocationCreate, caller: Caller, policy: AuthorizationPolicy
    ) -> ChangeOutcome:
        payload = change.payload
        if await self.cases.get_by_id(payload.case_id) is None:
            raise NotFoundError(f"Case {payload.case_id} not found")

        if await self.locations.get_by_id(change.entity_id) is not None:
            return ChangeOutcome.ok(EntityKind.LOCATION, change.entity_id, noop=True)

        await self.locations.create(
            id=change.entity_id,
            case_id=payload.case_id,
            captured_by=caller.id,
            latitude=payload.latitude,
            longitude=payload.longitude,
            accuracy=payload.accuracy,
            captured_at=to_naive_utc(payload.timestamp) if payload.timestamp else change.client_timestamp,
            source=payload.source,
            activity_type=payload.activity_type,
        )
        return ChangeOutcome.ok(EntityKind.LOCATION, change.entity_id)
