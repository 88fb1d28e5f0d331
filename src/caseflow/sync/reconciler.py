"""
Upload reconciler: drives a device's change-set through the change processor.

Records are applied in dependency order (cases, then attachments, then
locations) and each one commits on its own, so a failing record never
undoes or blocks the others.
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.config import Settings, settings as default_settings
from caseflow.db.repositories import DeviceRepository
from caseflow.db.types import isoformat_utc, utcnow
from caseflow.security.auth import Caller
from caseflow.sync.audit import MOBILE_SYNC_UPLOAD, SyncAuditSink
from caseflow.sync.changes import EntityKind, raw_entity_id
from caseflow.sync.errors import CapacityError, ValidationError
from caseflow.sync.processor import (
    ChangeOutcome,
    ChangeProcessor,
    ProcessingStatus,
    RejectionReason,
)
from caseflow.sync.schemas import (
    LocalChanges,
    SyncConflict,
    SyncErrorItem,
    SyncUploadReport,
    SyncUploadRequest,
    SyncUploadResponse,
)

logger = logging.getLogger(__name__)

_PROCESSED_COUNTERS = {
    EntityKind.CASE: "processed_cases",
    EntityKind.ATTACHMENT: "processed_attachments",
    EntityKind.LOCATION: "processed_locations",
}


class UploadReconciler:
    """Applies a device's pending changes and reports every item's fate."""

    def __init__(
        self,
        session: AsyncSession,
        audit: SyncAuditSink,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.audit = audit
        self.settings = settings or default_settings
        self.clock = clock
        self.processor = ChangeProcessor(session, self.settings, clock)
        self.devices = DeviceRepository(session)

    async def reconcile(
        self,
        request: SyncUploadRequest,
        caller: Caller,
        *,
        device_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SyncUploadResponse:
        """
        Handle an upload sync call.

        Args:
            request: Change-set, device info and last sync timestamp
            caller: Authenticated user
            device_id: Device id from the request headers, if any

        Raises:
            ValidationError: If the change-set is absent
            CapacityError: If the change-set has too many items
        """
        start = time.monotonic()
        report = await self.apply_changes(request.local_changes, caller)

        if device_id is None and request.device_info is not None:
            device_id = request.device_info.device_id

        now = self.clock()
        if device_id:
            await self.devices.touch_last_active(caller.id, device_id, now)

        await self.audit.record_sync_event(
            MOBILE_SYNC_UPLOAD,
            caller,
            {
                "deviceId": device_id,
                "processedCases": report.processed_cases,
                "processedAttachments": report.processed_attachments,
                "processedLocations": report.processed_locations,
                "conflicts": len(report.conflicts),
                "errors": len(report.errors),
                "lastSyncTimestamp": isoformat_utc(request.last_sync_timestamp),
            },
            resource_id=device_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.session.commit()

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"Upload sync for user {caller.id} device {device_id or '-'}: "
            f"{report.processed_cases} cases, {report.processed_attachments} attachments, "
            f"{report.processed_locations} locations, {len(report.conflicts)} conflicts, "
            f"{len(report.errors)} errors in {duration_ms}ms"
        )
        return SyncUploadResponse(sync_timestamp=isoformat_utc(now), results=report)

    async def apply_changes(self, changes: Optional[LocalChanges], caller: Caller) -> SyncUploadReport:
        """
        Apply a change-set record by record.

        Every item that is not applied lands in exactly one of
        report.conflicts or report.errors.
        """
        if changes is None:
            raise ValidationError("Local changes are required", code="MISSING_LOCAL_CHANGES")

        if changes.total > self.settings.sync_max_upload_items:
            raise CapacityError(
                f"Upload contains {changes.total} items; "
                f"maximum is {self.settings.sync_max_upload_items}",
                details={"maxItems": self.settings.sync_max_upload_items},
            )

        report = SyncUploadReport()
        batches = (
            (EntityKind.CASE, changes.cases),
            (EntityKind.ATTACHMENT, changes.attachments),
            (EntityKind.LOCATION, changes.locations),
        )
        for kind, items in batches:
            for raw in items:
                outcome = await self._apply_one(kind, raw, caller)
                self._record(report, outcome)

        return report

    async def _apply_one(self, kind: EntityKind, raw: Any, caller: Caller) -> ChangeOutcome:
        """Apply and commit one record, rolling back only that record on failure."""
        try:
            outcome = await self.processor.apply_raw(kind, raw, caller)
            if outcome.applied:
                await self.session.commit()
            else:
                await self.session.rollback()
            return outcome
        except Exception as e:
            await self.session.rollback()
            entity_id = raw_entity_id(raw)
            logger.exception(f"Store error applying {kind.value} {entity_id} for user {caller.id}")
            return ChangeOutcome.rejected(
                kind, entity_id, RejectionReason.STORE_ERROR, f"Failed to apply change: {type(e).__name__}"
            )

    @staticmethod
    def _record(report: SyncUploadReport, outcome: ChangeOutcome) -> None:
        entity_type = outcome.entity_type.value
        if outcome.status == ProcessingStatus.APPLIED:
            counter = _PROCESSED_COUNTERS[outcome.entity_type]
            setattr(report, counter, getattr(report, counter) + 1)
        elif outcome.status == ProcessingStatus.CONFLICTED:
            report.conflicts.append(
                SyncConflict(
                    entity_type=entity_type,
                    entity_id=outcome.entity_id or "",
                    case_id=outcome.entity_id if outcome.entity_type == EntityKind.CASE else None,
                    conflict_type=outcome.conflict_type or "VERSION_CONFLICT",
                    local_version=outcome.local_version,
                    server_version=outcome.server_version,
                    message=outcome.message,
                )
            )
        else:
            report.errors.append(
                SyncErrorItem(
                    entity_type=entity_type,
                    entity_id=outcome.entity_id,
                    reason=outcome.reason.value if outcome.reason else RejectionReason.STORE_ERROR.value,
                    message=outcome.message or "Change rejected",
                )
            )
