"""
Enterprise sync: upload and download in one round trip per device.

Restricted to field agents and keyed by device identity. Uses the same
change processor and provisioner as the plain endpoints with a smaller
page cap.
"""

import logging
import time
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.config import Settings, settings as default_settings
from caseflow.db.repositories import DeviceRepository
from caseflow.db.types import isoformat_utc, utcnow
from caseflow.security.auth import Caller
from caseflow.sync.audit import MOBILE_SYNC_ENTERPRISE, SyncAuditSink
from caseflow.sync.errors import AccessDeniedError, ValidationError
from caseflow.sync.provisioner import DownloadProvisioner
from caseflow.sync.reconciler import UploadReconciler
from caseflow.sync.schemas import (
    EnterpriseSyncRequest,
    EnterpriseSyncResponse,
    SyncMetadata,
    SyncUploadReport,
)

logger = logging.getLogger(__name__)


class EnterpriseSyncOrchestrator:
    """Combined upload + download sync for field agent devices."""

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
        self.reconciler = UploadReconciler(session, audit, self.settings, clock)
        self.provisioner = DownloadProvisioner(session, audit, self.settings, clock)
        self.devices = DeviceRepository(session)

    async def sync(
        self,
        request: EnterpriseSyncRequest,
        caller: Caller,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> EnterpriseSyncResponse:
        """
        Run one enterprise sync cycle.

        Raises:
            AccessDeniedError: If the caller is not a field agent
            ValidationError: If the device id is missing
            CapacityError: If the change-set or requested page is too large
        """
        start = time.monotonic()

        if not caller.is_field_agent:
            logger.warning(f"Enterprise sync refused for user {caller.id} with role {caller.role.value}")
            raise AccessDeniedError(
                "Enterprise sync is only available to field agents",
                code="UNAUTHORIZED_ROLE",
            )

        device_id = (request.device_id or "").strip()
        if not device_id:
            raise ValidationError("Device ID is required for enterprise sync", code="MISSING_DEVICE_ID")

        batch_size = self.settings.enterprise_sync_batch_size
        # Fail fast on an oversized page before applying any uploads
        self.provisioner.resolve_limit(request.limit, batch_size, batch_size)

        report: Optional[SyncUploadReport] = None
        if request.local_changes is not None:
            report = await self.reconciler.apply_changes(request.local_changes, caller)

        download = await self.provisioner.fetch(
            caller,
            last_sync=request.last_sync_timestamp,
            last_sync_id=request.last_sync_id,
            limit=request.limit,
            default_limit=batch_size,
            max_limit=batch_size,
        )

        now = self.clock()
        device = await self.devices.record_sync(
            caller.id,
            device_id,
            platform=request.platform,
            app_version=request.app_version,
            now=now,
        )

        duration_ms = int((time.monotonic() - start) * 1000)
        metadata = SyncMetadata(
            total_updated_cases=len(download.cases),
            total_deleted_cases=len(download.deleted_case_ids),
            sync_duration_ms=duration_ms,
            server_timestamp=isoformat_utc(now),
        )

        await self.audit.record_sync_event(
            MOBILE_SYNC_ENTERPRISE,
            caller,
            {
                "deviceId": device_id,
                "appVersion": request.app_version,
                "platform": request.platform,
                "lastSyncTimestamp": isoformat_utc(request.last_sync_timestamp),
                "casesReturned": len(download.cases),
                "deletedCases": len(download.deleted_case_ids),
                "hasMore": download.has_more,
                "uploadedCases": report.processed_cases if report else 0,
                "uploadConflicts": len(report.conflicts) if report else 0,
                "uploadErrors": len(report.errors) if report else 0,
                "syncCount": device.sync_count,
                "durationMs": duration_ms,
            },
            resource_id=device_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.session.commit()

        logger.info(
            f"Enterprise sync for user {caller.id} device {device_id} ({request.platform} "
            f"{request.app_version}): {len(download.cases)} cases, "
            f"{len(download.deleted_case_ids)} deleted, hasMore={download.has_more} in {duration_ms}ms"
        )

        return EnterpriseSyncResponse(
            cases=download.cases,
            deleted_case_ids=download.deleted_case_ids,
            conflicts=report.conflicts if report else [],
            sync_timestamp=download.sync_timestamp,
            has_more=download.has_more,
            next_checkpoint=download.next_checkpoint,
            results=report,
            metadata=metadata,
        )
