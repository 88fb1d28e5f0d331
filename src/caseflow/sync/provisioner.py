"""
Download provisioner: the server-side delta a device has not seen yet.

Pages are ordered by (updated_at, id) so an interrupted device can
resume from the last case it stored. Delivery is at-least-once; devices
de-duplicate by case id.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.config import Settings, settings as default_settings
from caseflow.db.repositories import CaseRepository
from caseflow.db.types import isoformat_utc, to_naive_utc, utcnow
from caseflow.security.access import policy_for
from caseflow.security.auth import Caller
from caseflow.sync.audit import MOBILE_SYNC_DOWNLOAD, SyncAuditSink
from caseflow.sync.errors import CapacityError, ValidationError
from caseflow.sync.schemas import CaseDTO, NextCheckpoint, SyncDownloadResponse

logger = logging.getLogger(__name__)


class DownloadProvisioner:
    """Computes and paginates the cases changed since a device's checkpoint."""

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
        self.cases = CaseRepository(session)

    def resolve_limit(
        self,
        limit: Optional[int],
        default_limit: Optional[int] = None,
        max_limit: Optional[int] = None,
    ) -> int:
        """
        Pick the page size for a request.

        Raises:
            ValidationError: If limit is below 1
            CapacityError: If limit exceeds max_limit
        """
        max_limit = max_limit or self.settings.sync_max_batch_size
        if limit is None:
            return min(default_limit or self.settings.sync_batch_size, max_limit)
        if limit < 1:
            raise ValidationError("limit must be at least 1", code="INVALID_LIMIT")
        if limit > max_limit:
            raise CapacityError(
                f"limit {limit} exceeds the maximum sync batch size of {max_limit}",
                details={"maxBatchSize": max_limit},
            )
        return limit

    async def fetch(
        self,
        caller: Caller,
        *,
        last_sync: Optional[datetime] = None,
        last_sync_id: Optional[UUID] = None,
        limit: Optional[int] = None,
        assigned_to: Optional[str] = None,
        default_limit: Optional[int] = None,
        max_limit: Optional[int] = None,
    ) -> SyncDownloadResponse:
        """Build one page of the delta without recording an audit event."""
        page_size = self.resolve_limit(limit, default_limit, max_limit)

        # Taken before querying so a device using it as its next
        # checkpoint cannot skip rows committed during this call
        now = self.clock()
        if last_sync is None:
            last_sync = now - timedelta(days=self.settings.sync_default_lookback_days)
            last_sync_id = None
        else:
            last_sync = to_naive_utc(last_sync)

        policy = policy_for(caller.role)
        cases = await self.cases.list_changed_since(
            policy.visible_cases(caller, assigned_to),
            last_sync,
            page_size,
            last_sync_id=last_sync_id,
        )

        deleted_ids: list[UUID] = []
        subject = policy.deleted_case_subject(caller, assigned_to)
        if subject:
            deleted_ids = await self.cases.reassigned_away_ids(subject, last_sync)

        next_checkpoint = None
        if cases:
            last = cases[-1]
            next_checkpoint = NextCheckpoint(updated_at=isoformat_utc(last.updated_at), id=last.id)

        return SyncDownloadResponse(
            cases=[CaseDTO.from_case(case) for case in cases],
            deleted_case_ids=deleted_ids,
            conflicts=[],
            sync_timestamp=isoformat_utc(now),
            has_more=len(cases) == page_size,
            next_checkpoint=next_checkpoint,
        )

    async def provision(
        self,
        caller: Caller,
        *,
        last_sync: Optional[datetime] = None,
        last_sync_id: Optional[UUID] = None,
        limit: Optional[int] = None,
        assigned_to: Optional[str] = None,
        max_limit: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SyncDownloadResponse:
        """Handle a download sync call."""
        start = time.monotonic()
        response = await self.fetch(
            caller,
            last_sync=last_sync,
            last_sync_id=last_sync_id,
            limit=limit,
            assigned_to=assigned_to,
            max_limit=max_limit,
        )

        await self.audit.record_sync_event(
            MOBILE_SYNC_DOWNLOAD,
            caller,
            {
                "lastSyncTimestamp": isoformat_utc(to_naive_utc(last_sync)) if last_sync else None,
                "lastSyncId": str(last_sync_id) if last_sync_id else None,
                "assignedTo": assigned_to,
                "casesReturned": len(response.cases),
                "deletedCases": len(response.deleted_case_ids),
                "hasMore": response.has_more,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.session.commit()

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"Download sync for user {caller.id}: {len(response.cases)} cases, "
            f"{len(response.deleted_case_ids)} deleted, hasMore={response.has_more} in {duration_ms}ms"
        )
        return response
