"""
Sync audit sink.

Every upload, download and enterprise sync call is recorded once with
its per-call summary.
"""

import logging
from typing import Any, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.db.repositories import AuditLogRepository
from caseflow.security.auth import Caller

logger = logging.getLogger(__name__)

# Audit actions
MOBILE_SYNC_UPLOAD = "MOBILE_SYNC_UPLOAD"
MOBILE_SYNC_DOWNLOAD = "MOBILE_SYNC_DOWNLOAD"
MOBILE_SYNC_ENTERPRISE = "MOBILE_SYNC_ENTERPRISE"


class SyncAuditSink(Protocol):
    """Anything that can record a sync transaction."""

    async def record_sync_event(
        self,
        action: str,
        actor: Caller,
        details: dict[str, Any],
        *,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        ...


class DatabaseAuditSink:
    """Writes sync events to the audit_log table in the caller's transaction."""

    resource_type = "MOBILE_SYNC"

    def __init__(self, session: AsyncSession):
        self.repo = AuditLogRepository(session)

    async def record_sync_event(
        self,
        action: str,
        actor: Caller,
        details: dict[str, Any],
        *,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        await self.repo.log(
            actor_id=actor.id,
            actor_role=actor.role.value,
            action=action,
            resource_type=self.resource_type,
            resource_id=resource_id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.debug(f"Audit {action} recorded for user {actor.id}")
