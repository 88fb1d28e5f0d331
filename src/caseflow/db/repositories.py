"""
Database repositories for the sync data access layer.

Repositories wrap one AsyncSession and never commit; the caller owns
the transaction boundary.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence
from uuid import UUID

from sqlalchemy import ColumnElement, and_, case, distinct, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.db.orm import (
    Attachment,
    AuditLog,
    Case,
    CaseAssignmentHistory,
    CaseStatus,
    Device,
    LocationSample,
)

logger = logging.getLogger(__name__)


class CaseRepository:
    """Repository for Case reads and guarded writes."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, case_id: UUID) -> Optional[Case]:
        """
        Get case by ID.

        Guarded updates bypass the identity map, so rows are always
        reloaded from the database.
        """
        result = await self.session.execute(
            select(Case)
            .where(Case.id == case_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def next_case_number(self) -> int:
        """Next human-readable case number."""
        result = await self.session.execute(
            select(func.coalesce(func.max(Case.case_number), 0))
        )
        return int(result.scalar_one()) + 1

    async def create(
        self,
        case_id: UUID,
        case_number: int,
        created_by: str,
        created_at: datetime,
        updated_at: datetime,
        status: CaseStatus,
        fields: dict[str, Any],
    ) -> Case:
        """Insert a new case."""
        new_case = Case(
            id=case_id,
            case_number=case_number,
            created_by=created_by,
            created_at=created_at,
            updated_at=updated_at,
            status=status,
            **fields,
        )
        if status == CaseStatus.COMPLETED:
            new_case.completed_at = updated_at
        self.session.add(new_case)
        await self.session.flush()
        return new_case

    async def conditional_update(
        self,
        case_id: UUID,
        values: dict[str, Any],
        client_ts: datetime,
        scope: ColumnElement[bool],
        guards: Sequence[ColumnElement[bool]] = (),
    ) -> bool:
        """
        Apply values only if the stored row is not newer than client_ts.

        The timestamp guard, the caller's scope and any extra guards
        (terminal status, expected assignee) are evaluated in the same
        statement as the write, so a concurrent writer is never silently
        overwritten.

        Returns:
            True if exactly one row was updated
        """
        conditions = [
            Case.id == case_id,
            Case.updated_at <= client_ts,
            scope,
            *guards,
        ]

        result = await self.session.execute(
            update(Case)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_assignment(
        self,
        case_id: UUID,
        from_user_id: Optional[str],
        to_user_id: Optional[str],
        assigned_by: str,
        assigned_at: datetime,
        reason: Optional[str] = None,
    ) -> CaseAssignmentHistory:
        """Append an assignment history row."""
        entry = CaseAssignmentHistory(
            case_id=case_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            assigned_by=assigned_by,
            assigned_at=assigned_at,
            reason=reason,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_changed_since(
        self,
        visible: ColumnElement[bool],
        last_sync: datetime,
        limit: int,
        last_sync_id: Optional[UUID] = None,
    ) -> list[Case]:
        """
        Visible cases changed after the checkpoint, oldest first.

        With last_sync_id the checkpoint is the (updated_at, id) pair of
        the last case the device received, so rows sharing that
        updated_at but sorting after it are still returned.
        """
        if last_sync_id is None:
            changed = Case.updated_at > last_sync
        else:
            changed = or_(
                Case.updated_at > last_sync,
                and_(Case.updated_at == last_sync, Case.id > last_sync_id),
            )

        result = await self.session.execute(
            select(Case)
            .where(visible, changed)
            .order_by(Case.updated_at.asc(), Case.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def reassigned_away_ids(self, user_id: str, since: datetime) -> list[UUID]:
        """IDs of cases moved off user_id after since and not assigned back."""
        result = await self.session.execute(
            select(CaseAssignmentHistory.case_id)
            .join(Case, Case.id == CaseAssignmentHistory.case_id)
            .where(
                CaseAssignmentHistory.from_user_id == user_id,
                CaseAssignmentHistory.assigned_at > since,
                or_(Case.assigned_to.is_(None), Case.assigned_to != user_id),
            )
            .distinct()
        )
        return list(result.scalars().all())


class AttachmentRepository:
    """Repository for Attachment operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, attachment_id: UUID) -> Optional[Attachment]:
        """Get attachment by ID."""
        result = await self.session.execute(
            select(Attachment).where(Attachment.id == attachment_id)
        )
        return result.scalar_one_or_none()

    async def create(self, **values: Any) -> Attachment:
        """Insert attachment metadata."""
        attachment = Attachment(**values)
        self.session.add(attachment)
        await self.session.flush()
        return attachment

    async def delete(self, attachment: Attachment) -> None:
        """Hard-delete an attachment row."""
        await self.session.delete(attachment)
        await self.session.flush()


class LocationRepository:
    """Repository for LocationSample inserts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, sample_id: UUID) -> Optional[LocationSample]:
        result = await self.session.execute(
            select(LocationSample).where(LocationSample.id == sample_id)
        )
        return result.scalar_one_or_none()

    async def create(self, **values: Any) -> LocationSample:
        sample = LocationSample(**values)
        self.session.add(sample)
        await self.session.flush()
        return sample


class DeviceRepository:
    """Repository for the mobile device registry."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, user_id: str, device_id: str) -> Optional[Device]:
        """Get a user's device registration."""
        result = await self.session.execute(
            select(Device)
            .where(Device.user_id == user_id, Device.device_id == device_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _upsert(self, user_id: str, device_id: str, values: dict[str, Any], increment_sync: bool) -> Device:
        stmt = update(Device).where(Device.user_id == user_id, Device.device_id == device_id)
        if increment_sync:
            stmt = stmt.values(sync_count=Device.sync_count + 1, **values)
        else:
            stmt = stmt.values(**values)
        result = await self.session.execute(stmt.execution_options(synchronize_session=False))

        if result.rowcount == 0:
            device = Device(
                user_id=user_id,
                device_id=device_id,
                sync_count=1 if increment_sync else 0,
                **values,
            )
            try:
                async with self.session.begin_nested():
                    self.session.add(device)
            except IntegrityError:
                # Registered concurrently by another request
                logger.info(f"Device {device_id} for user {user_id} registered concurrently, updating")
                return await self._upsert(user_id, device_id, values, increment_sync)

        device = await self.get(user_id, device_id)
        return device

    async def touch_last_active(self, user_id: str, device_id: str, now: datetime) -> Device:
        """Mark a device as active, registering it if unknown."""
        return await self._upsert(user_id, device_id, {"last_active_at": now}, increment_sync=False)

    async def record_sync(
        self,
        user_id: str,
        device_id: str,
        platform: Optional[str],
        app_version: Optional[str],
        now: datetime,
    ) -> Device:
        """Record a completed sync and bump the device's sync counter."""
        values = {
            "platform": platform,
            "app_version": app_version,
            "last_sync_at": now,
            "last_active_at": now,
        }
        return await self._upsert(user_id, device_id, values, increment_sync=True)

    async def stats(self, now: datetime) -> dict[str, Any]:
        """Aggregate registry statistics for the admin dashboard."""
        day_ago = now - timedelta(hours=24)
        hour_ago = now - timedelta(hours=1)

        result = await self.session.execute(
            select(
                func.count(distinct(case((Device.last_active_at >= day_ago, Device.user_id)))),
                func.sum(case((Device.last_active_at >= day_ago, 1), else_=0)),
                func.avg(Device.sync_count),
                func.max(Device.last_sync_at),
                func.sum(case((Device.last_sync_at >= hour_ago, 1), else_=0)),
            )
        )
        active_users, active_devices, avg_sync_count, last_sync_at, syncs_last_hour = result.one()

        return {
            "active_users": active_users or 0,
            "active_devices": active_devices or 0,
            "average_sync_count": round(float(avg_sync_count or 0), 2),
            "last_sync_at": last_sync_at,
            "syncs_last_hour": syncs_last_hour or 0,
        }


class AuditLogRepository:
    """Repository for AuditLog operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def log(
        self,
        actor_id: str,
        action: str,
        resource_type: str,
        actor_role: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLog:
        """Create an audit log entry."""
        log = AuditLog(
            actor_id=actor_id,
            actor_role=actor_role,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent[:500] if user_agent else None,
        )
        self.session.add(log)
        await self.session.flush()
        return log

    async def get_for_actor(
        self,
        actor_id: str,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditLog]:
        """Get audit logs written for a user, newest first."""
        stmt = select(AuditLog).where(AuditLog.actor_id == actor_id)
        if action:
            stmt = stmt.where(AuditLog.action == action)
        result = await self.session.execute(
            stmt.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit)
        )
        return list(result.scalars().all())
