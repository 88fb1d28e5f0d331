"""
Mobile sync API routes.

Upload, download and enterprise (combined) sync for the field app, plus
device status and fleet statistics.
"""

from datetime import datetime
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Header, Query, Request

from caseflow.api.deps import (
    AdminUser,
    AppVersion,
    DeviceRepo,
    Orchestrator,
    Provisioner,
    Reconciler,
    User,
    client_ip,
)
from caseflow.db.types import isoformat_utc, utcnow
from caseflow.sync.errors import NotFoundError, ValidationError
from caseflow.sync.schemas import (
    DeviceStatus,
    EnterpriseSyncRequest,
    EnterpriseSyncResponse,
    SyncDownloadResponse,
    SyncStats,
    SyncUploadRequest,
    SyncUploadResponse,
)

router = APIRouter()


@router.post("/upload", response_model=SyncUploadResponse, response_model_by_alias=True)
async def upload_sync(
    request: Request,
    reconciler: Reconciler,
    user: User,
    _version: AppVersion,
    body: Annotated[Optional[SyncUploadRequest], Body()] = None,
    x_device_id: Annotated[Optional[str], Header()] = None,
):
    """
    Apply a device's offline changes.

    Every submitted item is reported as processed, conflicted or
    errored; one bad item never fails the call.
    """
    return await reconciler.reconcile(
        body or SyncUploadRequest(),
        user,
        device_id=x_device_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


@router.get("/download", response_model=SyncDownloadResponse, response_model_by_alias=True)
async def download_sync(
    request: Request,
    provisioner: Provisioner,
    user: User,
    _version: AppVersion,
    last_sync_timestamp: Optional[datetime] = Query(
        None, alias="lastSyncTimestamp", description="Checkpoint from the previous sync"
    ),
    last_sync_id: Optional[UUID] = Query(
        None, alias="lastSyncId", description="ID of the last case received, for tie-breaking"
    ),
    limit: Optional[int] = Query(None, description="Page size"),
    assigned_to: Optional[str] = Query(
        None, alias="assignedTo", description="Assignee filter (back-office roles only)"
    ),
):
    """Get cases changed since the device's checkpoint."""
    return await provisioner.provision(
        user,
        last_sync=last_sync_timestamp,
        last_sync_id=last_sync_id,
        limit=limit,
        assigned_to=assigned_to,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


@router.post("/enterprise", response_model=EnterpriseSyncResponse, response_model_by_alias=True)
async def enterprise_sync(
    request: Request,
    orchestrator: Orchestrator,
    user: User,
    _version: AppVersion,
    body: Annotated[Optional[EnterpriseSyncRequest], Body()] = None,
):
    """Upload and download in one round trip for field agent devices."""
    return await orchestrator.sync(
        body or EnterpriseSyncRequest(),
        user,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


@router.get("/status", response_model=DeviceStatus, response_model_by_alias=True)
async def sync_status(
    devices: DeviceRepo,
    user: User,
    x_device_id: Annotated[Optional[str], Header()] = None,
):
    """Get the calling user's sync state for one device."""
    if not x_device_id:
        raise ValidationError("X-Device-Id header is required", code="MISSING_DEVICE_ID")

    device = await devices.get(user.id, x_device_id)
    if device is None:
        raise NotFoundError(f"Device {x_device_id} is not registered", code="DEVICE_NOT_FOUND")

    return DeviceStatus(
        device_id=device.device_id,
        platform=device.platform,
        app_version=device.app_version,
        last_sync_at=isoformat_utc(device.last_sync_at),
        last_active_at=isoformat_utc(device.last_active_at),
        sync_count=device.sync_count,
    )


@router.get("/stats", response_model=SyncStats, response_model_by_alias=True)
async def sync_stats(devices: DeviceRepo, admin: AdminUser):
    """Fleet-wide sync statistics."""
    stats = await devices.stats(utcnow())
    return SyncStats(
        active_users=stats["active_users"],
        active_devices=stats["active_devices"],
        average_sync_count=stats["average_sync_count"],
        last_sync_at=isoformat_utc(stats["last_sync_at"]),
        syncs_last_hour=stats["syncs_last_hour"],
    )
