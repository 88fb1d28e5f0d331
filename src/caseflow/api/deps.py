"""
FastAPI dependencies for the sync API.

Provides:
- Database session management
- JWT-based authentication (with development header fallback)
- Role-based authorization
- Mobile app version gate
- Sync service construction
"""

import logging
from typing import Annotated, AsyncGenerator, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.config import Settings, get_settings
from caseflow.db.repositories import DeviceRepository
from caseflow.security.auth import (
    AuthenticationError,
    Caller,
    UserRole,
    caller_from_token,
)
from caseflow.sync.audit import DatabaseAuditSink
from caseflow.sync.enterprise import EnterpriseSyncOrchestrator
from caseflow.sync.errors import VersionUnsupportedError
from caseflow.sync.provisioner import DownloadProvisioner
from caseflow.sync.reconciler import UploadReconciler

logger = logging.getLogger(__name__)


# HTTP Bearer token extractor
security = HTTPBearer(auto_error=False)


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Get database session from request state.

    Uses the session factory stored during app startup.
    """
    async with request.app.state.db_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# Type aliases for dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
AppSettings = Annotated[Settings, Depends(get_settings)]


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    app_settings: AppSettings,
    # Development fallback headers (only work when not in production)
    x_user_id: Annotated[Optional[str], Header()] = None,
    x_user_name: Annotated[Optional[str], Header()] = None,
    x_user_role: Annotated[Optional[str], Header()] = None,
) -> Caller:
    """
    Get the calling user from the JWT bearer token.

    In development mode, also accepts X-User-* headers for testing.
    In production, ONLY JWT tokens are accepted.

    Raises:
        HTTPException: 401 if not authenticated
    """
    if credentials:
        try:
            return caller_from_token(credentials.credentials)
        except AuthenticationError as e:
            logger.warning(f"JWT authentication failed: {e}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or expired token",
                headers={"WWW-Authenticate": "Bearer"},
            ) from e

    # Development fallback: accept headers (NOT in production)
    if not app_settings.is_production and x_user_id:
        logger.warning(
            f"Using development header auth for user: {x_user_id}. "
            "This is disabled in production!"
        )
        role = UserRole.FIELD_AGENT
        if x_user_role:
            try:
                role = UserRole(x_user_role.upper())
            except ValueError:
                role = UserRole.FIELD_AGENT

        return Caller(
            id=x_user_id,
            username=x_user_id,
            full_name=x_user_name,
            role=role,
        )

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required",
        headers={"WWW-Authenticate": "Bearer"},
    )


User = Annotated[Caller, Depends(get_current_user)]


async def require_admin(user: User) -> Caller:
    """Require an administrative role."""
    if not user.is_admin:
        logger.warning(f"User {user.id} ({user.role.value}) denied admin endpoint")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator role required",
        )
    return user


AdminUser = Annotated[Caller, Depends(require_admin)]


def compare_versions(left: str, right: str) -> int:
    """
    Compare dotted version strings numerically part by part.

    Missing or non-numeric parts count as 0.

    Returns:
        -1, 0 or 1 as left is older, equal or newer than right
    """

    def parts(version: str) -> list[int]:
        result = []
        for piece in version.strip().lstrip("vV").split("."):
            digits = "".join(ch for ch in piece if ch.isdigit())
            result.append(int(digits) if digits else 0)
        return result

    a, b = parts(left), parts(right)
    width = max(len(a), len(b))
    a += [0] * (width - len(a))
    b += [0] * (width - len(b))
    return (a > b) - (a < b)


async def check_app_version(
    app_settings: AppSettings,
    x_app_version: Annotated[Optional[str], Header()] = None,
) -> Optional[str]:
    """
    Refuse sync calls from app builds older than the supported minimum.

    Requests without the header are allowed.
    """
    if x_app_version and compare_versions(x_app_version, app_settings.mobile_min_supported_version) < 0:
        raise VersionUnsupportedError(
            f"App version {x_app_version} is no longer supported; "
            f"please update to {app_settings.mobile_min_supported_version} or later",
            details={"minimumVersion": app_settings.mobile_min_supported_version},
        )
    return x_app_version


AppVersion = Annotated[Optional[str], Depends(check_app_version)]


def client_ip(request: Request) -> Optional[str]:
    """Client address, honouring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def get_audit_sink(session: DbSession) -> DatabaseAuditSink:
    """Get the audit sink bound to the request session."""
    return DatabaseAuditSink(session)


AuditSink = Annotated[DatabaseAuditSink, Depends(get_audit_sink)]


def get_reconciler(session: DbSession, audit: AuditSink, app_settings: AppSettings) -> UploadReconciler:
    """Get the upload reconciler."""
    return UploadReconciler(session, audit, app_settings)


def get_provisioner(session: DbSession, audit: AuditSink, app_settings: AppSettings) -> DownloadProvisioner:
    """Get the download provisioner."""
    return DownloadProvisioner(session, audit, app_settings)


def get_orchestrator(
    session: DbSession, audit: AuditSink, app_settings: AppSettings
) -> EnterpriseSyncOrchestrator:
    """Get the enterprise sync orchestrator."""
    return EnterpriseSyncOrchestrator(session, audit, app_settings)


def get_device_repo(session: DbSession) -> DeviceRepository:
    """Get device registry repository."""
    return DeviceRepository(session)


# Type aliases for services
Reconciler = Annotated[UploadReconciler, Depends(get_reconciler)]
Provisioner = Annotated[DownloadProvisioner, Depends(get_provisioner)]
Orchestrator = Annotated[EnterpriseSyncOrchestrator, Depends(get_orchestrator)]
DeviceRepo = Annotated[DeviceRepository, Depends(get_device_repo)]
