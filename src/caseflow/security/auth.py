"""
Authentication for Caseflow.

Implements:
- JWT access token verification (tokens are issued by the identity service)
- Caller identity and role model

Token creation is kept for tooling and tests; production tokens come
from the CRM's login service and share the signing key.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from jose import JWTError, jwt
from pydantic import BaseModel, Field

from caseflow.config import settings

logger = logging.getLogger(__name__)


class UserRole(str, Enum):
    """User roles known to the sync service."""
    SUPER_ADMIN = "SUPER_ADMIN"     # Full access, administrative overrides
    ADMIN = "ADMIN"                 # Full access, administrative overrides
    MANAGER = "MANAGER"             # Back office: creates and reassigns cases
    BACKEND_USER = "BACKEND_USER"   # Back office: creates and edits cases
    FIELD_AGENT = "FIELD_AGENT"     # Mobile app user working assigned cases


class TokenType(str, Enum):
    """Types of JWT tokens."""
    ACCESS = "access"
    REFRESH = "refresh"


class TokenPayload(BaseModel):
    """JWT token payload."""
    sub: str                          # User ID
    type: TokenType                   # Token type
    role: UserRole                    # User role
    exp: datetime                     # Expiration time
    iat: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    name: Optional[str] = None        # Display name


class Caller(BaseModel):
    """Identity of the user making a sync call."""
    id: str
    username: str
    full_name: Optional[str] = None
    role: UserRole = UserRole.FIELD_AGENT

    @property
    def is_field_agent(self) -> bool:
        return self.role == UserRole.FIELD_AGENT

    @property
    def is_admin(self) -> bool:
        return self.role in (UserRole.ADMIN, UserRole.SUPER_ADMIN)


class AuthenticationError(Exception):
    """Raised when authentication fails."""
    pass


def create_access_token(
    caller: Caller,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        caller: Identity to create the token for
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)

    payload = TokenPayload(
        sub=caller.id,
        type=TokenType.ACCESS,
        role=caller.role,
        exp=datetime.now(timezone.utc) + expires_delta,
        name=caller.full_name,
    )

    return jwt.encode(
        payload.model_dump(mode="json"),
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_token(token: str) -> TokenPayload:
    """
    Decode and validate a JWT token.

    Raises:
        AuthenticationError: If token is invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        return TokenPayload(**payload)
    except (JWTError, ValueError) as e:
        logger.warning(f"JWT decode failed: {e}")
        raise AuthenticationError("Invalid or expired token") from e


def verify_access_token(token: str) -> TokenPayload:
    """
    Verify an access token.

    Raises:
        AuthenticationError: If token is invalid, expired, or wrong type
    """
    payload = decode_token(token)

    if payload.type != TokenType.ACCESS:
        raise AuthenticationError("Invalid token type")

    return payload


def caller_from_token(token: str) -> Caller:
    """Build the caller identity from a verified access token."""
    payload = verify_access_token(token)
    return Caller(
        id=payload.sub,
        username=payload.sub,
        full_name=payload.name,
        role=payload.role,
    )
