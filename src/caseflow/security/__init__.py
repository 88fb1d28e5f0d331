"""
Caseflow Security Module

Provides caller authentication and per-role authorization policies.
"""

from caseflow.security.auth import (
    AuthenticationError,
    Caller,
    TokenPayload,
    UserRole,
    caller_from_token,
    create_access_token,
    verify_access_token,
)
from caseflow.security.access import (
    AdminPolicy,
    AuthorizationPolicy,
    BackOfficePolicy,
    CaseAccessChecker,
    FieldAgentPolicy,
    policy_for,
)

__all__ = [
    # Authentication
    "AuthenticationError",
    "Caller",
    "TokenPayload",
    "UserRole",
    "caller_from_token",
    "create_access_token",
    "verify_access_token",
    # Authorization
    "AuthorizationPolicy",
    "FieldAgentPolicy",
    "BackOfficePolicy",
    "AdminPolicy",
    "CaseAccessChecker",
    "policy_for",
]
