"""
Role-based authorization policies for mobile sync.

Each role family gets one AuthorizationPolicy implementation. The change
processor and download provisioner ask the policy instead of branching
on the caller's role at every call site.
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import ColumnElement, false, true
from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.db.orm import Case
from caseflow.security.auth import Caller, UserRole
from caseflow.sync.errors import AccessDeniedError

logger = logging.getLogger(__name__)


# Case columns a field agent may change from the device
FIELD_AGENT_MUTABLE_FIELDS = frozenset({
    "status",
    "priority",
    "form_data",
})


class AuthorizationPolicy(ABC):
    """What a caller in a given role may see and change."""

    @abstractmethod
    def can_create_case(self, caller: Caller) -> bool:
        """Whether the caller may create cases."""

    @abstractmethod
    def case_scope(self, caller: Caller) -> ColumnElement[bool]:
        """SQL condition selecting the cases the caller may act on."""

    @abstractmethod
    def visible_cases(self, caller: Caller, assignee: Optional[str] = None) -> ColumnElement[bool]:
        """SQL condition selecting the cases returned by a download."""

    @abstractmethod
    def can_view_case(self, caller: Caller, case: Case) -> bool:
        """Whether the caller may see (and edit within field limits) a case."""

    @abstractmethod
    def mutable_case_fields(self) -> Optional[frozenset[str]]:
        """Case fields the caller may change; None means every field."""

    def can_override_terminal_status(self) -> bool:
        """Whether completed or cancelled cases may change status again."""
        return False

    def can_modify_attachments(self, caller: Caller, case: Case) -> bool:
        """Whether the caller may add or remove attachments on a case."""
        return self.can_view_case(caller, case)

    def deleted_case_subject(self, caller: Caller, assignee: Optional[str] = None) -> Optional[str]:
        """User whose reassigned-away cases must be reported as deleted."""
        return assignee

    def check_case_fields(self, caller: Caller, fields: Iterable[str]) -> None:
        """
        Ensure every field in an update is writable by the caller.

        Raises:
            AccessDeniedError: If any field is outside the caller's rights
        """
        allowed = self.mutable_case_fields()
        if allowed is None:
            return
        denied = sorted(set(fields) - allowed)
        if denied:
            logger.warning(
                f"User {caller.id} ({caller.role.value}) denied update of fields {denied}"
            )
            raise AccessDeniedError(
                f"Role {caller.role.value} cannot modify fields: {', '.join(denied)}"
            )


class FieldAgentPolicy(AuthorizationPolicy):
    """Field agents work only the cases assigned to them."""

    def can_create_case(self, caller: Caller) -> bool:
        return False

    def case_scope(self, caller: Caller) -> ColumnElement[bool]:
        return Case.assigned_to == caller.id

    def visible_cases(self, caller: Caller, assignee: Optional[str] = None) -> ColumnElement[bool]:
        # Assignee filters from the device are ignored
        return Case.assigned_to == caller.id

    def can_view_case(self, caller: Caller, case: Case) -> bool:
        return case.assigned_to == caller.id

    def mutable_case_fields(self) -> Optional[frozenset[str]]:
        return FIELD_AGENT_MUTABLE_FIELDS

    def deleted_case_subject(self, caller: Caller, assignee: Optional[str] = None) -> Optional[str]:
        return caller.id


class BackOfficePolicy(AuthorizationPolicy):
    """Back-office staff see every case and edit every business field."""

    def can_create_case(self, caller: Caller) -> bool:
        return True

    def case_scope(self, caller: Caller) -> ColumnElement[bool]:
        return true()

    def visible_cases(self, caller: Caller, assignee: Optional[str] = None) -> ColumnElement[bool]:
        if assignee:
            return Case.assigned_to == assignee
        return true()

    def can_view_case(self, caller: Caller, case: Case) -> bool:
        return True

    def mutable_case_fields(self) -> Optional[frozenset[str]]:
        return None


class AdminPolicy(BackOfficePolicy):
    """Administrators may additionally reopen terminal cases."""

    def can_override_terminal_status(self) -> bool:
        return True


class DenyAllPolicy(AuthorizationPolicy):
    """Fallback for roles the sync service does not know."""

    def can_create_case(self, caller: Caller) -> bool:
        return False

    def case_scope(self, caller: Caller) -> ColumnElement[bool]:
        return false()

    def visible_cases(self, caller: Caller, assignee: Optional[str] = None) -> ColumnElement[bool]:
        return false()

    def can_view_case(self, caller: Caller, case: Case) -> bool:
        return False

    def mutable_case_fields(self) -> Optional[frozenset[str]]:
        return frozenset()


_field_agent_policy = FieldAgentPolicy()
_back_office_policy = BackOfficePolicy()
_admin_policy = AdminPolicy()

POLICIES: dict[UserRole, AuthorizationPolicy] = {
    UserRole.FIELD_AGENT: _field_agent_policy,
    UserRole.BACKEND_USER: _back_office_policy,
    UserRole.MANAGER: _back_office_policy,
    UserRole.ADMIN: _admin_policy,
    UserRole.SUPER_ADMIN: _admin_policy,
}


def policy_for(role: UserRole) -> AuthorizationPolicy:
    """Select the authorization policy for a role."""
    return POLICIES.get(role, DenyAllPolicy())


class CaseAccessChecker:
    """
    Answers "may this user touch this case?" for collaborators.

    Wraps the per-role policies behind the (caller id, role, case id)
    interface used by attachment and form endpoints.
    """

    def __init__(self, db: AsyncSession):
        self._db = db

    async def is_authorized(self, caller_id: str, role: UserRole, case_id: UUID) -> bool:
        """
        Check whether a user may access a case.

        Returns:
            True if the case exists and the role's policy allows access
        """
        case = await self._db.get(Case, case_id)
        if case is None:
            return False

        caller = Caller(id=caller_id, username=caller_id, role=role)
        allowed = policy_for(role).can_view_case(caller, case)
        if not allowed:
            logger.warning(f"User {caller_id} denied access to case {case_id}")
        return allowed
