"""
Tests for role-based authorization policies.
"""

import uuid

import pytest

from caseflow.db.orm import Case
from caseflow.security.access import (
    AdminPolicy,
    BackOfficePolicy,
    CaseAccessChecker,
    DenyAllPolicy,
    FieldAgentPolicy,
    policy_for,
)
from caseflow.security.auth import UserRole
from caseflow.sync.errors import AccessDeniedError


class TestPolicySelection:
    """Tests for role to policy mapping."""

    @pytest.mark.parametrize(
        "role,policy_type",
        [
            (UserRole.FIELD_AGENT, FieldAgentPolicy),
            (UserRole.BACKEND_USER, BackOfficePolicy),
            (UserRole.MANAGER, BackOfficePolicy),
            (UserRole.ADMIN, AdminPolicy),
            (UserRole.SUPER_ADMIN, AdminPolicy),
        ],
    )
    def test_policy_for_role(self, role, policy_type):
        assert type(policy_for(role)) is policy_type

    def test_only_admins_override_terminal_status(self):
        assert policy_for(UserRole.ADMIN).can_override_terminal_status()
        assert not policy_for(UserRole.MANAGER).can_override_terminal_status()
        assert not policy_for(UserRole.FIELD_AGENT).can_override_terminal_status()


class TestFieldAgentPolicy:
    """Tests for field agent restrictions."""

    def test_cannot_create(self, field_agent):
        assert not FieldAgentPolicy().can_create_case(field_agent)

    def test_allowed_fields(self, field_agent):
        FieldAgentPolicy().check_case_fields(field_agent, ["status", "priority", "form_data"])

    @pytest.mark.parametrize("field", ["notes", "verification_outcome"])
    def test_outcome_and_notes_go_through_form_data(self, field_agent, field):
        with pytest.raises(AccessDeniedError) as exc_info:
            FieldAgentPolicy().check_case_fields(field_agent, ["status", field])

        assert field in exc_info.value.message

    def test_business_fields_denied(self, field_agent):
        with pytest.raises(AccessDeniedError) as exc_info:
            FieldAgentPolicy().check_case_fields(field_agent, ["notes", "assigned_to", "customer_phone"])

        assert "assigned_to" in exc_info.value.message
        assert "customer_phone" in exc_info.value.message

    def test_views_only_assigned_cases(self, field_agent):
        policy = FieldAgentPolicy()
        assert policy.can_view_case(field_agent, Case(assigned_to="agent-1"))
        assert not policy.can_view_case(field_agent, Case(assigned_to="agent-2"))
        assert not policy.can_modify_attachments(field_agent, Case(assigned_to=None))

    def test_tombstones_always_for_self(self, field_agent):
        assert FieldAgentPolicy().deleted_case_subject(field_agent, "agent-9") == "agent-1"


class TestBackOfficePolicy:
    """Tests for back-office access."""

    def test_any_field(self, manager):
        BackOfficePolicy().check_case_fields(manager, ["customer_name", "assigned_to", "status"])

    def test_tombstones_follow_filter(self, manager):
        policy = BackOfficePolicy()
        assert policy.deleted_case_subject(manager, "agent-2") == "agent-2"
        assert policy.deleted_case_subject(manager) is None

    def test_deny_all(self, manager):
        policy = DenyAllPolicy()
        assert not policy.can_create_case(manager)
        assert not policy.can_view_case(manager, Case(assigned_to="manager-1"))
        with pytest.raises(AccessDeniedError):
            policy.check_case_fields(manager, ["notes"])


class TestCaseAccessChecker:
    """Tests for the collaborator-facing access check."""

    @pytest.mark.asyncio
    async def test_assigned_agent(self, session, make_case):
        case = await make_case(assigned_to="agent-1")
        checker = CaseAccessChecker(session)

        assert await checker.is_authorized("agent-1", UserRole.FIELD_AGENT, case.id)
        assert not await checker.is_authorized("agent-2", UserRole.FIELD_AGENT, case.id)

    @pytest.mark.asyncio
    async def test_back_office_and_missing_case(self, session, make_case):
        case = await make_case(assigned_to="agent-1")
        checker = CaseAccessChecker(session)

        assert await checker.is_authorized("manager-1", UserRole.MANAGER, case.id)
        assert not await checker.is_authorized("manager-1", UserRole.MANAGER, uuid.uuid4())
