"""
Tests for the enterprise sync orchestrator.
"""

from datetime import timedelta

import pytest

from caseflow.db.orm import CaseStatus
from caseflow.db.repositories import CaseRepository, DeviceRepository
from caseflow.sync.enterprise import EnterpriseSyncOrchestrator
from caseflow.sync.errors import AccessDeniedError, CapacityError, ValidationError
from caseflow.sync.schemas import EnterpriseSyncRequest, LocalChanges

from conftest import T0, case_update, iso


@pytest.fixture
def orchestrator(session, audit_sink, test_settings, clock):
    return EnterpriseSyncOrchestrator(session, audit_sink, test_settings, clock)


def request(**kwargs):
    kwargs.setdefault("device_id", "pixel-7")
    kwargs.setdefault("last_sync_timestamp", T0 - timedelta(hours=1))
    return EnterpriseSyncRequest(**kwargs)


class TestGuards:
    """Tests for request-level rejection."""

    @pytest.mark.asyncio
    async def test_back_office_refused(self, orchestrator, backend_user, audit_sink):
        with pytest.raises(AccessDeniedError) as exc_info:
            await orchestrator.sync(request(), backend_user)

        assert exc_info.value.code == "UNAUTHORIZED_ROLE"
        assert audit_sink.events == []

    @pytest.mark.parametrize("device_id", [None, "", "   "])
    @pytest.mark.asyncio
    async def test_device_id_required(self, orchestrator, field_agent, device_id):
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.sync(request(device_id=device_id), field_agent)

        assert exc_info.value.code == "MISSING_DEVICE_ID"

    @pytest.mark.asyncio
    async def test_oversized_page_rejected_before_upload(self, orchestrator, session, make_case, field_agent):
        case = await make_case()

        with pytest.raises(CapacityError):
            await orchestrator.sync(
                request(
                    limit=11,
                    local_changes=LocalChanges(
                        cases=[case_update(case.id, T0 + timedelta(minutes=1), priority=5)]
                    ),
                ),
                field_agent,
            )

        assert (await CaseRepository(session).get_by_id(case.id)).priority == 2


class TestSyncCycle:
    """Tests for the combined upload and download."""

    @pytest.mark.asyncio
    async def test_uploaded_change_is_downloaded(self, orchestrator, clock, make_case, field_agent):
        case = await make_case()
        clock.advance(hours=1)

        response = await orchestrator.sync(
            request(
                last_sync_timestamp=T0,
                local_changes=LocalChanges(
                    cases=[case_update(case.id, T0 + timedelta(minutes=1), status="IN_PROGRESS")]
                ),
            ),
            field_agent,
        )

        assert response.results.processed_cases == 1
        assert [c.id for c in response.cases] == [case.id]
        assert response.cases[0].status == CaseStatus.IN_PROGRESS.value
        assert response.metadata.total_updated_cases == 1
        assert response.metadata.server_timestamp == iso(clock.now)

    @pytest.mark.asyncio
    async def test_upload_conflicts_surface_at_top_level(self, orchestrator, make_case, field_agent):
        case = await make_case()

        response = await orchestrator.sync(
            request(local_changes=LocalChanges(cases=[case_update(case.id, T0 - timedelta(days=1), priority=5)])),
            field_agent,
        )

        assert [c.entity_id for c in response.conflicts] == [str(case.id)]
        assert response.results.conflicts == response.conflicts

    @pytest.mark.asyncio
    async def test_download_only(self, orchestrator, make_case, field_agent):
        await make_case()

        response = await orchestrator.sync(request(), field_agent)

        assert response.results is None
        assert len(response.cases) == 1
        assert response.conflicts == []

    @pytest.mark.asyncio
    async def test_enterprise_page_size(self, orchestrator, make_case, field_agent):
        for _ in range(12):
            await make_case()

        response = await orchestrator.sync(request(), field_agent)

        assert len(response.cases) == 10
        assert response.has_more
        assert response.next_checkpoint.id == response.cases[-1].id


class TestDeviceRegistry:
    """Tests for device bookkeeping and audit."""

    @pytest.mark.asyncio
    async def test_sync_count_increments(self, orchestrator, session, clock, field_agent):
        await orchestrator.sync(request(platform="ios", app_version="2.4.1"), field_agent)
        clock.advance(minutes=5)
        await orchestrator.sync(request(platform="ios", app_version="2.4.1"), field_agent)

        device = await DeviceRepository(session).get("agent-1", "pixel-7")
        assert device.sync_count == 2
        assert device.platform == "IOS"
        assert device.app_version == "2.4.1"
        assert device.last_sync_at == clock.now

    @pytest.mark.asyncio
    async def test_single_enterprise_audit_event(self, orchestrator, audit_sink, make_case, field_agent):
        case = await make_case()

        await orchestrator.sync(
            request(local_changes=LocalChanges(cases=[case_update(case.id, T0 + timedelta(minutes=1), priority=3)])),
            field_agent,
            ip_address="10.2.2.2",
        )

        assert [e["action"] for e in audit_sink.events] == ["MOBILE_SYNC_ENTERPRISE"]
        details = audit_sink.events[0]["details"]
        assert details["deviceId"] == "pixel-7"
        assert details["uploadedCases"] == 1
        assert details["syncCount"] == 1
        assert details["platform"] == "ANDROID"
