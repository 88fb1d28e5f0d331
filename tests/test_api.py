"""
Integration tests for the mobile sync API with actual HTTP requests.

Tests:
- Authentication (JWT and development headers)
- Error envelope and app version gate
- Upload, download and enterprise round trips
- Device status and fleet statistics
"""

import uuid

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from caseflow import main
from caseflow.api.deps import compare_versions
from caseflow.config import Settings, get_settings
from caseflow.security.auth import Caller, UserRole, create_access_token

SYNC = "/api/v1/mobile/sync"
EPOCH = "2020-01-01T00:00:00Z"


def create_test_token(role: UserRole = UserRole.FIELD_AGENT, user_id: str = "agent-1") -> str:
    """Create a test JWT token."""
    return create_access_token(Caller(id=user_id, username=user_id, role=role))


def bearer(role: UserRole = UserRole.FIELD_AGENT, user_id: str = "agent-1") -> dict[str, str]:
    return {"Authorization": f"Bearer {create_test_token(role, user_id)}"}


def dev_headers(user_id: str, role: str) -> dict[str, str]:
    return {"X-User-Id": user_id, "X-User-Role": role}


@pytest.fixture
def client(tmp_path, monkeypatch):
    """Application client backed by a throwaway SQLite file."""
    app_settings = Settings(
        secret_key="test-secret-key-that-is-long-enough-123",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}",
        database_create_tables=True,
        mobile_min_supported_version="2.0.0",
    )
    monkeypatch.setattr(main, "settings", app_settings)
    main.app.dependency_overrides[get_settings] = lambda: app_settings

    with TestClient(main.app) as test_client:
        yield test_client

    main.app.dependency_overrides.clear()


def create_case_via_upload(client, assigned_to="agent-1", **data) -> str:
    case_id = str(uuid.uuid4())
    data.setdefault("title", "Residence verification")
    response = client.post(
        f"{SYNC}/upload",
        headers=dev_headers("backend-1", "BACKEND_USER"),
        json={
            "localChanges": {
                "cases": [{
                    "id": case_id,
                    "action": "CREATE",
                    "data": {"assignedTo": assigned_to, **data},
                    "timestamp": EPOCH,
                }]
            }
        },
    )
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["results"]["processedCases"] == 1
    return case_id


class TestAuthentication:
    """Tests for caller identification."""

    def test_requires_authentication(self, client):
        response = client.get(f"{SYNC}/download")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "UNAUTHORIZED"

    def test_invalid_token(self, client):
        response = client.get(f"{SYNC}/download", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["message"] == "Invalid or expired token"

    def test_jwt_caller(self, client):
        response = client.get(f"{SYNC}/download", headers=bearer())

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["cases"] == []

    def test_stats_require_admin(self, client):
        response = client.get(f"{SYNC}/stats", headers=bearer())

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["error"]["code"] == "FORBIDDEN"


class TestVersionGate:
    """Tests for the minimum app version check."""

    def test_old_app_refused(self, client):
        response = client.get(f"{SYNC}/download", headers={**bearer(), "X-App-Version": "1.9.9"})

        assert response.status_code == status.HTTP_426_UPGRADE_REQUIRED
        error = response.json()["error"]
        assert error["code"] == "APP_VERSION_UNSUPPORTED"
        assert error["details"] == {"minimumVersion": "2.0.0"}

    def test_current_app_allowed(self, client):
        response = client.get(f"{SYNC}/download", headers={**bearer(), "X-App-Version": "2.0.1"})
        assert response.status_code == status.HTTP_200_OK

    @pytest.mark.parametrize(
        "left,right,expected",
        [
            ("1.10.0", "1.9.0", 1),
            ("2.0", "2.0.0", 0),
            ("v1.2.3", "1.2.4", -1),
            ("1.2.3-beta", "1.2.3", 0),
        ],
    )
    def test_compare_versions(self, left, right, expected):
        assert compare_versions(left, right) == expected


class TestSyncRoundTrip:
    """Tests for upload, download and enterprise over HTTP."""

    def test_upload_then_download(self, client):
        case_id = create_case_via_upload(client, customerName="Meera Shah")

        response = client.get(
            f"{SYNC}/download",
            headers=bearer(),
            params={"lastSyncTimestamp": EPOCH, "limit": 5},
        )

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert [c["id"] for c in body["cases"]] == [case_id]
        assert body["cases"][0]["customerName"] == "Meera Shah"
        assert body["hasMore"] is False
        assert body["nextCheckpoint"]["id"] == case_id

    def test_upload_reports_item_errors(self, client):
        response = client.post(
            f"{SYNC}/upload",
            headers={**bearer(), "X-Device-Id": "pixel-7"},
            json={
                "localChanges": {
                    "cases": [{"id": str(uuid.uuid4()), "action": "UPDATE", "data": {"notes": "x"}, "timestamp": EPOCH}]
                }
            },
        )

        assert response.status_code == status.HTTP_200_OK
        results = response.json()["results"]
        assert results["processedCases"] == 0
        assert results["errors"][0]["reason"] == "NOT_FOUND"

    def test_upload_without_changes(self, client):
        response = client.post(f"{SYNC}/upload", headers=bearer(), json={})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"]["code"] == "MISSING_LOCAL_CHANGES"

    def test_download_limit_too_large(self, client):
        response = client.get(f"{SYNC}/download", headers=bearer(), params={"limit": 10000})

        assert response.status_code == 413
        assert response.json()["error"]["code"] == "SYNC_BATCH_TOO_LARGE"

    def test_download_bad_query(self, client):
        response = client.get(f"{SYNC}/download", headers=bearer(), params={"limit": "many"})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_FAILED"

    def test_enterprise_sync_and_status(self, client):
        create_case_via_upload(client)

        response = client.post(
            f"{SYNC}/enterprise",
            headers=bearer(),
            json={"deviceId": "pixel-7", "lastSyncTimestamp": EPOCH, "platform": "android", "appVersion": "2.1.0"},
        )

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert len(body["cases"]) == 1
        assert body["metadata"]["totalUpdatedCases"] == 1
        assert body["results"] is None

        status_response = client.get(f"{SYNC}/status", headers={**bearer(), "X-Device-Id": "pixel-7"})
        assert status_response.status_code == status.HTTP_200_OK
        device = status_response.json()
        assert device["syncCount"] == 1
        assert device["platform"] == "ANDROID"
        assert device["appVersion"] == "2.1.0"

    def test_enterprise_refuses_back_office(self, client):
        response = client.post(
            f"{SYNC}/enterprise",
            headers=bearer(UserRole.MANAGER, "manager-1"),
            json={"deviceId": "desk-1"},
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["error"]["code"] == "UNAUTHORIZED_ROLE"

    def test_enterprise_requires_device(self, client):
        response = client.post(f"{SYNC}/enterprise", headers=bearer(), json={})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"]["code"] == "MISSING_DEVICE_ID"


class TestDevices:
    """Tests for device status and statistics."""

    def test_status_requires_device_header(self, client):
        response = client.get(f"{SYNC}/status", headers=bearer())

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"]["code"] == "MISSING_DEVICE_ID"

    def test_unknown_device(self, client):
        response = client.get(f"{SYNC}/status", headers={**bearer(), "X-Device-Id": "ghost"})

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error"]["code"] == "DEVICE_NOT_FOUND"

    def test_admin_stats(self, client):
        client.post(f"{SYNC}/enterprise", headers=bearer(), json={"deviceId": "pixel-7"})
        client.post(f"{SYNC}/enterprise", headers=bearer(user_id="agent-2"), json={"deviceId": "pixel-8"})

        response = client.get(f"{SYNC}/stats", headers=bearer(UserRole.ADMIN, "admin-1"))

        assert response.status_code == status.HTTP_200_OK
        stats = response.json()
        assert stats["activeUsers"] == 2
        assert stats["activeDevices"] == 2
        assert stats["averageSyncCount"] == 1.0
        assert stats["syncsLastHour"] == 2


class TestHealth:
    """Tests for service endpoints."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["status"] == "healthy"
        assert body["services"]["database"]["status"] == "healthy"

    def test_security_headers(self, client):
        response = client.get("/")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "X-Request-ID" in response.headers
