import pytest
from httpx import AsyncClient

from idbridge.models import User
from tests.conftest import FakeUserDirectory, RecordingNotifier


def registration_payload(identity_id: str, email: str) -> dict:
    return {
        "identity": {
            "id": identity_id,
            "schema_id": "default",
            "state": "active",
            "traits": {"email": email, "display_name": "New User"},
        },
        "flow": {"id": "registration-flow", "type": "api"},
    }


class TestAfterRegistration:
    """Tests for the after-registration hook."""

    @pytest.mark.asyncio
    async def test_creates_local_user(self, client: AsyncClient, directory: FakeUserDirectory):
        response = await client.post(
            "/api/v1/internal/hooks/after-registration",
            json=registration_payload("idp-9", "new@example.com"),
        )
        assert response.status_code == 200

        data = response.json()
        assert data["created"] is True
        user = next(iter(directory.users.values()))
        assert data["user_id"] == str(user.id)
        assert user.idp_identity_id == "idp-9"
        assert user.email == "new@example.com"

    @pytest.mark.asyncio
    async def test_redelivery_returns_same_user(
        self, client: AsyncClient, directory: FakeUserDirectory
    ):
        payload = registration_payload("idp-9", "new@example.com")

        first = await client.post("/api/v1/internal/hooks/after-registration", json=payload)
        second = await client.post("/api/v1/internal/hooks/after-registration", json=payload)

        assert second.status_code == 200
        assert second.json() == {"user_id": first.json()["user_id"], "created": False}
        assert len(directory.users) == 1

    @pytest.mark.asyncio
    async def test_email_conflict(self, client: AsyncClient, test_user: User):
        response = await client.post(
            "/api/v1/internal/hooks/after-registration",
            json=registration_payload("idp-other", "a@x.com"),
        )
        assert response.status_code == 409
        assert response.json()["code"] == "CONFLICT"

    @pytest.mark.asyncio
    async def test_missing_identity(self, client: AsyncClient):
        response = await client.post("/api/v1/internal/hooks/after-registration", json={})
        assert response.status_code == 422


class TestAfterRecovery:
    """Tests for the after-recovery hook."""

    @pytest.mark.asyncio
    async def test_known_user(
        self, client: AsyncClient, notifier: RecordingNotifier, test_user: User
    ):
        response = await client.post(
            "/api/v1/internal/hooks/after-recovery",
            json={
                "identity": {"id": "idp-1"},
                "recovery_info": {
                    "flow_id": "flow-1",
                    "recovery_method": "code",
                    "recovered_at": "2024-05-01T12:00:00Z",
                },
            },
        )
        assert response.status_code == 200

        data = response.json()
        assert data["message"] == "Recovery webhook processed successfully"
        assert data["user_id"] == str(test_user.id)
        assert data["recovered_at"].startswith("2024-05-01T12:00:00")
        assert notifier.emails == ["a@x.com"]
        assert test_user.last_login_at is not None

    @pytest.mark.asyncio
    async def test_unknown_user_is_acknowledged(
        self, client: AsyncClient, notifier: RecordingNotifier
    ):
        response = await client.post(
            "/api/v1/internal/hooks/after-recovery", json={"identity": {"id": "idp-unknown"}}
        )
        assert response.status_code == 200
        assert response.json()["message"] == "Recovery processed"
        assert response.json()["user_id"] is None
        assert notifier.emails == []

    @pytest.mark.asyncio
    async def test_notifier_failure_still_acknowledged(
        self, client: AsyncClient, notifier: RecordingNotifier, test_user: User
    ):
        notifier.fail = True

        response = await client.post(
            "/api/v1/internal/hooks/after-recovery", json={"identity": {"id": "idp-1"}}
        )
        assert response.status_code == 200
        assert response.json()["user_id"] == str(test_user.id)

    @pytest.mark.asyncio
    async def test_lookup_failure_is_acknowledged(
        self, client: AsyncClient, directory: FakeUserDirectory, notifier: RecordingNotifier
    ):
        directory.fail_lookups = True

        response = await client.post(
            "/api/v1/internal/hooks/after-recovery", json={"identity": {"id": "idp-1"}}
        )
        assert response.status_code == 200
        assert response.json()["message"] == "Recovery processed"
        assert notifier.emails == []
