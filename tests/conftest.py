import json
import os

# Set test environment
os.environ["DEBUG"] = "true"
os.environ["SECRET_KEY"] = "change-me-in-production"

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from idbridge.main import app
from idbridge.models import User
from idbridge.services.claims_codec import ClaimsCodec
from idbridge.services.identity_bridge import IdentityBridge
from idbridge.services.idp_client import IdPClient
from idbridge.services.user_directory import UserEmailConflictError
from idbridge.utils.auth import get_identity_bridge

TEST_SECRET = "test-signing-secret"
TEST_ISSUER = "idbridge-api"
TEST_AUDIENCE = "idbridge-services"
IDP_URL = "http://idp.test"
OAUTH_EXCHANGE_PATH = "/self-service/methods/oidc/exchange"
VALID_RECOVERY_CODE = "123456"
SESSION_COOKIE_NAME = "ory_kratos_session"


class FakeClock:
    """Manually advanced clock for token timestamps."""

    def __init__(self, now: float = 1_700_000_000):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUserDirectory:
    """In-memory stand-in for UserDirectory."""

    def __init__(self):
        self.users: dict[UUID, User] = {}
        self.fail_last_login = False
        self.fail_lookups = False
        self.last_login_updates = 0

    def add_user(self, idp_identity_id: str, email: str, is_active: bool = True) -> User:
        user = User(
            id=uuid4(),
            idp_identity_id=idp_identity_id,
            email=email,
            is_active=is_active,
            last_login_at=None,
        )
        self.users[user.id] = user
        return user

    async def get_by_id(self, user_id: UUID) -> Optional[User]:
        return self.users.get(user_id)

    async def get_by_idp_identity_id(self, idp_identity_id: str) -> Optional[User]:
        if self.fail_lookups:
            raise ConnectionError("database unavailable")
        for user in self.users.values():
            if user.idp_identity_id == idp_identity_id:
                return user
        return None

    async def get_by_email(self, email: str) -> Optional[User]:
        for user in self.users.values():
            if user.email == email and user.is_active:
                return user
        return None

    async def create_after_registration(
        self, idp_identity_id: str, email: str
    ) -> tuple[User, bool]:
        existing = await self.get_by_idp_identity_id(idp_identity_id)
        if existing is not None:
            return existing, False
        if any(u.email == email for u in self.users.values()):
            raise UserEmailConflictError(
                f"Email {email} is already registered to another identity."
            )
        return self.add_user(idp_identity_id, email), True

    async def update_last_login(self, user_id: UUID, when: Optional[datetime] = None) -> None:
        if self.fail_last_login:
            raise RuntimeError("database unavailable")
        user = self.users[user_id]
        user.last_login_at = when or datetime.now(timezone.utc)
        self.last_login_updates += 1

    async def set_active(self, user_id: UUID, is_active: bool) -> bool:
        user = self.users.get(user_id)
        if user is None:
            return False
        user.is_active = is_active
        return True

    async def activate(self, user_id: UUID) -> bool:
        return await self.set_active(user_id, True)

    async def deactivate(self, user_id: UUID) -> bool:
        return await self.set_active(user_id, False)


def session_payload(
    identity_id: str,
    traits: Optional[dict[str, Any]] = None,
    active: bool = True,
    expires_in: timedelta = timedelta(hours=1),
) -> dict[str, Any]:
    now = datetime.now(timezone.utc)
    return {
        "id": f"session-{identity_id}",
        "active": active,
        "expires_at": (now + expires_in).isoformat(),
        "issued_at": now.isoformat(),
        "identity": {
            "id": identity_id,
            "schema_id": "default",
            "state": "active",
            "traits": traits if traits is not None else {},
        },
    }


def idp_error(code: int, message: str) -> dict[str, Any]:
    return {"error": {"code": code, "status": "Unauthorized", "message": message}}


class FakeIdP:
    """Identity provider behind an httpx.MockTransport."""

    def __init__(self):
        self.sessions: dict[str, dict[str, Any]] = {}
        self.oauth_codes: dict[str, str] = {}
        self.requests: list[httpx.Request] = []

    def add_session(self, token: str, identity_id: str, **kwargs: Any) -> None:
        self.sessions[token] = session_payload(identity_id, **kwargs)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/sessions/whoami":
            token = request.headers.get("X-Session-Token", "")
            cookie = request.headers.get("Cookie", "")
            if cookie.startswith(f"{SESSION_COOKIE_NAME}="):
                token = cookie.split("=", 1)[1]
            if token in self.sessions:
                return httpx.Response(200, json=self.sessions[token])
            return httpx.Response(
                401, json=idp_error(401, "No valid session credentials found in the request.")
            )

        if path == OAUTH_EXCHANGE_PATH:
            data = json.loads(request.content)
            session_token = self.oauth_codes.get(data.get("code"))
            if session_token is None:
                return httpx.Response(400, json=idp_error(400, "invalid authorization code"))
            return httpx.Response(200, json={"session_token": session_token})

        if path == "/self-service/recovery/api":
            return httpx.Response(
                200, json={"id": "flow-1", "type": "api", "state": "choose_method"}
            )

        if path == "/self-service/recovery":
            data = json.loads(request.content)
            flow = {"id": request.url.params.get("flow"), "type": "api"}
            if "code" in data:
                if data["code"] != VALID_RECOVERY_CODE:
                    return httpx.Response(400, json={**flow, "state": "sent_email"})
                return httpx.Response(200, json={**flow, "state": "passed_challenge"})
            if "password" in data:
                return httpx.Response(200, json={**flow, "state": "passed_challenge"})
            return httpx.Response(200, json={**flow, "state": "sent_email"})

        return httpx.Response(404, json=idp_error(404, "not found"))


class RecordingNotifier:
    def __init__(self):
        self.emails: list[str] = []
        self.fail = False

    async def __call__(self, email: str) -> None:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.emails.append(email)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def codec(clock: FakeClock) -> ClaimsCodec:
    return ClaimsCodec(
        secret_key=TEST_SECRET,
        issuer=TEST_ISSUER,
        audience=TEST_AUDIENCE,
        clock=clock,
    )


@pytest.fixture
def fake_idp() -> FakeIdP:
    return FakeIdP()


@pytest.fixture
def idp_client(fake_idp: FakeIdP) -> IdPClient:
    return IdPClient(
        public_url=IDP_URL,
        oauth_exchange_path=OAUTH_EXCHANGE_PATH,
        transport=httpx.MockTransport(fake_idp.handler),
    )


@pytest.fixture
def directory() -> FakeUserDirectory:
    return FakeUserDirectory()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def bridge(
    codec: ClaimsCodec,
    idp_client: IdPClient,
    directory: FakeUserDirectory,
    notifier: RecordingNotifier,
) -> IdentityBridge:
    return IdentityBridge(
        codec=codec,
        idp=idp_client,
        directory=directory,
        oauth_providers=["google", "facebook"],
        default_redirect_uri="idbridge://oauth/callback",
        recovery_notifier=notifier,
    )


@pytest.fixture
def test_user(directory: FakeUserDirectory, fake_idp: FakeIdP) -> User:
    """Active user idp-1 / a@x.com with a live session token tok-A."""
    fake_idp.add_session(
        "tok-A",
        "idp-1",
        traits={"email": "a@x.com", "display_name": "Alice", "user_type": "artist"},
    )
    return directory.add_user("idp-1", "a@x.com")


@pytest.fixture
def access_token(codec: ClaimsCodec, test_user: User) -> str:
    return codec.mint(
        user_id=test_user.id,
        idp_identity_id=test_user.idp_identity_id,
        email=test_user.email,
        is_active=True,
        display_name="Alice",
        user_type="artist",
    )


@pytest.fixture
def auth_headers(access_token: str) -> dict[str, str]:
    """Create authorization headers for authenticated requests."""
    return {"Authorization": f"Bearer {access_token}"}


@pytest_asyncio.fixture(scope="function")
async def client(bridge: IdentityBridge) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with the identity bridge overridden."""

    async def override_get_identity_bridge():
        return bridge

    app.dependency_overrides[get_identity_bridge] = override_get_identity_bridge

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
