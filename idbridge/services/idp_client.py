import logging
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from idbridge.schemas.idp import (
    IdPErrorBody,
    RecoveryFlow,
    RecoverySubmissionResult,
    Session,
)

logger = logging.getLogger(__name__)

SESSION_TOKEN_HEADER = "X-Session-Token"

# step -> (success message, failure message)
RECOVERY_STEP_MESSAGES = {
    "code_sent": ("Recovery code sent successfully", "Failed to send recovery code"),
    "code_verified": ("Code verified successfully", "Invalid or expired code"),
    "password_set": ("Password updated successfully", "Failed to update password"),
}


class IdPError(Exception):
    """Base error for identity provider calls."""


class IdPAuthError(IdPError):
    """The identity provider rejected the credentials or the session is unusable."""

    def __init__(self, message: str, code: int = 401, status: str = "Unauthorized"):
        self.message = message
        self.code = code
        self.status = status
        super().__init__(f"identity provider error {code}: {message}")


class IdPUnavailableError(IdPError):
    """Transport failure, timeout or an unexpected answer from the identity provider."""


def recovery_step_for(payload: dict[str, Any]) -> str:
    if "password" in payload:
        return "password_set"
    if "code" in payload:
        return "code_verified"
    return "code_sent"


class IdPClient:
    """Async client for the identity provider's public API.

    Each call opens its own ``httpx.AsyncClient`` bounded by ``timeout``; a
    timeout surfaces as ``IdPUnavailableError``.
    """

    def __init__(
        self,
        public_url: str,
        timeout: float = 10.0,
        oauth_exchange_path: str = "/self-service/methods/oidc/exchange",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.public_url = public_url.rstrip("/")
        self.timeout = timeout
        self.oauth_exchange_path = oauth_exchange_path
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.public_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    @staticmethod
    def _parse_error(response: httpx.Response) -> Optional[IdPErrorBody]:
        try:
            body = response.json()
        except ValueError:
            return None
        if not isinstance(body, dict):
            return None
        # Kratos wraps errors in {"error": {...}}; accept the flat form too
        error = body.get("error", body)
        if not isinstance(error, dict):
            return None
        try:
            return IdPErrorBody.model_validate(error)
        except ValidationError:
            return None

    async def verify_session(self, session_token: str) -> Session:
        """
        Introspect a session via ``/sessions/whoami``.

        Raises:
            IdPAuthError: Empty token, structured rejection, inactive or expired session
            IdPUnavailableError: Transport errors, 5xx answers and any other unexpected response
        """
        if not session_token:
            raise IdPAuthError("no session token provided")
        return await self._whoami({SESSION_TOKEN_HEADER: session_token})

    async def verify_session_cookie(self, cookie: str) -> Session:
        """Same as :meth:`verify_session` for a browser session cookie header value."""
        if not cookie:
            raise IdPAuthError("no session cookie provided")
        return await self._whoami({"Cookie": cookie})

    async def _whoami(self, headers: dict[str, str]) -> Session:
        async with self._client() as client:
            try:
                response = await client.get("/sessions/whoami", headers=headers)
            except httpx.HTTPError as e:
                logger.error("Session introspection failed: %s", e)
                raise IdPUnavailableError(f"failed to reach identity provider: {e}") from None

        if response.status_code != httpx.codes.OK:
            error = self._parse_error(response)
            if error is None or response.is_server_error:
                raise IdPUnavailableError(f"invalid session: status {response.status_code}")
            raise IdPAuthError(
                error.message or error.reason or "invalid session",
                code=error.code,
                status=error.status,
            )

        try:
            session = Session.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise IdPUnavailableError(f"failed to parse session: {e}") from None

        if not session.active:
            raise IdPAuthError("session is not active")

        expires_at = session.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if datetime.now(timezone.utc) > expires_at:
            raise IdPAuthError("session has expired")

        return session

    def build_authorization_url(self, provider: str, redirect_uri: str, state: str) -> str:
        query = urlencode({"provider": provider, "return_to": redirect_uri, "state": state})
        return f"{self.public_url}/self-service/login/api?{query}"

    async def exchange_code_for_session(self, provider: str, code: str, state: str) -> str:
        """Exchange an OAuth authorization code for an identity provider session token."""
        async with self._client() as client:
            try:
                response = await client.post(
                    self.oauth_exchange_path,
                    json={"provider": provider, "code": code, "state": state},
                )
            except httpx.HTTPError as e:
                logger.error("OAuth code exchange failed for %s: %s", provider, e)
                raise IdPUnavailableError(f"failed to reach identity provider: {e}") from None

        if response.is_server_error:
            raise IdPUnavailableError(f"OAuth code exchange failed: status {response.status_code}")
        if not response.is_success:
            error = self._parse_error(response)
            message = error.message if error and error.message else "OAuth code exchange failed"
            raise IdPAuthError(message, code=response.status_code)

        try:
            session_token = response.json().get("session_token")
        except (ValueError, AttributeError):
            session_token = None
        if not session_token:
            raise IdPAuthError("identity provider returned no session token")
        return session_token

    async def initiate_recovery(self) -> RecoveryFlow:
        """Create a new API recovery flow."""
        async with self._client() as client:
            try:
                response = await client.get("/self-service/recovery/api")
            except httpx.HTTPError as e:
                logger.error("Recovery flow creation failed: %s", e)
                raise IdPUnavailableError(f"failed to initiate recovery flow: {e}") from None

        if response.status_code != httpx.codes.OK:
            raise IdPUnavailableError(f"identity provider returned status {response.status_code}")

        try:
            return RecoveryFlow.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise IdPUnavailableError(f"failed to decode recovery flow: {e}") from None

    async def submit_recovery_step(
        self, flow_id: str, payload: dict[str, Any]
    ) -> RecoverySubmissionResult:
        """
        Submit one step of a recovery flow using the ``code`` method.

        The step (code delivery, code verification, new password) is inferred
        from the fields present in ``payload``. Any 2xx answer is a success.
        """
        step = recovery_step_for(payload)
        success_message, failure_message = RECOVERY_STEP_MESSAGES[step]

        async with self._client() as client:
            try:
                response = await client.post(
                    "/self-service/recovery",
                    params={"flow": flow_id},
                    json={"method": "code", **payload},
                )
            except httpx.HTTPError as e:
                logger.error("Recovery step %s failed for flow %s: %s", step, flow_id, e)
                raise IdPUnavailableError(f"failed to submit recovery flow: {e}") from None

        flow: Optional[RecoveryFlow] = None
        try:
            body = response.json()
            if isinstance(body, dict) and "id" in body:
                flow = RecoveryFlow.model_validate(body)
        except (ValueError, ValidationError):
            if response.is_success:
                raise IdPUnavailableError("failed to decode recovery submission response") from None

        if response.is_success:
            return RecoverySubmissionResult(
                flow=flow, success=True, message=success_message, step=step
            )

        logger.info(
            "Recovery step %s rejected for flow %s: status %s",
            step,
            flow_id,
            response.status_code,
        )
        return RecoverySubmissionResult(flow=flow, success=False, message=failure_message)
