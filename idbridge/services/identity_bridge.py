"""Token lifecycle on top of identity provider sessions.

Login, per-request validation, refresh, OAuth completion and the recovery
proxy all run through :class:`IdentityBridge`. Every path that authorizes
something re-reads the local user record; the values embedded in a token
are never trusted for the active flag.
"""

import logging
import secrets
from collections.abc import Awaitable, Callable
from typing import Optional
from uuid import UUID

from jose.exceptions import JOSEError

from idbridge.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    UnauthorizedError,
    UpstreamUnavailableError,
)
from idbridge.models.user import User
from idbridge.schemas.auth import LoginResponse, TokenClaims, UserInfo
from idbridge.schemas.idp import RecoveryFlow, RecoverySubmissionResult, Session
from idbridge.services.claims_codec import ClaimsCodec, InvalidTokenError
from idbridge.services.idp_client import IdPAuthError, IdPClient, IdPUnavailableError
from idbridge.services.user_directory import UserDirectory, UserEmailConflictError

logger = logging.getLogger(__name__)

RECOVERY_CODE_LENGTH = 6
MIN_PASSWORD_LENGTH = 8
MAX_IDENTITY_ID_LENGTH = 255

RecoveryNotifier = Callable[[str], Awaitable[None]]


class IdentityBridge:
    def __init__(
        self,
        codec: ClaimsCodec,
        idp: IdPClient,
        directory: UserDirectory,
        oauth_providers: Optional[list[str]] = None,
        default_redirect_uri: str = "",
        recovery_notifier: Optional[RecoveryNotifier] = None,
    ):
        self.codec = codec
        self.idp = idp
        self.directory = directory
        self.oauth_providers = list(oauth_providers or [])
        self.default_redirect_uri = default_redirect_uri
        self.recovery_notifier = recovery_notifier

    # Sessions and tokens

    async def _verify_session(self, session_token: str, prefix: str = "") -> Session:
        try:
            return await self.idp.verify_session(session_token)
        except IdPAuthError as e:
            raise UnauthorizedError(f"{prefix}{e.message}") from e
        except IdPUnavailableError as e:
            raise UpstreamUnavailableError(
                "failed to verify session with identity provider"
            ) from e

    @staticmethod
    def _parse_identity_id(value: str | None) -> str:
        """Identity ids are opaque strings; blank or over-long values are malformed."""
        identity_id = (value or "").strip()
        if not identity_id or len(identity_id) > MAX_IDENTITY_ID_LENGTH:
            raise ValueError(f"malformed identity id: {value!r}")
        return identity_id

    async def _get_active_user(self, idp_identity_id: str) -> User:
        user = await self.directory.get_by_idp_identity_id(idp_identity_id)
        if user is None:
            raise NotFoundError("user not found")
        if not user.is_active:
            raise ForbiddenError("user account is deactivated")
        return user

    async def _touch_last_login(self, user_id: UUID) -> None:
        """Best effort: a failed write is logged and never fails the caller."""
        try:
            await self.directory.update_last_login(user_id)
        except Exception as e:
            logger.warning("Failed to update last login time for user %s: %s", user_id, e)

    def _issue(self, user: User, session: Session) -> LoginResponse:
        # Email and active flag come from the directory record, never from traits
        display_name = session.identity.get_display_name()
        user_type = session.identity.get_user_type()
        try:
            access_token = self.codec.mint(
                user_id=user.id,
                idp_identity_id=user.idp_identity_id,
                email=user.email,
                is_active=user.is_active,
                display_name=display_name,
                user_type=user_type,
            )
        except JOSEError as e:
            logger.exception("Failed to sign access token for user %s", user.id)
            raise InternalError("failed to generate access token") from e

        return LoginResponse(
            access_token=access_token,
            token_type="Bearer",
            expires_in=self.codec.lifetime_seconds,
            user=UserInfo(
                id=user.id,
                idp_identity_id=user.idp_identity_id,
                email=user.email,
                display_name=display_name,
                user_type=user_type,
                is_active=user.is_active,
            ),
        )

    async def _login(self, session: Session) -> LoginResponse:
        try:
            identity_id = self._parse_identity_id(session.identity.id)
        except ValueError as e:
            raise BadRequestError("invalid identity ID from identity provider") from e
        user = await self._get_active_user(identity_id)

        # Mint from the record as loaded; the last-login write must not be able to change it
        response = self._issue(user, session)
        await self._touch_last_login(response.user.id)

        logger.info("Issued access token for user %s", response.user.id)
        return response

    async def verify_session_and_issue_token(self, session_token: str) -> LoginResponse:
        """Login: exchange a live identity provider session for an access token."""
        session = await self._verify_session(session_token)
        return await self._login(session)

    async def verify_session_cookie_and_issue_token(self, cookie: str) -> LoginResponse:
        """Login for browser clients holding the identity provider's session cookie."""
        try:
            session = await self.idp.verify_session_cookie(cookie)
        except IdPAuthError as e:
            raise UnauthorizedError(e.message) from e
        except IdPUnavailableError as e:
            raise UpstreamUnavailableError(
                "failed to verify session with identity provider"
            ) from e
        return await self._login(session)

    async def validate_token(self, token: str) -> TokenClaims:
        try:
            claims = self.codec.verify(token)
        except InvalidTokenError as e:
            raise UnauthorizedError("invalid or expired token") from e

        try:
            identity_id = self._parse_identity_id(claims.idp_identity_id)
        except ValueError as e:
            raise UnauthorizedError("invalid identity ID in token") from e

        user = await self.directory.get_by_idp_identity_id(identity_id)
        if user is None:
            raise UnauthorizedError("user not found")
        if not user.is_active:
            raise ForbiddenError("user account is deactivated")

        return claims

    async def refresh_token(self, prior_token: str, session_token: str) -> LoginResponse:
        """
        Re-issue a token after re-confirming the identity provider session.

        Both proofs are required: the prior token (signature checked, expiry
        ignored) and a live session for the same identity. The new token is
        minted from the current directory record.
        """
        if not prior_token:
            raise UnauthorizedError("access token required for refresh")
        try:
            prior = self.codec.verify_ignoring_expiry(prior_token)
        except InvalidTokenError as e:
            raise UnauthorizedError("invalid token for refresh") from e

        if not session_token:
            raise UnauthorizedError("session token required for refresh")
        session = await self._verify_session(
            session_token, prefix="identity provider session invalid: "
        )

        if session.identity.id != prior.idp_identity_id:
            logger.warning(
                "Refresh rejected: session identity %s does not match token identity %s",
                session.identity.id,
                prior.idp_identity_id,
            )
            raise UnauthorizedError("session identity mismatch")

        user = await self._get_active_user(session.identity.id)
        response = self._issue(user, session)
        logger.info("Refreshed access token for user %s", user.id)
        return response

    def get_current_user(self, claims: TokenClaims) -> UserInfo:
        return UserInfo(
            id=claims.user_id,
            idp_identity_id=claims.idp_identity_id,
            email=claims.email,
            display_name=claims.display_name,
            user_type=claims.user_type,
            is_active=claims.is_active,
        )

    # OAuth

    def _check_provider(self, provider: str) -> None:
        if provider not in self.oauth_providers:
            supported = ", ".join(self.oauth_providers)
            raise BadRequestError(f"Invalid provider. Supported: {supported}")

    def initiate_oauth_flow(
        self,
        provider: str,
        redirect_uri: Optional[str] = None,
        state: Optional[str] = None,
    ) -> tuple[str, str]:
        """Returns (authorization URL, state)."""
        self._check_provider(provider)
        state = state or secrets.token_urlsafe(32)
        redirect_uri = redirect_uri or self.default_redirect_uri
        return self.idp.build_authorization_url(provider, redirect_uri, state), state

    async def handle_oauth_callback(
        self, provider: str, code: str, state: Optional[str] = None
    ) -> LoginResponse:
        self._check_provider(provider)
        if not code:
            raise BadRequestError("Missing authorization code")

        try:
            session_token = await self.idp.exchange_code_for_session(provider, code, state or "")
        except IdPAuthError as e:
            raise UnauthorizedError(e.message) from e
        except IdPUnavailableError as e:
            raise UpstreamUnavailableError("failed to complete OAuth code exchange") from e

        # OAuth only acquires a session; authorization is the regular login
        return await self.verify_session_and_issue_token(session_token)

    # Recovery

    async def _submit_recovery(self, flow_id: str, payload: dict) -> RecoverySubmissionResult:
        try:
            return await self.idp.submit_recovery_step(flow_id, payload)
        except IdPUnavailableError as e:
            raise UpstreamUnavailableError("failed to submit recovery flow") from e

    async def initiate_password_recovery(self, email: str) -> RecoveryFlow:
        """Start a recovery flow and immediately request code delivery for ``email``."""
        if not email:
            raise BadRequestError("Email is required")

        try:
            flow = await self.idp.initiate_recovery()
        except IdPUnavailableError as e:
            raise UpstreamUnavailableError("failed to initiate recovery flow") from e

        result = await self._submit_recovery(flow.id, {"email": email})
        if not result.success:
            # The response never reveals whether the account exists
            logger.info("Recovery code delivery not confirmed for flow %s", flow.id)
        return flow

    async def verify_recovery_code(self, flow_id: str, code: str) -> RecoverySubmissionResult:
        if not flow_id:
            raise BadRequestError("flow_id is required")
        if len(code) != RECOVERY_CODE_LENGTH:
            raise BadRequestError(f"Code must be exactly {RECOVERY_CODE_LENGTH} digits")
        return await self._submit_recovery(flow_id, {"code": code})

    async def set_new_password(self, flow_id: str, password: str) -> RecoverySubmissionResult:
        if not flow_id:
            raise BadRequestError("flow_id is required")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise BadRequestError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
            )
        return await self._submit_recovery(flow_id, {"password": password})

    # Identity provider notifications

    async def create_user_after_registration(
        self, idp_identity_id: str, email: str
    ) -> tuple[UUID, bool]:
        """Returns (local user id, created)."""
        try:
            user, created = await self.directory.create_after_registration(idp_identity_id, email)
        except UserEmailConflictError as e:
            raise ConflictError(str(e)) from e

        if created:
            logger.info("Created local user %s for identity %s", user.id, idp_identity_id)
        else:
            logger.info("Registration for identity %s already processed", idp_identity_id)
        return user.id, created

    async def _enqueue_recovery_notice(self, email: str) -> None:
        """Best effort: queueing failures are logged only."""
        if self.recovery_notifier is None:
            return
        try:
            await self.recovery_notifier(email)
        except Exception as e:
            logger.error("Failed to queue recovery notice for %s: %s", email, e)

    async def handle_after_recovery(self, idp_identity_id: str) -> Optional[UUID]:
        """
        Acknowledge a completed recovery. Returns the local user id, or None
        when the user cannot be resolved; no outcome here is an error, so the
        identity provider can always finish its own flow.
        """
        try:
            user = await self.directory.get_by_idp_identity_id(idp_identity_id)
        except Exception as e:
            logger.error(
                "User lookup failed during recovery notification for %s: %s", idp_identity_id, e
            )
            return None
        if user is None:
            logger.warning("User not found during recovery notification: %s", idp_identity_id)
            return None

        user_id, email = user.id, user.email
        logger.info("Password recovery completed for user %s", user_id)
        await self._touch_last_login(user_id)
        await self._enqueue_recovery_notice(email)
        return user_id

    # Activation

    async def deactivate_user(self, user_id: UUID) -> None:
        if not await self.directory.deactivate(user_id):
            raise NotFoundError("user not found")
        logger.info("Deactivated user %s", user_id)

    async def activate_user(self, user_id: UUID) -> None:
        if not await self.directory.activate(user_id):
            raise NotFoundError("user not found")
        logger.info("Activated user %s", user_id)
