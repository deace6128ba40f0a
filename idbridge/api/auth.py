import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Header, Request
from fastapi.responses import RedirectResponse

from idbridge.config import get_settings
from idbridge.errors import UnauthorizedError
from idbridge.schemas.auth import (
    LoginRequest,
    LoginResponse,
    OAuthCompleteRequest,
    OAuthInitRequest,
    OAuthInitResponse,
    RecoveryInitResponse,
    RecoveryRequest,
    RefreshRequest,
    SetPasswordRequest,
    UserInfo,
    VerifyCodeRequest,
)
from idbridge.schemas.idp import RecoverySubmissionResult
from idbridge.utils.auth import Bridge, CurrentClaims, CurrentIdentity, extract_bearer_token

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["Authentication"])
settings = get_settings()


@router.post("/login", response_model=LoginResponse)
async def login(data: LoginRequest, bridge: Bridge) -> LoginResponse:
    return await bridge.verify_session_and_issue_token(data.session_token)


@router.post("/login/cookie", response_model=LoginResponse)
async def login_with_cookie(request: Request, bridge: Bridge) -> LoginResponse:
    """Login with the identity provider's browser session cookie instead of a token."""
    cookie_name = settings.idp_session_cookie_name
    session_cookie = request.cookies.get(cookie_name)
    if not session_cookie:
        raise UnauthorizedError("session cookie not found")
    return await bridge.verify_session_cookie_and_issue_token(f"{cookie_name}={session_cookie}")


@router.post("/refresh", response_model=LoginResponse)
async def refresh_token(data: RefreshRequest, bridge: Bridge) -> LoginResponse:
    return await bridge.refresh_token(data.access_token, data.session_token)


@router.get("/me", response_model=UserInfo)
async def get_me(claims: CurrentClaims, bridge: Bridge) -> UserInfo:
    return bridge.get_current_user(claims)


@router.post("/logout")
async def logout(identity: CurrentIdentity) -> dict[str, str]:
    # Access tokens are stateless; clients discard theirs and it lapses at expiry
    logger.info("User %s logged out", identity.user_id)
    return {"message": "Logged out successfully"}


@router.post("/validate", response_model=UserInfo)
async def validate_token(
    bridge: Bridge,
    authorization: Optional[str] = Header(default=None),
) -> UserInfo:
    """Token validation for other services that delegate to this one."""
    token = extract_bearer_token(authorization)
    claims = await bridge.validate_token(token)
    return bridge.get_current_user(claims)


@router.post("/oauth/init", response_model=OAuthInitResponse)
async def oauth_init(data: OAuthInitRequest, bridge: Bridge) -> OAuthInitResponse:
    auth_url, state = bridge.initiate_oauth_flow(data.provider, data.redirect_uri, data.state)
    return OAuthInitResponse(auth_url=auth_url, state=state)


@router.get("/oauth/{provider}/callback")
async def oauth_callback(
    provider: str,
    bridge: Bridge,
    code: str = "",
    state: Optional[str] = None,
) -> RedirectResponse:
    """Complete the OAuth flow and hand the token to the native app via deep link."""
    response = await bridge.handle_oauth_callback(provider, code, state)
    query = urlencode(
        {
            "access_token": response.access_token,
            "token_type": response.token_type,
            "expires_in": response.expires_in,
        }
    )
    return RedirectResponse(url=f"{settings.oauth_app_success_uri}?{query}", status_code=302)


@router.post("/oauth/{provider}/complete", response_model=LoginResponse)
async def oauth_complete(
    provider: str,
    data: OAuthCompleteRequest,
    bridge: Bridge,
) -> LoginResponse:
    return await bridge.handle_oauth_callback(provider, data.code, data.state)


@router.post("/recovery", response_model=RecoveryInitResponse)
async def initiate_recovery(data: RecoveryRequest, bridge: Bridge) -> RecoveryInitResponse:
    flow = await bridge.initiate_password_recovery(data.email)
    return RecoveryInitResponse(
        message="Recovery code sent if account exists",
        flow_id=flow.id,
        requires_code=True,
    )


@router.post("/recovery/verify", response_model=RecoverySubmissionResult)
async def verify_recovery_code(
    data: VerifyCodeRequest, bridge: Bridge
) -> RecoverySubmissionResult:
    return await bridge.verify_recovery_code(data.flow_id, data.code)


@router.post("/recovery/password", response_model=RecoverySubmissionResult)
async def set_new_password(
    data: SetPasswordRequest, bridge: Bridge
) -> RecoverySubmissionResult:
    return await bridge.set_new_password(data.flow_id, data.password)
