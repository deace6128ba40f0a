from datetime import timedelta
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from idbridge.config import get_settings
from idbridge.database import get_db
from idbridge.errors import BadRequestError, UnauthorizedError
from idbridge.schemas.auth import AuthContext, TokenClaims
from idbridge.services.claims_codec import ClaimsCodec
from idbridge.services.identity_bridge import IdentityBridge
from idbridge.services.idp_client import IdPClient
from idbridge.services.notification_service import enqueue_recovery_notice
from idbridge.services.user_directory import UserDirectory

BEARER_PREFIX = "Bearer "


@lru_cache
def get_claims_codec() -> ClaimsCodec:
    settings = get_settings()
    return ClaimsCodec(
        secret_key=settings.secret_key,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        lifetime=timedelta(hours=settings.token_lifetime_hours),
    )


@lru_cache
def get_idp_client() -> IdPClient:
    settings = get_settings()
    return IdPClient(
        public_url=settings.idp_public_url,
        timeout=settings.idp_timeout_seconds,
        oauth_exchange_path=settings.idp_oauth_exchange_path,
    )


async def get_identity_bridge(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> IdentityBridge:
    settings = get_settings()
    return IdentityBridge(
        codec=get_claims_codec(),
        idp=get_idp_client(),
        directory=UserDirectory(db),
        oauth_providers=settings.oauth_providers,
        default_redirect_uri=settings.oauth_default_redirect_uri,
        recovery_notifier=enqueue_recovery_notice,
    )


Bridge = Annotated[IdentityBridge, Depends(get_identity_bridge)]


def extract_bearer_token(authorization: str | None) -> str:
    """
    Pull the token out of an ``Authorization`` header value.

    Missing header is 401; anything not shaped ``Bearer <token>`` is 400.
    """
    if not authorization:
        raise UnauthorizedError("Not authenticated")
    if not authorization.startswith(BEARER_PREFIX):
        raise BadRequestError("Invalid authorization header format")
    return authorization[len(BEARER_PREFIX):]


async def require_auth(request: Request, bridge: Bridge) -> TokenClaims:
    """
    Bearer-token gate for protected routes.

    On success the identity is attached to ``request.state.identity``; on
    failure the mapped error is raised and the route handler never runs.
    """
    token = extract_bearer_token(request.headers.get("Authorization"))
    claims = await bridge.validate_token(token)

    request.state.claims = claims
    request.state.identity = AuthContext(
        user_id=claims.user_id,
        idp_identity_id=claims.idp_identity_id,
        email=claims.email,
        user_type=claims.user_type,
    )
    return claims


async def get_current_identity(
    request: Request,
    claims: Annotated[TokenClaims, Depends(require_auth)],
) -> AuthContext:
    return request.state.identity


# Type aliases for dependency injection
CurrentClaims = Annotated[TokenClaims, Depends(require_auth)]
CurrentIdentity = Annotated[AuthContext, Depends(get_current_identity)]
