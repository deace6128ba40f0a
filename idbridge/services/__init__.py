"""Service layer for business logic."""

from idbridge.services.claims_codec import ClaimsCodec
from idbridge.services.identity_bridge import IdentityBridge
from idbridge.services.idp_client import IdPClient
from idbridge.services.user_directory import UserDirectory

__all__ = [
    "ClaimsCodec",
    "IdentityBridge",
    "IdPClient",
    "UserDirectory",
]
