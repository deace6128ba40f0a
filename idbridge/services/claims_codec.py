import secrets
import time
from collections.abc import Callable
from datetime import timedelta
from uuid import UUID

from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError
from pydantic import ValidationError

from idbridge.schemas.auth import TokenClaims


ALGORITHM = "HS256"
DEFAULT_TOKEN_LIFETIME = timedelta(hours=24)


class InvalidTokenError(Exception):
    """Token is malformed or carries claims this service did not issue."""


class InvalidSignatureError(InvalidTokenError):
    pass


class TokenExpiredError(InvalidTokenError):
    pass


class TokenNotYetValidError(InvalidTokenError):
    pass


class ClaimsCodec:
    """Mints and verifies the service's own HS256 bearer tokens.

    All timestamps are whole seconds taken from ``clock``.
    """

    def __init__(
        self,
        secret_key: str,
        issuer: str,
        audience: str,
        lifetime: timedelta = DEFAULT_TOKEN_LIFETIME,
        clock: Callable[[], float] = time.time,
    ):
        if not secret_key:
            raise ValueError("secret_key must not be empty")
        self._secret_key = secret_key
        self.issuer = issuer
        self.audience = audience
        self.lifetime = lifetime
        self._clock = clock

    @property
    def lifetime_seconds(self) -> int:
        return int(self.lifetime.total_seconds())

    def _now(self) -> int:
        return int(self._clock())

    def mint(
        self,
        user_id: UUID,
        idp_identity_id: str,
        email: str,
        is_active: bool,
        display_name: str = "",
        user_type: str = "",
    ) -> str:
        now = self._now()
        to_encode = {
            "user_id": str(user_id),
            "idp_identity_id": idp_identity_id,
            "email": email,
            "display_name": display_name,
            "user_type": user_type,
            "is_active": is_active,
            "iss": self.issuer,
            "aud": self.audience,
            "sub": idp_identity_id,
            "iat": now,
            "nbf": now,
            "exp": now + self.lifetime_seconds,
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(to_encode, self._secret_key, algorithm=ALGORITHM)

    def verify(self, token: str) -> TokenClaims:
        claims = self._decode(token)

        now = self._now()
        if now > claims.exp:
            raise TokenExpiredError("token has expired")
        if now < claims.nbf:
            raise TokenNotYetValidError("token is not valid yet")
        return claims

    def verify_ignoring_expiry(self, token: str) -> TokenClaims:
        """Signature and structure checks only.

        Reads the identity of a previously issued token during refresh; the
        result must never authorize anything on its own.
        """
        return self._decode(token)

    def _decode(self, token: str) -> TokenClaims:
        if not token:
            raise InvalidTokenError("token is empty")

        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            raise InvalidTokenError(f"malformed token: {e}") from None

        if header.get("alg") != ALGORITHM:
            raise InvalidSignatureError("unexpected signing method")

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_exp": False, "verify_nbf": False},
            )
        except JWTClaimsError as e:
            raise InvalidTokenError(f"invalid claims: {e}") from None
        except JWTError as e:
            raise InvalidSignatureError(f"signature verification failed: {e}") from None

        try:
            return TokenClaims(**payload)
        except ValidationError as e:
            raise InvalidTokenError(f"invalid token structure: {e}") from None
