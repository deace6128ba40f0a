from uuid import UUID

from pydantic import BaseModel, EmailStr, Field


class TokenClaims(BaseModel):
    user_id: UUID
    idp_identity_id: str
    email: str
    display_name: str = ""
    user_type: str = ""
    is_active: bool  # Snapshot at mint time, not authoritative
    iss: str
    aud: str
    sub: str  # Same as idp_identity_id
    iat: int
    nbf: int
    exp: int
    jti: str = ""


class AuthContext(BaseModel):
    """Identity attached to a request that passed the bearer-token gate."""

    user_id: UUID
    idp_identity_id: str
    email: str
    user_type: str
    is_authenticated: bool = True


class UserInfo(BaseModel):
    id: UUID
    idp_identity_id: str
    email: str
    display_name: str = ""
    user_type: str = ""
    is_active: bool


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int = Field(..., description="Token lifetime in seconds")
    user: UserInfo


class LoginRequest(BaseModel):
    session_token: str = Field(..., min_length=1, description="Identity provider session token")


class RefreshRequest(BaseModel):
    session_token: str = Field(..., min_length=1, description="Identity provider session token")
    access_token: str = Field(
        ..., min_length=1, description="Previously issued token, may be expired"
    )


class OAuthInitRequest(BaseModel):
    provider: str
    redirect_uri: str | None = None
    state: str | None = None


class OAuthInitResponse(BaseModel):
    auth_url: str
    state: str


class OAuthCompleteRequest(BaseModel):
    code: str = Field(..., min_length=1)
    state: str | None = None


class RecoveryRequest(BaseModel):
    email: EmailStr


class RecoveryInitResponse(BaseModel):
    message: str
    flow_id: str
    requires_code: bool = True


class VerifyCodeRequest(BaseModel):
    flow_id: str
    code: str


class SetPasswordRequest(BaseModel):
    flow_id: str
    password: str
