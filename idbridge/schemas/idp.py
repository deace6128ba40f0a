from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

DEFAULT_USER_TYPE = "listener"


class Identity(BaseModel):
    id: str
    schema_id: str = ""
    state: str = ""
    traits: dict[str, Any] | None = None

    def get_traits(self) -> dict[str, Any]:
        return self.traits or {}

    def _get_str(self, key: str, default: str) -> str:
        value = self.get_traits().get(key)
        return value if isinstance(value, str) else default

    def get_email(self) -> str:
        return self._get_str("email", "")

    def get_display_name(self) -> str:
        return self._get_str("display_name", "")

    def get_user_type(self) -> str:
        return self._get_str("user_type", DEFAULT_USER_TYPE)


class Session(BaseModel):
    id: str
    active: bool = False
    expires_at: datetime
    issued_at: datetime | None = None
    identity: Identity


class IdPErrorBody(BaseModel):
    """Structured error body returned by the identity provider."""

    code: int
    status: str = ""
    message: str = ""
    reason: str = ""


class RecoveryFlow(BaseModel):
    id: str
    type: str = ""
    state: str = ""
    expires_at: str = ""
    issued_at: str = ""
    request_url: str = ""
    ui: Any = None


class RecoverySubmissionResult(BaseModel):
    flow: RecoveryFlow | None = None
    success: bool
    message: str
    step: str = Field(default="", description="code_sent, code_verified or password_set")
