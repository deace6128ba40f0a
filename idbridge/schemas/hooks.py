from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class RegistrationTraits(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    display_name: str | None = None
    user_type: str | None = None


class RegistrationIdentity(BaseModel):
    id: str = Field(..., min_length=1, max_length=255)
    traits: RegistrationTraits
    schema_id: str | None = None
    state: str | None = None


class AfterRegistrationRequest(BaseModel):
    identity: RegistrationIdentity
    flow: dict[str, Any] | None = None
    request_context: dict[str, Any] | None = None


class AfterRegistrationResponse(BaseModel):
    user_id: UUID
    created: bool


class RecoveryIdentity(BaseModel):
    id: str = Field(..., min_length=1)
    traits: dict[str, Any] | None = None
    schema_id: str | None = None
    state: str | None = None


class RecoveryInfo(BaseModel):
    flow_id: str | None = None
    recovery_method: str | None = None
    recovered_at: datetime | None = None


class AfterRecoveryRequest(BaseModel):
    identity: RecoveryIdentity
    recovery_info: RecoveryInfo = Field(default_factory=RecoveryInfo)


class AfterRecoveryResponse(BaseModel):
    message: str
    user_id: UUID | None = None
    recovered_at: datetime | None = None
