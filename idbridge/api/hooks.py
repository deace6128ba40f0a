from fastapi import APIRouter

from idbridge.schemas.hooks import (
    AfterRecoveryRequest,
    AfterRecoveryResponse,
    AfterRegistrationRequest,
    AfterRegistrationResponse,
)
from idbridge.utils.auth import Bridge

router = APIRouter(prefix="/internal/hooks", tags=["Identity provider hooks"])


@router.post("/after-registration", response_model=AfterRegistrationResponse)
async def after_registration(
    data: AfterRegistrationRequest, bridge: Bridge
) -> AfterRegistrationResponse:
    user_id, created = await bridge.create_user_after_registration(
        data.identity.id, data.identity.traits.email
    )
    return AfterRegistrationResponse(user_id=user_id, created=created)


@router.post("/after-recovery", response_model=AfterRecoveryResponse)
async def after_recovery(data: AfterRecoveryRequest, bridge: Bridge) -> AfterRecoveryResponse:
    # Always acknowledged so the identity provider can finish its own flow
    user_id = await bridge.handle_after_recovery(data.identity.id)
    if user_id is None:
        return AfterRecoveryResponse(message="Recovery processed")

    return AfterRecoveryResponse(
        message="Recovery webhook processed successfully",
        user_id=user_id,
        recovered_at=data.recovery_info.recovered_at,
    )
