from typing import Annotated

from fastapi import APIRouter, Depends

from twofactor.api.deps import (
    CurrentUser,
    enforce_verify_rate_limit,
    get_current_user,
    get_two_factor_service,
)
from twofactor.schemas.totp import (
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
    TwoFactorVerifyResponse,
)
from twofactor.services.credential_state import VerifyAction
from twofactor.services.two_factor import TwoFactorService

router = APIRouter(prefix="/auth", tags=["auth"])


# ============================================================================
# Two-Factor Authentication (2FA)
# ============================================================================


@router.post("/2fa/setup", response_model=TwoFactorSetupResponse)
async def setup_2fa(
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    service: Annotated[TwoFactorService, Depends(get_two_factor_service)],
):
    """Provision a new secret and backup codes. 2FA stays off until verified with action=enable."""
    provisioned = await service.setup(current_user.id, current_user.email)
    return TwoFactorSetupResponse(
        secret=provisioned.secret,
        otp_auth_uri=provisioned.otp_auth_uri,
        backup_codes=provisioned.backup_codes,
        qr_code_url=provisioned.qr_code_url,
    )


@router.post(
    "/2fa/verify",
    response_model=TwoFactorVerifyResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(enforce_verify_rate_limit)],
)
async def verify_2fa(
    request: TwoFactorVerifyRequest,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    service: Annotated[TwoFactorService, Depends(get_two_factor_service)],
):
    """Verify a TOTP or backup code; enable or disable 2FA when asked."""
    result = await service.verify(
        current_user.id,
        request.code,
        VerifyAction.from_wire(request.action),
    )
    return TwoFactorVerifyResponse(
        verified=result.verified,
        used_backup_code=result.used_backup_code,
        remaining_backup_codes=result.remaining_backup_codes,
    )


@router.get("/2fa/status", response_model=TwoFactorStatusResponse)
async def get_2fa_status(
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    service: Annotated[TwoFactorService, Depends(get_two_factor_service)],
):
    """Report whether 2FA is enabled and how many backup codes are left."""
    status = await service.status(current_user.id)
    return TwoFactorStatusResponse(
        enabled=status.enabled,
        has_backup_codes=status.has_backup_codes,
        backup_codes_count=status.backup_codes_count,
    )
