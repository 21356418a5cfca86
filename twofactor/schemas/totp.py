"""Schemas for 2FA endpoints."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Serialized with camelCase keys; accepts either case on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TwoFactorSetupResponse(CamelModel):
    """Response from 2FA setup. Plaintext backup codes are only ever returned here."""

    secret: str
    otp_auth_uri: str
    backup_codes: list[str]
    qr_code_url: str


class TwoFactorVerifyRequest(CamelModel):
    """Request to verify a TOTP or backup code, optionally changing 2FA state."""

    code: str = Field(..., min_length=1, max_length=64)
    # "verify" and absent are both a plain login-time challenge
    action: Literal["enable", "disable", "verify"] | None = None


class TwoFactorVerifyResponse(CamelModel):
    """Response from a successful verification."""

    verified: bool = True
    used_backup_code: bool
    remaining_backup_codes: int | None = None


class TwoFactorStatusResponse(CamelModel):
    enabled: bool
    has_backup_codes: bool
    backup_codes_count: int
