from twofactor.schemas.rate_limit import RateLimitRequest, RateLimitResponse
from twofactor.schemas.totp import (
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
    TwoFactorVerifyResponse,
)

__all__ = [
    "RateLimitRequest",
    "RateLimitResponse",
    "TwoFactorSetupResponse",
    "TwoFactorStatusResponse",
    "TwoFactorVerifyRequest",
    "TwoFactorVerifyResponse",
]
