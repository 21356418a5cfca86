"""Schemas for the rate-limit endpoint."""

from typing import Literal

from pydantic import Field

from twofactor.schemas.totp import CamelModel


class RateLimitRequest(CamelModel):
    action: Literal["login", "signup", "resend"]
    identifier: str = Field(..., min_length=1, max_length=255)


class RateLimitResponse(CamelModel):
    allowed: bool
    remaining: int
    reset_at: int
