from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from twofactor.core.exceptions import RateLimitExceededError, UnauthorizedError
from twofactor.core.security import decode_access_token
from twofactor.db.session import get_db
from twofactor.services.credential_store import CredentialStore
from twofactor.services.rate_limit import check_rate_limit
from twofactor.services.two_factor import TwoFactorService

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    """Caller identity as asserted by the identity provider's token."""

    id: str
    email: str | None = None


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> CurrentUser:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise UnauthorizedError()

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise UnauthorizedError("Invalid authentication token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Invalid token payload")

    return CurrentUser(id=str(user_id), email=payload.get("email"))


async def get_two_factor_service(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> TwoFactorService:
    return TwoFactorService(CredentialStore(db))


async def enforce_verify_rate_limit(
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
) -> None:
    """Charge one verification attempt to the caller."""
    result = await check_rate_limit("totp_verify", current_user.id)
    if not result.allowed:
        raise RateLimitExceededError("verification", result.retry_after)
