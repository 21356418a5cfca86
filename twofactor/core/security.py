"""
Access-token handling for the identity provider's bearer tokens.

The engine trusts the ``sub`` claim of a valid token as the user id; it never
looks the user up. Tokens are minted by the identity provider in production;
``create_access_token`` exists for tests and local development only.
"""
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from twofactor.core.config import settings


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """
    Create a signed access token.

    Args:
        data: Claims to encode (``sub`` and optionally ``email``)
        expires_delta: Custom lifetime, defaults to JWT_ACCESS_TOKEN_EXPIRE_MINUTES

    Returns:
        Encoded JWT string
    """
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "iat": now})
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any] | None:
    """
    Decode and validate an access token.

    Returns:
        The claims, or None if the signature or expiry check fails
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
