"""
TOTP (Time-based One-Time Password) code generation.

RFC 6238 on top of the RFC 4226 HOTP construction, built from the standard
library's HMAC and SHA-1. Every step is a pure function so it can be tested
without I/O: base32 decode, counter encoding, HMAC-SHA1, dynamic truncation.
"""

import hashlib
import hmac
import secrets
import struct
import time
from urllib.parse import quote

from twofactor.core.config import settings

BASE32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"

TIME_STEP_SECONDS = 30
CODE_DIGITS = 6
SECRET_BYTES = 20

# Steps accepted on either side of "now" to absorb clock drift
DEFAULT_WINDOW = 1

_SHA1_DIGEST_SIZE = 20


class InvalidSecretError(ValueError):
    """Raised when a secret decodes to an empty key."""


def decode_base32(secret: str) -> bytes:
    """
    Decode a base32 secret.

    Case-insensitive. Characters outside the alphabet (spaces, dashes,
    ``=`` padding) are skipped; trailing bits that do not fill a byte are
    dropped.

    Args:
        secret: Base32 text

    Returns:
        Decoded key bytes (possibly empty)
    """
    buffer = 0
    bit_count = 0
    output = bytearray()

    for char in secret.upper():
        value = BASE32_ALPHABET.find(char)
        if value == -1:
            continue
        buffer = (buffer << 5) | value
        bit_count += 5
        if bit_count >= 8:
            bit_count -= 8
            output.append((buffer >> bit_count) & 0xFF)
            buffer &= (1 << bit_count) - 1

    return bytes(output)


def encode_base32(data: bytes) -> str:
    """
    Encode bytes as unpadded base32.

    A final partial group is right-padded with zero bits, so 20 bytes
    (160 bits) produce exactly 32 characters.
    """
    buffer = 0
    bit_count = 0
    chars = []

    for byte in data:
        buffer = (buffer << 8) | byte
        bit_count += 8
        while bit_count >= 5:
            bit_count -= 5
            chars.append(BASE32_ALPHABET[(buffer >> bit_count) & 0x1F])
        buffer &= (1 << bit_count) - 1

    if bit_count:
        chars.append(BASE32_ALPHABET[(buffer << (5 - bit_count)) & 0x1F])

    return "".join(chars)


def counter_bytes(time_step: int) -> bytes:
    """Encode a time step as an 8-byte big-endian counter."""
    if time_step < 0:
        raise ValueError(f"time step must be non-negative, got {time_step}")
    return struct.pack(">Q", time_step)


def hmac_sha1(key: bytes, message: bytes) -> bytes:
    """HMAC-SHA1 of ``message`` under ``key`` (20-byte digest)."""
    return hmac.new(key, message, hashlib.sha1).digest()


def dynamic_truncate(digest: bytes) -> int:
    """
    RFC 4226 dynamic truncation.

    The low nibble of the last byte selects a 4-byte window; the sign bit of
    that window is cleared and the result read as a big-endian integer.
    """
    if len(digest) != _SHA1_DIGEST_SIZE:
        raise ValueError(f"expected a {_SHA1_DIGEST_SIZE}-byte digest, got {len(digest)}")
    offset = digest[19] & 0x0F
    return int.from_bytes(digest[offset:offset + 4], "big") & 0x7FFFFFFF


def time_step_at(timestamp: float) -> int:
    """Return the 30-second step containing ``timestamp`` (Unix seconds)."""
    return int(timestamp // TIME_STEP_SECONDS)


def generate_code(secret: str, time_step: int) -> str:
    """
    Generate the TOTP code for a time step.

    Args:
        secret: Base32 secret
        time_step: 30-second step counter

    Returns:
        Zero-padded 6-digit code

    Raises:
        InvalidSecretError: If the secret contains no decodable key bytes
    """
    key = decode_base32(secret)
    if not key:
        raise InvalidSecretError("TOTP secret decodes to an empty key")

    value = dynamic_truncate(hmac_sha1(key, counter_bytes(time_step)))
    return str(value % 10**CODE_DIGITS).zfill(CODE_DIGITS)


def is_totp_code_shape(code: str) -> bool:
    return len(code) == CODE_DIGITS and code.isascii() and code.isdigit()


def verify_totp_code(
    secret: str,
    code: str,
    at: float | None = None,
    window: int = DEFAULT_WINDOW,
) -> bool:
    """
    Verify a TOTP code against the steps around ``at``.

    Args:
        secret: User's TOTP secret
        code: 6-digit code to verify
        at: Unix time to verify at (defaults to now)
        window: Steps accepted before and after the current one

    Returns:
        True if code matches any step in the window, False otherwise

    Raises:
        InvalidSecretError: If the secret contains no decodable key bytes
    """
    if not code or not is_totp_code_shape(code):
        return False

    current_step = time_step_at(time.time() if at is None else at)
    matched = False
    for delta in range(-window, window + 1):
        step = current_step + delta
        if step < 0:
            continue
        # No early exit: every candidate step is computed
        if hmac.compare_digest(generate_code(secret, step), code):
            matched = True
    return matched


def generate_totp_secret() -> str:
    """
    Generate a new TOTP secret.

    Returns:
        32-character base32 encoding of 20 random bytes
    """
    return encode_base32(secrets.token_bytes(SECRET_BYTES))


def generate_qr_uri(secret: str, account: str, issuer: str | None = None) -> str:
    """
    Generate an otpauth:// URI for authenticator apps.

    Args:
        secret: TOTP secret
        account: Account label shown in the app (usually the email)
        issuer: Application name, defaults to TOTP_ISSUER

    Returns:
        otpauth:// URI string
    """
    issuer_label = quote(issuer or settings.TOTP_ISSUER, safe="")
    account_label = quote(account, safe="")
    return (
        f"otpauth://totp/{issuer_label}:{account_label}"
        f"?secret={secret}&issuer={issuer_label}"
        f"&algorithm=SHA1&digits={CODE_DIGITS}&period={TIME_STEP_SECONDS}"
    )
