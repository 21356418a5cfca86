"""
Single-use backup (recovery) codes.

Plaintext codes only exist in the Setup response; storage holds SHA-256 hex
digests in issue order.
"""

import hashlib
import hmac
import secrets
import string
from dataclasses import dataclass, field

BACKUP_CODE_COUNT = 10
BACKUP_CODE_BYTES = 4
BACKUP_CODE_LENGTH = BACKUP_CODE_BYTES * 2

_HEX_DIGITS = frozenset(string.hexdigits)


@dataclass(frozen=True)
class BackupCodeConsumption:
    """Outcome of consuming a candidate against the stored digests."""

    success: bool
    remaining: list[str] = field(default_factory=list)


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list[str]:
    """
    Generate backup codes for 2FA recovery.

    Args:
        count: Number of codes to generate

    Returns:
        List of pairwise-distinct 8-character uppercase hex codes
    """
    codes: list[str] = []
    while len(codes) < count:
        code = secrets.token_hex(BACKUP_CODE_BYTES).upper()
        if code not in codes:
            codes.append(code)
    return codes


def normalize_backup_code(code: str) -> str:
    return code.strip().upper()


def is_backup_code_shape(code: str) -> bool:
    """True for exactly eight hex characters (either case)."""
    return len(code) == BACKUP_CODE_LENGTH and all(c in _HEX_DIGITS for c in code)


def hash_backup_code(code: str) -> str:
    """
    Hash a backup code for storage.

    Args:
        code: Plain text backup code (normalized to uppercase first)

    Returns:
        SHA-256 hex digest of the UTF-8 encoded code
    """
    return hashlib.sha256(normalize_backup_code(code).encode("utf-8")).hexdigest()


def verify_backup_code(code: str, hashed: str) -> bool:
    """Constant-time check of a plaintext code against one stored digest."""
    return hmac.compare_digest(hash_backup_code(code), hashed)


def consume_backup_code(stored_hashes: list[str], candidate: str) -> BackupCodeConsumption:
    """
    Consume a backup code.

    Scans the stored digests for the candidate's digest. On a match the
    returned list drops exactly that entry and keeps the others in order;
    otherwise the list is returned unchanged.
    """
    for index, hashed in enumerate(stored_hashes):
        if verify_backup_code(candidate, hashed):
            remaining = stored_hashes[:index] + stored_hashes[index + 1:]
            return BackupCodeConsumption(success=True, remaining=remaining)
    return BackupCodeConsumption(success=False, remaining=list(stored_hashes))
