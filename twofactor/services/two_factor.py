"""
Two-factor orchestration: provisioning, verification, status.

Verification combines the TOTP window with the backup-code fallback and
hands successful results to the credential state machine. Each call makes at
most one state-affecting write.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from twofactor.core.config import settings
from twofactor.core.exceptions import (
    AlreadyEnabledError,
    InvalidCodeError,
    MalformedInputError,
    NotConfiguredError,
    StorageFailureError,
)
from twofactor.models.two_factor_credential import TwoFactorCredential
from twofactor.services.backup_codes import (
    consume_backup_code,
    generate_backup_codes,
    hash_backup_code,
    is_backup_code_shape,
    normalize_backup_code,
)
from twofactor.services.credential_state import (
    CredentialState,
    VerifyAction,
    plan_transition,
    state_of,
)
from twofactor.services.credential_store import CredentialStore
from twofactor.services.qr_code import build_qr_code_url
from twofactor.services.totp import (
    InvalidSecretError,
    generate_qr_uri,
    generate_totp_secret,
    is_totp_code_shape,
    verify_totp_code,
)

logger = logging.getLogger(__name__)

# Reloads after losing a compare-and-set race before giving up
MAX_WRITE_ATTEMPTS = 3


@dataclass(frozen=True)
class ProvisionedCredential:
    secret: str
    otp_auth_uri: str
    backup_codes: list[str]
    qr_code_url: str


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    used_backup_code: bool
    remaining_backup_codes: int | None = None


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    backup_codes_count: int

    @property
    def has_backup_codes(self) -> bool:
        return self.backup_codes_count > 0


def normalize_candidate(code: str) -> str:
    """
    Strip whitespace and check the candidate's shape.

    Raises:
        MalformedInputError: Neither a 6-digit TOTP code nor an 8-character backup code
    """
    candidate = code.strip() if isinstance(code, str) else ""
    if is_totp_code_shape(candidate):
        return candidate
    if is_backup_code_shape(candidate):
        return normalize_backup_code(candidate)
    raise MalformedInputError()


class TwoFactorService:
    def __init__(
        self,
        store: CredentialStore,
        clock: Callable[[], float] = time.time,
        allow_reprovision: bool | None = None,
    ):
        self.store = store
        self.clock = clock
        self.allow_reprovision = (
            settings.ALLOW_REPROVISION_WHEN_ENABLED if allow_reprovision is None else allow_reprovision
        )

    async def setup(self, user_id: str, account_name: str | None = None) -> ProvisionedCredential:
        """
        Provision a fresh secret and backup codes for ``user_id``.

        Safe to retry: each call replaces the previous secret and codes and
        leaves the credential pending verification.
        """
        existing = await self.store.get(user_id)
        if state_of(existing) is CredentialState.ENABLED:
            if not self.allow_reprovision:
                raise AlreadyEnabledError()
            logger.warning(f"Re-provisioning 2FA for user {user_id} while enabled; credential returns to pending")

        secret = generate_totp_secret()
        backup_codes = generate_backup_codes()
        hashed_codes = [hash_backup_code(code) for code in backup_codes]

        await self.store.upsert_provisioned(user_id, secret, hashed_codes)

        otp_auth_uri = generate_qr_uri(secret, account_name or "user")
        logger.info(f"2FA setup initiated for user {user_id}")

        return ProvisionedCredential(
            secret=secret,
            otp_auth_uri=otp_auth_uri,
            backup_codes=backup_codes,
            qr_code_url=build_qr_code_url(otp_auth_uri),
        )

    async def verify(
        self,
        user_id: str,
        code: str,
        action: VerifyAction = VerifyAction.CHALLENGE,
    ) -> VerificationResult:
        """Verify ``code`` for ``user_id`` and apply ``action`` on success."""
        candidate = normalize_candidate(code)
        credential = await self.store.get(user_id)
        return await self._verify(user_id, credential, candidate, action)

    async def verify_credential(
        self,
        credential: TwoFactorCredential | None,
        code: str,
        action: VerifyAction = VerifyAction.CHALLENGE,
    ) -> VerificationResult:
        """
        Verify against an already-loaded credential.

        The credential may be stale; the guarded write detects that and the
        row is reloaded before deciding.
        """
        candidate = normalize_candidate(code)
        if credential is None:
            raise NotConfiguredError()
        return await self._verify(credential.user_id, credential, candidate, action)

    async def status(self, user_id: str) -> TwoFactorStatus:
        credential = await self.store.get(user_id)
        if credential is None:
            return TwoFactorStatus(enabled=False, backup_codes_count=0)
        return TwoFactorStatus(
            enabled=credential.totp_enabled,
            backup_codes_count=len(credential.backup_codes or []),
        )

    async def _verify(
        self,
        user_id: str,
        credential: TwoFactorCredential | None,
        candidate: str,
        action: VerifyAction,
    ) -> VerificationResult:
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            if credential is None:
                raise NotConfiguredError()

            # Raises before any code is checked or consumed
            transition = plan_transition(state_of(credential), action)
            version = credential.version
            stored_hashes = list(credential.backup_codes or [])

            used_backup_code = False
            remaining = stored_hashes
            if not self._matches_totp(credential, candidate):
                if not is_backup_code_shape(candidate):
                    raise InvalidCodeError()
                consumption = consume_backup_code(stored_hashes, candidate)
                if not consumption.success:
                    raise InvalidCodeError()
                used_backup_code = True
                remaining = consumption.remaining

            changes = dict(transition.changes)
            if used_backup_code and "backup_codes" not in changes:
                changes["backup_codes"] = remaining

            if not changes:
                # Plain TOTP challenge or enable on an enabled credential
                return VerificationResult(verified=True, used_backup_code=False)

            if await self.store.compare_and_set(user_id, version, changes):
                if transition.target is not state_of(credential):
                    logger.info(f"2FA for user {user_id} is now {transition.target.value}")
                if used_backup_code:
                    logger.info(f"Backup code consumed for user {user_id}")
                    return VerificationResult(
                        verified=True,
                        used_backup_code=True,
                        remaining_backup_codes=len(changes["backup_codes"]),
                    )
                return VerificationResult(verified=True, used_backup_code=False)

            logger.info(f"Concurrent 2FA update for user {user_id}, reloading (attempt {attempt})")
            credential = await self.store.get(user_id)

        raise StorageFailureError("Could not apply 2FA update due to concurrent modifications")

    def _matches_totp(self, credential: TwoFactorCredential, candidate: str) -> bool:
        if not is_totp_code_shape(candidate):
            return False
        try:
            return verify_totp_code(credential.totp_secret, candidate, at=self.clock())
        except InvalidSecretError:
            logger.error(f"Stored TOTP secret for user {credential.user_id} is not valid base32")
            return False
