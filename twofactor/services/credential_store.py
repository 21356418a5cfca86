"""
Persistence for TwoFactorCredential rows.

All writes are single statements: an upsert for provisioning and a
version-guarded UPDATE for everything else. A guarded update that matches no
row means another request wrote first; callers reload and re-evaluate.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from twofactor.core.exceptions import StorageFailureError
from twofactor.models.two_factor_credential import TwoFactorCredential

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class CredentialStore:
    """Row-keyed store for one credential per user."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: str) -> TwoFactorCredential | None:
        """Load the credential row, bypassing any stale identity-map copy."""
        try:
            result = await self.db.execute(
                select(TwoFactorCredential)
                .where(TwoFactorCredential.user_id == user_id)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.exception(f"Failed to load 2FA credential for user {user_id}")
            await self.db.rollback()
            raise StorageFailureError() from e

    async def upsert_provisioned(
        self,
        user_id: str,
        secret: str,
        hashed_codes: list[str],
    ) -> TwoFactorCredential:
        """
        Create or overwrite the credential with a fresh, not-yet-enabled secret.

        Always replaces any prior secret and backup codes for the user.
        """
        insert = self._insert_construct()
        now = datetime.now(UTC)
        stmt = insert(TwoFactorCredential).values(
            user_id=user_id,
            totp_secret=secret,
            totp_enabled=False,
            backup_codes=hashed_codes,
            version=1,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[TwoFactorCredential.user_id],
            set_={
                "totp_secret": secret,
                "totp_enabled": False,
                "backup_codes": hashed_codes,
                "version": TwoFactorCredential.version + 1,
                "updated_at": now,
            },
        )

        try:
            await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            logger.exception(f"Failed to provision 2FA credential for user {user_id}")
            await self.db.rollback()
            raise StorageFailureError("Failed to setup 2FA") from e

        credential = await self.get(user_id)
        if credential is None:
            raise StorageFailureError("Failed to setup 2FA")
        return credential

    async def compare_and_set(
        self,
        user_id: str,
        expected_version: int,
        changes: dict[str, Any],
    ) -> bool:
        """
        Apply ``changes`` only if the row is still at ``expected_version``.

        Returns:
            True if the row was updated, False if a concurrent write won
        """
        stmt = (
            update(TwoFactorCredential)
            .where(
                TwoFactorCredential.user_id == user_id,
                TwoFactorCredential.version == expected_version,
            )
            .values(
                **changes,
                version=TwoFactorCredential.version + 1,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            logger.exception(f"Failed to update 2FA credential for user {user_id}")
            await self.db.rollback()
            raise StorageFailureError() from e

        return result.rowcount == 1

    def _insert_construct(self):
        dialect = self.db.get_bind().dialect.name
        try:
            return _UPSERT_DIALECTS[dialect]
        except KeyError:
            raise StorageFailureError(f"Upsert not supported on {dialect}") from None
