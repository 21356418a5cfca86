"""
Per-user TOTP credential.

One row per user. The TOTP secret is stored in clear text so codes can be
recomputed; backup codes are stored only as SHA-256 hex digests.
"""

from sqlalchemy import JSON, Boolean, CheckConstraint, Integer, String
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import Mapped, mapped_column

from twofactor.db.base import Base, TimestampMixin, UUIDMixin

# ARRAY on PostgreSQL, JSON list everywhere else
BackupCodeList = JSON().with_variant(ARRAY(String(64)), "postgresql")


class TwoFactorCredential(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "user_2fa"

    __table_args__ = (
        CheckConstraint("NOT totp_enabled OR totp_secret IS NOT NULL", name="ck_user_2fa_enabled_has_secret"),
    )

    # Owned by the identity provider; foreign reference only
    user_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)

    totp_secret: Mapped[str | None] = mapped_column(String(64), nullable=True)
    totp_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    backup_codes: Mapped[list[str]] = mapped_column(BackupCodeList, default=list, nullable=False)

    # Bumped on every write; guards compare-and-set updates
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<TwoFactorCredential(user_id={self.user_id}, enabled={self.totp_enabled}, "
            f"backup_codes={len(self.backup_codes or [])}, version={self.version})>"
        )
