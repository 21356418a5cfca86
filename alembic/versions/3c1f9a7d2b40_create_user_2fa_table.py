"""create user_2fa table

Revision ID: 3c1f9a7d2b40
Revises:
Create Date: 2026-10-18 09:12:44.301512

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '3c1f9a7d2b40'
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        'user_2fa',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('totp_secret', sa.String(length=64), nullable=True),
        sa.Column('totp_enabled', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('backup_codes', postgresql.ARRAY(sa.String(length=64)), server_default='{}', nullable=False),
        sa.Column('version', sa.Integer(), server_default=sa.text('1'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_user_2fa'),
        # An enabled credential always has a secret
        sa.CheckConstraint('NOT totp_enabled OR totp_secret IS NOT NULL', name='ck_user_2fa_enabled_has_secret'),
    )
    op.create_index(op.f('ix_user_2fa_user_id'), 'user_2fa', ['user_id'], unique=True)


def downgrade() -> None:
    op.drop_index(op.f('ix_user_2fa_user_id'), table_name='user_2fa')
    op.drop_table('user_2fa')
