"""durable device limit overrides

Revision ID: 0003_limit_overrides
Revises: 0002_promo_codes
Create Date: 2026-09-21 09:31:02.884150

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "0003_limit_overrides"
down_revision: Union[str, Sequence[str], None] = "0002_promo_codes"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "limit_overrides",
        sa.Column(
            "account_id",
            sa.BigInteger(),
            sa.ForeignKey("entitlements.account_id", ondelete="CASCADE"),
            primary_key=True,
            autoincrement=False,
        ),
        sa.Column("original_limit", sa.Integer(), nullable=False),
        sa.Column("restore_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_limit_overrides_restore_at", "limit_overrides", ["restore_at"])


def downgrade() -> None:
    op.drop_index("ix_limit_overrides_restore_at", table_name="limit_overrides")
    op.drop_table("limit_overrides")
