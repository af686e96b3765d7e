"""promo codes and usage ledger

Revision ID: 0002_promo_codes
Revises: 0001_entitlements
Create Date: 2026-09-09 16:05:44.207719

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql as pg

revision: str = "0002_promo_codes"
down_revision: Union[str, Sequence[str], None] = "0001_entitlements"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "promo_codes",
        sa.Column("code", sa.Text(), primary_key=True),
        sa.Column("discount_percent", sa.Integer(), nullable=False),
        sa.Column("applicable_tariffs", pg.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("max_uses", sa.Integer(), nullable=False),
        sa.Column("current_uses", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("discount_percent BETWEEN 1 AND 100", name="ck_promo_codes_discount"),
        sa.CheckConstraint("max_uses >= 1", name="ck_promo_codes_max_uses"),
        sa.CheckConstraint("current_uses >= 0 AND current_uses <= max_uses", name="ck_promo_codes_current_uses"),
    )

    op.create_table(
        "promo_usages",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.Text(), sa.ForeignKey("promo_codes.code", ondelete="CASCADE"), nullable=False),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("code", "account_id", name="uq_promo_usages_code_account"),
    )
    op.create_index("ix_promo_usages_account_id", "promo_usages", ["account_id"])


def downgrade() -> None:
    op.drop_index("ix_promo_usages_account_id", table_name="promo_usages")
    op.drop_table("promo_usages")
    op.drop_table("promo_codes")
