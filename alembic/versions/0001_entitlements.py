"""entitlements

Revision ID: 0001_entitlements
Revises:
Create Date: 2026-09-02 11:40:18.512304

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_entitlements"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "entitlements",
        sa.Column("account_id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("external_key", sa.Text(), nullable=False),
        sa.Column("subscription_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.SmallInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("plan", sa.Text(), nullable=False),
        sa.Column("device_limit", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("referral_id", sa.BigInteger(), sa.ForeignKey("entitlements.account_id"), nullable=True),
        sa.Column("is_used_trial", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_used_ref_bonus", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("payed_refs", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("payment_method_id", sa.Text(), nullable=True),
        sa.Column("auto_renew_plan", sa.Text(), nullable=True),
        sa.Column("auto_renew_duration", sa.Integer(), nullable=True),
        sa.Column("auto_renew_last_attempt", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_renew_fail_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_pro", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("external_key", name="uq_entitlements_external_key"),
        sa.CheckConstraint("status IN (0, 1, 2)", name="ck_entitlements_status"),
        sa.CheckConstraint("auto_renew_fail_count >= 0", name="ck_entitlements_fail_count"),
    )
    op.create_index("ix_entitlements_status_end", "entitlements", ["status", "subscription_end"])
    op.create_index("ix_entitlements_referral_id", "entitlements", ["referral_id"])
    op.create_index(
        "ix_entitlements_auto_renew_due",
        "entitlements",
        ["subscription_end"],
        postgresql_where=sa.text("auto_renew"),
    )


def downgrade() -> None:
    op.drop_index("ix_entitlements_auto_renew_due", table_name="entitlements")
    op.drop_index("ix_entitlements_referral_id", table_name="entitlements")
    op.drop_index("ix_entitlements_status_end", table_name="entitlements")
    op.drop_table("entitlements")
