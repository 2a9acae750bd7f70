"""create credits ledger schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="user"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "wallets",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("daily_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("daily_credits_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("subscription_credits_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("bonus_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("subscription_tier", sa.String(), nullable=False, server_default="free"),
        sa.Column("subscription_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("referral_credits_this_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("referral_month_key", sa.String(), nullable=True),
        sa.Column("total_referral_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_referrals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("daily_credits >= 0", name="ck_wallets_daily_credits_non_negative"),
        sa.CheckConstraint("subscription_credits >= 0", name="ck_wallets_subscription_credits_non_negative"),
        sa.CheckConstraint("bonus_credits >= 0", name="ck_wallets_bonus_credits_non_negative"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index(op.f("ix_wallets_subscription_id"), "wallets", ["subscription_id"], unique=False)

    op.create_table(
        "credit_records",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("credit_pool", sa.String(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.CheckConstraint("balance_after = balance_before + amount", name="ck_credit_records_balance_delta"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_credit_records_user_id"), "credit_records", ["user_id"], unique=False)
    op.create_index(op.f("ix_credit_records_type"), "credit_records", ["type"], unique=False)
    op.create_index(op.f("ix_credit_records_created_at"), "credit_records", ["created_at"], unique=False)

    op.create_table(
        "orders",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("package_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(), nullable=False, server_default="usd"),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False, server_default="completed"),
        sa.Column("provider_session_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_session_id"),
    )
    op.create_index(op.f("ix_orders_user_id"), "orders", ["user_id"], unique=False)
    op.create_index(op.f("ix_orders_created_at"), "orders", ["created_at"], unique=False)

    op.create_table(
        "referrals",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("referrer_id", sa.String(), nullable=False),
        sa.Column("referred_id", sa.String(), nullable=False),
        sa.Column("referrer_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("referred_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="completed"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["referrer_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["referred_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("referred_id"),
    )
    op.create_index(op.f("ix_referrals_referrer_id"), "referrals", ["referrer_id"], unique=False)
    op.create_index(op.f("ix_referrals_ip_address"), "referrals", ["ip_address"], unique=False)
    op.create_index(op.f("ix_referrals_created_at"), "referrals", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_referrals_created_at"), table_name="referrals")
    op.drop_index(op.f("ix_referrals_ip_address"), table_name="referrals")
    op.drop_index(op.f("ix_referrals_referrer_id"), table_name="referrals")
    op.drop_table("referrals")
    op.drop_index(op.f("ix_orders_created_at"), table_name="orders")
    op.drop_index(op.f("ix_orders_user_id"), table_name="orders")
    op.drop_table("orders")
    op.drop_index(op.f("ix_credit_records_created_at"), table_name="credit_records")
    op.drop_index(op.f("ix_credit_records_type"), table_name="credit_records")
    op.drop_index(op.f("ix_credit_records_user_id"), table_name="credit_records")
    op.drop_table("credit_records")
    op.drop_index(op.f("ix_wallets_subscription_id"), table_name="wallets")
    op.drop_table("wallets")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
