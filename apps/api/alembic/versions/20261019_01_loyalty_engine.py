"""Create users, orders, and loyalty engine tables.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


TIER_NAMES = ("Sprout", "Seedling", "Cultivator", "Bloom", "Harvester")
CARD_TYPES = ("bronze", "silver", "gold", "platinum")
REWARD_TYPES = ("discount", "shipping", "bonus")
LEDGER_SOURCES = ("order_processed", "reward_redeemed", "admin_adjustment", "test_points")

tier_name_enum = postgresql.ENUM(*TIER_NAMES, name="loyalty_tier_name", create_type=False)
card_type_enum = postgresql.ENUM(*CARD_TYPES, name="loyalty_card_type", create_type=False)
reward_type_enum = postgresql.ENUM(*REWARD_TYPES, name="loyalty_reward_type", create_type=False)
ledger_source_enum = postgresql.ENUM(*LEDGER_SOURCES, name="loyalty_ledger_source", create_type=False)

_ENUMS = (tier_name_enum, card_type_enum, reward_type_enum, ledger_source_enum)


def upgrade() -> None:
    bind = op.get_bind()
    for enum in _ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="customer"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "orders",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("order_number", sa.String(), nullable=False),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL", name="fk_orders_user_id_users"),
            nullable=True,
        ),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("total", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("order_number", name="uq_orders_order_number"),
    )
    op.create_index("ix_orders_user_id", "orders", ["user_id"])

    op.create_table(
        "loyalty_tiers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", tier_name_enum, nullable=False),
        sa.Column("point_threshold", sa.Integer(), nullable=False),
        sa.Column("discount_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("benefits", sa.JSON(), nullable=False),
        sa.Column("display_order", sa.Integer(), nullable=False),
        sa.Column("card_type", card_type_enum, nullable=False, server_default="bronze"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("name", name="uq_loyalty_tiers_name"),
    )

    op.create_table(
        "loyalty_rewards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("cost", sa.Integer(), nullable=False),
        sa.Column("reward_type", reward_type_enum, nullable=False),
        sa.Column("value", sa.Numeric(8, 2), nullable=False, server_default="0"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_loyalty_rewards_name", "loyalty_rewards", ["name"], unique=True)

    op.create_table(
        "loyalty_accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE", name="fk_loyalty_accounts_user_id_users"),
            nullable=False,
        ),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("purchase_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_spent", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("tier", sa.String(length=32), nullable=False, server_default="Sprout"),
        sa.Column("discount_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_eligible", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("ledger_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("card_id", sa.String(length=32), nullable=True),
        sa.Column("card_type", card_type_enum, nullable=True),
        sa.Column("card_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("card_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("card_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_id", name="uq_loyalty_accounts_user_id"),
        sa.UniqueConstraint("card_id", name="uq_loyalty_accounts_card_id"),
        sa.CheckConstraint("points >= 0", name="ck_loyalty_accounts_points_non_negative"),
        sa.CheckConstraint("purchase_count >= 0", name="ck_loyalty_accounts_purchase_count_non_negative"),
        sa.CheckConstraint("total_spent >= 0", name="ck_loyalty_accounts_total_spent_non_negative"),
    )

    op.create_table(
        "loyalty_ledger_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey(
                "loyalty_accounts.id",
                ondelete="CASCADE",
                name="fk_loyalty_ledger_entries_account_id_loyalty_accounts",
            ),
            nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("source", ledger_source_enum, nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=True),
        sa.Column("reward_name", sa.String(length=64), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("account_id", "order_id", name="uq_loyalty_ledger_entries_account_order"),
        sa.UniqueConstraint("account_id", "sequence", name="uq_loyalty_ledger_entries_account_sequence"),
        sa.CheckConstraint(
            "(source = 'order_processed' AND order_id IS NOT NULL AND reward_name IS NULL AND points >= 0)"
            " OR (source = 'reward_redeemed' AND reward_name IS NOT NULL AND order_id IS NULL AND points < 0)"
            " OR (source = 'admin_adjustment' AND reason IS NOT NULL AND order_id IS NULL"
            " AND reward_name IS NULL AND points <> 0)"
            " OR (source = 'test_points' AND order_id IS NULL AND reward_name IS NULL AND points > 0)",
            name="ck_loyalty_ledger_entries_source_variant",
        ),
        sa.CheckConstraint(
            "used = false OR source = 'reward_redeemed'",
            name="ck_loyalty_ledger_entries_used_only_on_redemptions",
        ),
    )
    op.create_index("ix_loyalty_ledger_entries_account_id", "loyalty_ledger_entries", ["account_id"])


def downgrade() -> None:
    op.drop_index("ix_loyalty_ledger_entries_account_id", table_name="loyalty_ledger_entries")
    op.drop_table("loyalty_ledger_entries")
    op.drop_table("loyalty_accounts")
    op.drop_index("ix_loyalty_rewards_name", table_name="loyalty_rewards")
    op.drop_table("loyalty_rewards")
    op.drop_table("loyalty_tiers")
    op.drop_index("ix_orders_user_id", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    for enum in reversed(_ENUMS):
        enum.drop(bind, checkfirst=True)
