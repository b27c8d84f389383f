"""initial ledger schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _owner() -> sa.Column:
    return sa.Column(
        "user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("messaging_id", sa.BigInteger(), unique=True),
        sa.Column("email", sa.String(length=255), unique=True),
        sa.Column("password_hash", sa.String(length=255)),
        sa.Column("name", sa.String(length=120)),
        sa.Column("username", sa.String(length=120)),
        *_timestamps(),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("type", sa.String(length=7), nullable=False),
        sa.Column("color", sa.String(length=9), nullable=False),
        sa.Column("icon", sa.String(length=40), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner(),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("type", sa.String(length=8), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("merchant_name", sa.String(length=120)),
        sa.Column("payment_method", sa.String(length=40)),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_user_date", "transactions", ["user_id", "occurred_at"]
    )
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category_id", "occurred_at"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner(),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck_budget_amount_positive"),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
        sa.UniqueConstraint(
            "user_id",
            "category_id",
            "month",
            "year",
            name="uq_budget_user_category_month",
        ),
    )

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner(),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("target_amount", sa.Float(), nullable=False),
        sa.Column("current_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("deadline", sa.Date()),
        sa.Column("icon", sa.String(length=40), nullable=False),
        sa.Column("color", sa.String(length=9), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "bills",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner(),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("due_day", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("frequency", sa.String(length=7), nullable=False),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_paid_at", sa.DateTime()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("icon", sa.String(length=40), nullable=False),
        sa.Column("color", sa.String(length=9), nullable=False),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_bill_due_day_range"),
        sa.CheckConstraint("amount >= 0", name="ck_bill_amount_positive"),
    )

    op.create_table(
        "investments",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner(),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("type", sa.String(length=11), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("avg_buy_price", sa.Float(), nullable=False),
        sa.Column("current_price", sa.Float(), nullable=False),
        sa.Column("platform", sa.String(length=80)),
        sa.Column("icon", sa.String(length=40), nullable=False),
        sa.Column("color", sa.String(length=9), nullable=False),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
    )

    op.create_table(
        "debts",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner(),
        sa.Column("counterpart_name", sa.String(length=120), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("due_date", sa.Date()),
        sa.Column("status", sa.String(length=6), nullable=False, server_default="unpaid"),
        *_timestamps(),
    )

    op.create_table(
        "scheduled_messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner(),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(length=7), nullable=False, server_default="pending"),
        sa.Column("kind", sa.String(length=12), nullable=False, server_default="other"),
        *_timestamps(),
    )
    op.create_index(
        "ix_scheduled_messages_user_status",
        "scheduled_messages",
        ["user_id", "status", "scheduled_at"],
    )

    op.create_table(
        "merchant_mappings",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner(),
        sa.Column("merchant_name", sa.String(length=120), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="1"),
        *_timestamps(),
    )
    op.create_index(
        "ix_merchant_mappings_user_name",
        "merchant_mappings",
        ["user_id", "merchant_name"],
    )

    op.create_table(
        "user_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("hourly_rate", sa.Float(), nullable=False, server_default="50000"),
        sa.Column("primary_goal_id", sa.Integer(), sa.ForeignKey("goals.id")),
        sa.Column("security_pin", sa.String(length=255)),
        sa.Column(
            "is_app_lock_enabled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("goals_indexed_for", sa.String(length=7)),
        *_timestamps(),
    )


def downgrade() -> None:
    op.drop_table("user_settings")
    op.drop_index("ix_merchant_mappings_user_name", table_name="merchant_mappings")
    op.drop_table("merchant_mappings")
    op.drop_index("ix_scheduled_messages_user_status", table_name="scheduled_messages")
    op.drop_table("scheduled_messages")
    op.drop_table("debts")
    op.drop_table("investments")
    op.drop_table("bills")
    op.drop_table("goals")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_user_category_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_table("users")
