"""initial ledger tables: users, plan templates, subscriptions, metering journal

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("username", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("role", sa.String(50), nullable=False, server_default="user"),
        sa.Column("is_suspended", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("current_subscription_id", sa.String(36), nullable=True),
        sa.Column("voice_id", sa.String(128), nullable=True),
        sa.Column("model_id", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_current_subscription_id", "users", ["current_subscription_id"])

    # --- subscription_plans ---
    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="Active"),
        sa.Column("price", sa.Float, nullable=False, server_default="0"),
        sa.Column("billing_period", sa.String(16), nullable=False, server_default="monthly"),
        sa.Column("voice_minutes", sa.Float, nullable=False, server_default="0"),
        sa.Column("features", sa.JSON, nullable=False),
        sa.Column("description", sa.String(1024), nullable=False, server_default=""),
        sa.Column("is_popular", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("currency", sa.String(8), nullable=False, server_default="EUR"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_subscription_plans_name", "subscription_plans", ["name"], unique=True)

    # --- user_subscriptions (the ledger) ---
    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("plan_id", sa.String(36), nullable=True),
        sa.Column("name", sa.String(32), nullable=False, server_default="Free"),
        sa.Column("status", sa.String(16), nullable=False, server_default="Active"),
        sa.Column("price", sa.Float, nullable=False, server_default="0"),
        sa.Column("billing_period", sa.String(16), nullable=False, server_default="monthly"),
        sa.Column("features", sa.JSON, nullable=False),
        sa.Column("description", sa.String(1024), nullable=False, server_default=""),
        sa.Column("is_popular", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("currency", sa.String(8), nullable=False, server_default="EUR"),
        sa.Column("total_minutes", sa.Float, nullable=False, server_default="0"),
        sa.Column("available_minutes", sa.Float, nullable=False, server_default="0"),
        sa.Column("extra_minutes", sa.Float, nullable=False, server_default="0"),
        sa.Column("seconds", sa.Integer, nullable=False, server_default="0"),
        sa.Column("recordings", sa.JSON, nullable=False),
        sa.Column("subscription_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_user_subscriptions_user_id", "user_subscriptions", ["user_id"])

    # --- metering_sessions (crash-recovery journal) ---
    op.create_table(
        "metering_sessions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("subscription_id", sa.String(36), nullable=False),
        sa.Column("connection_id", sa.String(64), nullable=False),
        sa.Column("seconds_at_start", sa.Integer, nullable=False, server_default="0"),
        sa.Column("seconds_consumed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("cycle_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_reason", sa.String(32), nullable=True),
    )
    op.create_index("ix_metering_sessions_user_id", "metering_sessions", ["user_id"])
    op.create_index("ix_metering_sessions_subscription_id", "metering_sessions", ["subscription_id"])
    op.create_index("ix_metering_sessions_ended_at", "metering_sessions", ["ended_at"])


def downgrade() -> None:
    op.drop_table("metering_sessions")
    op.drop_table("user_subscriptions")
    op.drop_table("subscription_plans")
    op.drop_table("users")
