"""subscriptions entitlement store and webhook event log

Revision ID: 0001_subscriptions
Revises:
Create Date: 2025-11-06
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_subscriptions"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("purchase_token", sa.Text(), nullable=False),
        sa.Column("product_id", sa.Text(), nullable=False),
        sa.Column("purchase_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expiry_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("auto_renewing", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("purchase_state", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "purchase_state IN ('pending','active','canceled','on_hold','grace_period','expired','revoked')",
            name="ck_subscriptions_purchase_state",
        ),
        sa.UniqueConstraint("purchase_token", name="uq_subscriptions_purchase_token"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index(
        "ix_subscriptions_user_active_expiry",
        "subscriptions",
        ["user_id", "is_active", sa.text("expiry_time DESC")],
    )

    op.create_table(
        "billing_webhook_events",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("message_id", sa.Text(), nullable=False),
        sa.Column("notification_type", sa.Integer(), nullable=True),
        sa.Column("purchase_token", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="received"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('received','processed','ignored','error')",
            name="ck_billing_webhook_events_status",
        ),
        sa.UniqueConstraint("message_id", name="uq_billing_webhook_events_message_id"),
    )
    op.create_index(
        "ix_billing_webhook_events_status_received",
        "billing_webhook_events",
        ["status", sa.text("received_at DESC")],
    )
    op.create_index("ix_billing_webhook_events_purchase_token", "billing_webhook_events", ["purchase_token"])


def downgrade():
    op.drop_index("ix_billing_webhook_events_purchase_token", table_name="billing_webhook_events")
    op.drop_index("ix_billing_webhook_events_status_received", table_name="billing_webhook_events")
    op.drop_table("billing_webhook_events")
    op.drop_index("ix_subscriptions_user_active_expiry", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")
