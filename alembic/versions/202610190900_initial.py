"""subscriptions and bank connections

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "bank_connections",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("item_id", sa.String(length=128)),
        sa.Column("institution", sa.String(length=120)),
        sa.Column("last_sync_at", sa.DateTime()),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.UniqueConstraint("owner_id", name="uq_bank_connection_owner"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("external_stream_id", sa.String(length=128)),
        sa.Column("merchant_name", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "currency", sa.String(length=3), nullable=False, server_default="USD"
        ),
        sa.Column(
            "billing_cycle",
            sa.Enum("WEEKLY", "MONTHLY", "QUARTERLY", "YEARLY", name="billingcycle"),
            nullable=False,
            server_default="MONTHLY",
        ),
        sa.Column(
            "status",
            sa.Enum(
                "ACTIVE",
                "INACTIVE",
                "CANCELLED",
                "PRICE_CHANGED",
                "TRIAL",
                name="subscriptionstatus",
            ),
            nullable=False,
            server_default="ACTIVE",
        ),
        sa.Column("category", sa.String(length=100)),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column(
            "detection_method",
            sa.String(length=40),
            nullable=False,
            server_default="provider_recurring",
        ),
        sa.Column("next_billing_date", sa.Date()),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.UniqueConstraint(
            "owner_id", "external_stream_id", name="uq_subscription_owner_stream"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_subscription_amount_positive"),
        sa.CheckConstraint(
            "confidence >= 0 AND confidence <= 1", name="ck_subscription_confidence"
        ),
    )
    op.create_index(
        "ix_subscriptions_owner_status", "subscriptions", ["owner_id", "status"]
    )


def downgrade():
    op.drop_index("ix_subscriptions_owner_status", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("bank_connections")
