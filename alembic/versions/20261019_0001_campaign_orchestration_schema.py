"""campaign orchestration schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, "customers"):
        op.create_table(
            "customers",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("external_id", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("phone", sa.String(length=40), nullable=True),
            sa.Column("total_spend", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("visit_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_purchase_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("external_id"),
        )
        op.create_index("ix_customers_email", "customers", ["email"])
        op.create_index("ix_customers_phone", "customers", ["phone"])
        op.create_index("ix_customers_total_spend", "customers", ["total_spend"])
        op.create_index("ix_customers_last_purchase_at", "customers", ["last_purchase_at"])

    if not _table_exists(inspector, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("external_id", sa.String(length=64), nullable=False),
            sa.Column("customer_id", sa.String(length=36), nullable=False),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="placed"),
            sa.Column("ordered_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("external_id"),
        )
        op.create_index("ix_orders_customer_id", "orders", ["customer_id"])
        op.create_index("ix_orders_customer_ordered_at", "orders", ["customer_id", "ordered_at"])

    if not _table_exists(inspector, "segments"):
        op.create_table(
            "segments",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("owner_user_id", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("description", sa.String(length=255), nullable=True),
            sa.Column("rules_json", sa.JSON(), nullable=False),
            sa.Column("audience_size", sa.Integer(), nullable=False, server_default="0"),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("owner_user_id", "name", name="uq_segments_owner_name"),
        )
        op.create_index("ix_segments_owner_user_id", "segments", ["owner_user_id"])
        op.create_index("ix_segments_owner_created_at", "segments", ["owner_user_id", "created_at"])

    if not _table_exists(inspector, "campaigns"):
        op.create_table(
            "campaigns",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("owner_user_id", sa.String(length=64), nullable=False),
            sa.Column("segment_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("message_template", sa.String(length=2000), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="DRAFT"),
            sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("total_audience", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("success_rate", sa.Float(), nullable=False, server_default="0"),
            sa.Column("ai_summary", sa.Text(), nullable=True),
            sa.Column("failure_reason", sa.String(length=255), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["segment_id"], ["segments.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_campaigns_owner_user_id", "campaigns", ["owner_user_id"])
        op.create_index("ix_campaigns_segment_id", "campaigns", ["segment_id"])
        op.create_index("ix_campaigns_owner_created_at", "campaigns", ["owner_user_id", "created_at"])
        op.create_index("ix_campaigns_status_scheduled_at", "campaigns", ["status", "scheduled_at"])

    if not _table_exists(inspector, "communication_logs"):
        op.create_table(
            "communication_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("campaign_id", sa.String(length=36), nullable=False),
            sa.Column("recipient_id", sa.String(length=36), nullable=False),
            sa.Column("rendered_message", sa.String(length=4000), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("failure_reason", sa.String(length=255), nullable=True),
            sa.Column("vendor_correlation_id", sa.String(length=64), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"]),
            sa.ForeignKeyConstraint(["recipient_id"], ["customers.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("vendor_correlation_id"),
            sa.UniqueConstraint("campaign_id", "recipient_id", name="uq_communication_logs_campaign_recipient"),
        )
        op.create_index("ix_communication_logs_campaign_id", "communication_logs", ["campaign_id"])
        op.create_index("ix_communication_logs_recipient_id", "communication_logs", ["recipient_id"])
        op.create_index("ix_communication_logs_campaign_status", "communication_logs", ["campaign_id", "status"])


def downgrade() -> None:
    op.drop_table("communication_logs")
    op.drop_table("campaigns")
    op.drop_table("segments")
    op.drop_table("orders")
    op.drop_table("customers")
