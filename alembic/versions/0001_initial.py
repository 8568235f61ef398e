"""Initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17

"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("order_number", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "communication_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=True),
        sa.Column("communication_type", sa.String(length=32), nullable=False),
        sa.Column("sender_id", sa.String(length=128), nullable=True),
        sa.Column("recipient_id", sa.String(length=128), nullable=True),
        sa.Column("recipient_email", sa.String(length=320), nullable=True),
        sa.Column("recipient_phone", sa.String(length=32), nullable=True),
        sa.Column("subject", sa.String(length=512), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("template_used", sa.String(length=128), nullable=True),
        sa.Column("delivery_status", sa.String(length=32), server_default=sa.text("'Sent'"), nullable=False),
        sa.Column("external_message_id", sa.String(length=255), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("is_archived", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_message_id", name="uq_communication_logs_external_message_id"),
    )

    op.create_table(
        "notification_delivery_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("communication_log_id", sa.Uuid(), nullable=True),
        sa.Column("provider", sa.String(length=32), server_default=sa.text("'Unknown'"), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("status_details", sa.Text(), nullable=True),
        sa.Column("webhook_data", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["communication_log_id"], ["communication_logs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_id", name="uq_notification_delivery_logs_external_id"),
    )

    op.create_table(
        "delivery_audit_events",
        sa.Column("audit_event_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("actor", sa.String(length=128), server_default=sa.text("'system'"), nullable=False),
        sa.Column("communication_log_id", sa.String(length=64), nullable=True),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("previous_status", sa.String(length=32), nullable=True),
        sa.Column("new_status", sa.String(length=32), nullable=True),
        sa.Column("provider", sa.String(length=32), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("provider_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("immutable", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.PrimaryKeyConstraint("audit_event_id"),
    )

    op.create_table(
        "notification_preferences",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("email_address", sa.String(length=320), nullable=True),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("phone_verified", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("email_enabled", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("sms_enabled", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("opted_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", name="uq_notification_preferences_user_id"),
    )

    op.create_table(
        "export_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("requested_by", sa.String(length=128), nullable=False),
        sa.Column("criteria_json", sa.JSON(), nullable=True),
        sa.Column("format", sa.String(length=16), nullable=False),
        sa.Column("include_content", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("include_metadata", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("max_records", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), server_default=sa.text("'Processing'"), nullable=False),
        sa.Column("record_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("estimated_size", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("file_path", sa.String(length=1024), nullable=True),
        sa.Column("download_url", sa.String(length=512), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_index("ix_orders_organization_id", "orders", ["organization_id"])
    op.create_index("ix_communication_logs_order_sent_at", "communication_logs", ["order_id", "sent_at"])
    op.create_index("ix_communication_logs_status", "communication_logs", ["delivery_status"])
    op.create_index(
        "ix_notification_delivery_logs_communication_log_id",
        "notification_delivery_logs",
        ["communication_log_id"],
    )
    op.create_index("ix_delivery_audit_events_event_type", "delivery_audit_events", ["event_type"])
    op.create_index(
        "ix_delivery_audit_events_communication_log_id",
        "delivery_audit_events",
        ["communication_log_id"],
    )
    op.create_index("ix_delivery_audit_events_external_id", "delivery_audit_events", ["external_id"])
    op.create_index("ix_notification_preferences_email_address", "notification_preferences", ["email_address"])
    op.create_index("ix_notification_preferences_phone_number", "notification_preferences", ["phone_number"])
    op.create_index("ix_export_jobs_organization_id", "export_jobs", ["organization_id"])


def downgrade() -> None:
    op.drop_index("ix_export_jobs_organization_id", table_name="export_jobs")
    op.drop_index("ix_notification_preferences_phone_number", table_name="notification_preferences")
    op.drop_index("ix_notification_preferences_email_address", table_name="notification_preferences")
    op.drop_index("ix_delivery_audit_events_external_id", table_name="delivery_audit_events")
    op.drop_index("ix_delivery_audit_events_communication_log_id", table_name="delivery_audit_events")
    op.drop_index("ix_delivery_audit_events_event_type", table_name="delivery_audit_events")
    op.drop_index(
        "ix_notification_delivery_logs_communication_log_id",
        table_name="notification_delivery_logs",
    )
    op.drop_index("ix_communication_logs_status", table_name="communication_logs")
    op.drop_index("ix_communication_logs_order_sent_at", table_name="communication_logs")
    op.drop_index("ix_orders_organization_id", table_name="orders")

    op.drop_table("export_jobs")
    op.drop_table("notification_preferences")
    op.drop_table("delivery_audit_events")
    op.drop_table("notification_delivery_logs")
    op.drop_table("communication_logs")
    op.drop_table("orders")
