"""Initial calendar schema.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"])

    # --- calendar_integrations ---
    op.create_table(
        "calendar_integrations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("encrypted_access_token", sa.Text, nullable=True),
        sa.Column("encrypted_refresh_token", sa.Text, nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("server_url", sa.Text, nullable=True),
        sa.Column("username", sa.String(320), nullable=True),
        sa.Column("encrypted_password", sa.Text, nullable=True),
        sa.Column("provider_account_id", sa.String(255), nullable=True),
        sa.Column("provider_account_email", sa.String(320), nullable=True),
        sa.Column("calendar_id", sa.Text, nullable=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("sync_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("conflict_detection", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("auth_failure_count", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_calendar_integrations_user_id", "calendar_integrations", ["user_id"])
    op.create_index(
        "uq_calendar_integrations_user_provider",
        "calendar_integrations",
        ["user_id", "provider"],
        unique=True,
        postgresql_where=sa.text("provider <> 'CALDAV'"),
    )

    # --- bookings ---
    op.create_table(
        "bookings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("host_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("meeting_type", sa.String(255), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer, nullable=True),
        sa.Column("attendee_name", sa.String(255), nullable=True),
        sa.Column("attendee_email", sa.String(320), nullable=True),
        sa.Column("location_type", sa.String(20), nullable=True),
        sa.Column("location_address", sa.Text, nullable=True),
        sa.Column("meeting_url", sa.Text, nullable=True),
        sa.Column("external_calendar_event_id", sa.String(1024), nullable=True),
        sa.Column(
            "calendar_integration_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("calendar_integrations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index("ix_bookings_host_id", "bookings", ["host_id"])

    # --- booking_calendar_events ---
    op.create_table(
        "booking_calendar_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "integration_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("calendar_integrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_event_id", sa.String(1024), nullable=False),
        sa.Column("event_url", sa.Text, nullable=True),
        sa.Column("etag", sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("booking_id", "integration_id", name="uq_booking_integration"),
        sa.UniqueConstraint("integration_id", "external_event_id", name="uq_integration_external_event"),
    )
    op.create_index("ix_booking_calendar_events_booking_id", "booking_calendar_events", ["booking_id"])
    op.create_index("ix_booking_calendar_events_integration_id", "booking_calendar_events", ["integration_id"])

    # --- external_events ---
    op.create_table(
        "external_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "integration_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("calendar_integrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_event_id", sa.String(1024), nullable=False),
        sa.Column("summary", sa.Text, nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("etag", sa.String(255), nullable=True),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("raw", postgresql.JSONB, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("integration_id", "external_event_id", name="uq_external_event"),
    )
    op.create_index("ix_external_events_integration_id", "external_events", ["integration_id"])

    # --- webhook_channels ---
    op.create_table(
        "webhook_channels",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "integration_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("calendar_integrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("channel_id", sa.String(255), nullable=False, unique=True),
        sa.Column("resource_id", sa.String(255), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_webhook_channels_integration_id", "webhook_channels", ["integration_id"])
    op.create_index("ix_webhook_channels_channel_id", "webhook_channels", ["channel_id"])

    # --- webhook_receipts ---
    op.create_table(
        "webhook_receipts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("dedupe_key", sa.String(255), nullable=False),
        sa.Column(
            "integration_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("calendar_integrations.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("provider", "dedupe_key", name="uq_webhook_receipt"),
    )


def downgrade() -> None:
    op.drop_table("webhook_receipts")
    op.drop_table("webhook_channels")
    op.drop_table("external_events")
    op.drop_table("booking_calendar_events")
    op.drop_table("bookings")
    op.drop_index("uq_calendar_integrations_user_provider", table_name="calendar_integrations")
    op.drop_table("calendar_integrations")
    op.drop_table("users")
