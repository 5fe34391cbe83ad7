"""Initial schema for the wind alert pipeline."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202603010001"
down_revision = None
branch_labels = None
depends_on = None

NOW = sa.text("timezone('utc', now())")


def upgrade() -> None:
    op.create_table(
        "devices",
        sa.Column("device_id", sa.Text(), primary_key=True, nullable=False),
        sa.Column("device_name", sa.Text(), nullable=False),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=NOW),
    )

    op.create_table(
        "wind_alert_thresholds",
        sa.Column(
            "device_id",
            sa.Text(),
            sa.ForeignKey("devices.device_id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column("amber_threshold", sa.Float(), nullable=False, server_default="20"),
        sa.Column("red_threshold", sa.Float(), nullable=False, server_default="30"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=NOW),
        sa.CheckConstraint("amber_threshold >= 0 AND amber_threshold < red_threshold", name="chk_threshold_order"),
    )

    op.create_table(
        "wind_readings",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("device_id", sa.Text(), sa.ForeignKey("devices.device_id", ondelete="CASCADE"), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("wind_speed", sa.Float(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=NOW),
        sa.UniqueConstraint("device_id", "timestamp", name="uq_wind_readings_device_ts"),
        sa.CheckConstraint("wind_speed >= 0 AND wind_speed <= 150", name="chk_wind_speed_range"),
    )
    op.create_index(
        "idx_wind_readings_device_processed_ts",
        "wind_readings",
        ["device_id", "processed", "timestamp"],
        unique=False,
    )

    op.create_table(
        "interval_aggregates",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("device_id", sa.Text(), sa.ForeignKey("devices.device_id", ondelete="CASCADE"), nullable=False),
        sa.Column("interval_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("interval_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("avg_wind_speed", sa.Float(), nullable=False),
        sa.Column("max_wind_speed", sa.Float(), nullable=False),
        sa.Column("std_deviation", sa.Float(), nullable=False),
        sa.Column("sample_count", sa.Integer(), nullable=False),
        sa.Column("alert_level", sa.String(length=10), nullable=False),
        sa.Column("downtime_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=NOW),
        sa.UniqueConstraint("device_id", "interval_start", name="uq_interval_aggregates_device_start"),
        sa.CheckConstraint("interval_end > interval_start", name="chk_interval_order"),
        sa.CheckConstraint("sample_count > 0", name="chk_sample_count_positive"),
        sa.CheckConstraint("alert_level IN ('NORMAL', 'AMBER', 'RED')", name="chk_interval_alert_level"),
    )
    op.create_index(
        "idx_interval_aggregates_device_end",
        "interval_aggregates",
        ["device_id", "interval_end"],
        unique=False,
        postgresql_ops={"interval_end": "DESC"},
    )

    op.create_table(
        "device_alert_states",
        sa.Column(
            "device_id",
            sa.Text(),
            sa.ForeignKey("devices.device_id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column("level", sa.String(length=10), nullable=False, server_default="NO_DATA"),
        sa.Column("amber_episode_id", sa.String(length=32), nullable=True),
        sa.Column("red_episode_id", sa.String(length=32), nullable=True),
        sa.Column("last_interval_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=NOW),
        sa.CheckConstraint("level IN ('NO_DATA', 'NORMAL', 'AMBER', 'RED')", name="chk_device_alert_level"),
    )

    op.create_table(
        "downtime_windows",
        sa.Column(
            "device_id",
            sa.Text(),
            sa.ForeignKey("devices.device_id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "notification_contacts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("device_id", sa.Text(), sa.ForeignKey("devices.device_id", ondelete="CASCADE"), nullable=False),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("phone_number", sa.Text(), nullable=True),
        sa.Column("unsubscribe_key", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=NOW),
    )
    op.create_index("idx_notification_contacts_device", "notification_contacts", ["device_id"], unique=False)
    op.create_index("uq_notification_contacts_unsubscribe_key", "notification_contacts", ["unsubscribe_key"], unique=True)

    op.create_table(
        "notification_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("device_id", sa.Text(), sa.ForeignKey("devices.device_id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "contact_id",
            sa.BigInteger(),
            sa.ForeignKey("notification_contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("episode_id", sa.String(length=32), nullable=False),
        sa.Column("amber_episode_id", sa.String(length=32), nullable=False),
        sa.Column("alert_level", sa.String(length=10), nullable=False),
        sa.Column("wind_speed", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivery_status", sa.String(length=20), nullable=False, server_default="PENDING"),
        sa.Column("delivery_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_delivery_error", sa.Text(), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_action", sa.String(length=20), nullable=True),
        sa.CheckConstraint("alert_level IN ('AMBER', 'RED')", name="chk_event_alert_level"),
        sa.CheckConstraint(
            "delivery_status IN ('PENDING', 'SENT', 'FAILED', 'ABANDONED')",
            name="chk_event_delivery_status",
        ),
    )
    op.create_index(
        "idx_notification_events_contact_episode",
        "notification_events",
        ["contact_id", "episode_id"],
        unique=False,
    )
    op.create_index(
        "idx_notification_events_delivery_status",
        "notification_events",
        ["delivery_status"],
        unique=False,
    )

    op.create_table(
        "notification_history",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.BigInteger(),
            sa.ForeignKey("notification_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("device_id", sa.Text(), nullable=False),
        sa.Column("contact_id", sa.BigInteger(), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column("action", sa.String(length=20), nullable=True),
        sa.Column("token_id", sa.String(length=64), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "kind IN ('DISPATCHED', 'DELIVERY_FAILED', 'DELIVERY_ABANDONED', 'ACKNOWLEDGED')",
            name="chk_history_kind",
        ),
    )
    op.create_index("idx_notification_history_event", "notification_history", ["event_id"], unique=False)

    op.create_table(
        "action_tokens",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column(
            "event_id",
            sa.BigInteger(),
            sa.ForeignKey("notification_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("device_id", sa.Text(), nullable=False),
        sa.Column("contact_id", sa.BigInteger(), nullable=False),
        sa.Column("episode_id", sa.String(length=32), nullable=False),
        sa.Column("action", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("action IN ('snooze_1h', 'snooze_today')", name="chk_token_action"),
    )
    op.create_index("idx_action_tokens_device_episode", "action_tokens", ["device_id", "episode_id"], unique=False)

    op.create_table(
        "snooze_states",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("device_id", sa.Text(), sa.ForeignKey("devices.device_id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "contact_id",
            sa.BigInteger(),
            sa.ForeignKey("notification_contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("snoozed_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("device_id", "contact_id", name="uq_snooze_states_device_contact"),
    )

    op.create_table(
        "pipeline_counters",
        sa.Column("name", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "aggregation_failures",
        sa.Column("device_id", sa.Text(), primary_key=True, nullable=False),
        sa.Column("interval_start", sa.DateTime(timezone=True), primary_key=True, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("aggregation_failures")
    op.drop_table("pipeline_counters")
    op.drop_table("snooze_states")
    op.drop_index("idx_action_tokens_device_episode", table_name="action_tokens")
    op.drop_table("action_tokens")
    op.drop_index("idx_notification_history_event", table_name="notification_history")
    op.drop_table("notification_history")
    op.drop_index("idx_notification_events_delivery_status", table_name="notification_events")
    op.drop_index("idx_notification_events_contact_episode", table_name="notification_events")
    op.drop_table("notification_events")
    op.drop_index("uq_notification_contacts_unsubscribe_key", table_name="notification_contacts")
    op.drop_index("idx_notification_contacts_device", table_name="notification_contacts")
    op.drop_table("notification_contacts")
    op.drop_table("downtime_windows")
    op.drop_table("device_alert_states")
    op.drop_index("idx_interval_aggregates_device_end", table_name="interval_aggregates")
    op.drop_table("interval_aggregates")
    op.drop_index("idx_wind_readings_device_processed_ts", table_name="wind_readings")
    op.drop_table("wind_readings")
    op.drop_table("wind_alert_thresholds")
    op.drop_table("devices")
