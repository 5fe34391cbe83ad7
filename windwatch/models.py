import secrets
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from .database import Base

# SQLite only autoincrements a plain INTEGER primary key.
id_type = BigInteger().with_variant(Integer, "sqlite")

ALERT_LEVELS = ("NORMAL", "AMBER", "RED")
DEVICE_STATES = ("NO_DATA",) + ALERT_LEVELS
TOKEN_ACTIONS = ("snooze_1h", "snooze_today")
DELIVERY_STATUSES = ("PENDING", "SENT", "FAILED", "ABANDONED")
HISTORY_KINDS = ("DISPATCHED", "DELIVERY_FAILED", "DELIVERY_ABANDONED", "ACKNOWLEDGED")


def _in(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class Device(Base):
    __tablename__ = "devices"

    device_id: Mapped[str] = mapped_column(Text, primary_key=True)
    device_name: Mapped[str] = mapped_column(Text, nullable=False)
    location: Mapped[str | None] = mapped_column(Text, nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    threshold: Mapped["Threshold"] = relationship(back_populates="device", uselist=False, cascade="all, delete-orphan")
    contacts: Mapped[list["NotificationContact"]] = relationship(back_populates="device", cascade="all, delete-orphan")


class Threshold(Base):
    __tablename__ = "wind_alert_thresholds"
    __table_args__ = (
        CheckConstraint("amber_threshold >= 0 AND amber_threshold < red_threshold", name="chk_threshold_order"),
    )

    device_id: Mapped[str] = mapped_column(Text, ForeignKey("devices.device_id", ondelete="CASCADE"), primary_key=True)
    amber_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=20.0)
    red_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=30.0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    device: Mapped[Device] = relationship(back_populates="threshold")


class Reading(Base):
    __tablename__ = "wind_readings"
    __table_args__ = (
        UniqueConstraint("device_id", "timestamp", name="uq_wind_readings_device_ts"),
        CheckConstraint("wind_speed >= 0 AND wind_speed <= 150", name="chk_wind_speed_range"),
    )

    id: Mapped[int] = mapped_column(id_type, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(Text, ForeignKey("devices.device_id", ondelete="CASCADE"), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    wind_speed: Mapped[float] = mapped_column(Float, nullable=False)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


Index("idx_wind_readings_device_processed_ts", Reading.device_id, Reading.processed, Reading.timestamp)


class IntervalAggregate(Base):
    __tablename__ = "interval_aggregates"
    __table_args__ = (
        UniqueConstraint("device_id", "interval_start", name="uq_interval_aggregates_device_start"),
        CheckConstraint("interval_end > interval_start", name="chk_interval_order"),
        CheckConstraint("sample_count > 0", name="chk_sample_count_positive"),
        CheckConstraint(_in("alert_level", ALERT_LEVELS), name="chk_interval_alert_level"),
    )

    id: Mapped[int] = mapped_column(id_type, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(Text, ForeignKey("devices.device_id", ondelete="CASCADE"), nullable=False)
    interval_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    interval_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    avg_wind_speed: Mapped[float] = mapped_column(Float, nullable=False)
    max_wind_speed: Mapped[float] = mapped_column(Float, nullable=False)
    std_deviation: Mapped[float] = mapped_column(Float, nullable=False)
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False)
    alert_level: Mapped[str] = mapped_column(String(10), nullable=False)
    downtime_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


Index("idx_interval_aggregates_device_end", IntervalAggregate.device_id, IntervalAggregate.interval_end.desc())


class DeviceAlertState(Base):
    """Current alert level per device; the row lock doubles as the aggregation claim."""

    __tablename__ = "device_alert_states"
    __table_args__ = (CheckConstraint(_in("level", DEVICE_STATES), name="chk_device_alert_level"),)

    device_id: Mapped[str] = mapped_column(Text, ForeignKey("devices.device_id", ondelete="CASCADE"), primary_key=True)
    level: Mapped[str] = mapped_column(String(10), nullable=False, default="NO_DATA", server_default="NO_DATA")
    amber_episode_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    red_episode_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last_interval_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class DowntimeWindow(Base):
    __tablename__ = "downtime_windows"

    device_id: Mapped[str] = mapped_column(Text, ForeignKey("devices.device_id", ondelete="CASCADE"), primary_key=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class NotificationContact(Base):
    __tablename__ = "notification_contacts"

    id: Mapped[int] = mapped_column(id_type, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(Text, ForeignKey("devices.device_id", ondelete="CASCADE"), nullable=False)
    email: Mapped[str] = mapped_column(Text, nullable=False)
    phone_number: Mapped[str | None] = mapped_column(Text, nullable=True)
    unsubscribe_key: Mapped[str] = mapped_column(
        String(64), nullable=False, default=lambda: secrets.token_hex(24)
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    device: Mapped[Device] = relationship(back_populates="contacts")


Index("idx_notification_contacts_device", NotificationContact.device_id)
Index("uq_notification_contacts_unsubscribe_key", NotificationContact.unsubscribe_key, unique=True)


class NotificationEvent(Base):
    __tablename__ = "notification_events"
    __table_args__ = (
        CheckConstraint(_in("alert_level", ("AMBER", "RED")), name="chk_event_alert_level"),
        CheckConstraint(_in("delivery_status", DELIVERY_STATUSES), name="chk_event_delivery_status"),
    )

    id: Mapped[int] = mapped_column(id_type, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(Text, ForeignKey("devices.device_id", ondelete="CASCADE"), nullable=False)
    contact_id: Mapped[int] = mapped_column(id_type, ForeignKey("notification_contacts.id", ondelete="CASCADE"), nullable=False)
    episode_id: Mapped[str] = mapped_column(String(32), nullable=False)
    amber_episode_id: Mapped[str] = mapped_column(String(32), nullable=False)
    alert_level: Mapped[str] = mapped_column(String(10), nullable=False)
    wind_speed: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    delivery_status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING", server_default="PENDING")
    delivery_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_delivery_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_action: Mapped[str | None] = mapped_column(String(20), nullable=True)

    tokens: Mapped[list["ActionToken"]] = relationship(back_populates="event")


Index("idx_notification_events_contact_episode", NotificationEvent.contact_id, NotificationEvent.episode_id)
Index("idx_notification_events_delivery_status", NotificationEvent.delivery_status)


class NotificationHistory(Base):
    __tablename__ = "notification_history"
    __table_args__ = (CheckConstraint(_in("kind", HISTORY_KINDS), name="chk_history_kind"),)

    id: Mapped[int] = mapped_column(id_type, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(id_type, ForeignKey("notification_events.id", ondelete="CASCADE"), nullable=False)
    device_id: Mapped[str] = mapped_column(Text, nullable=False)
    contact_id: Mapped[int] = mapped_column(id_type, nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str | None] = mapped_column(String(20), nullable=True)
    token_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


Index("idx_notification_history_event", NotificationHistory.event_id)


class ActionToken(Base):
    __tablename__ = "action_tokens"
    __table_args__ = (CheckConstraint(_in("action", TOKEN_ACTIONS), name="chk_token_action"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    event_id: Mapped[int] = mapped_column(id_type, ForeignKey("notification_events.id", ondelete="CASCADE"), nullable=False)
    device_id: Mapped[str] = mapped_column(Text, nullable=False)
    contact_id: Mapped[int] = mapped_column(id_type, nullable=False)
    episode_id: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    event: Mapped[NotificationEvent] = relationship(back_populates="tokens")


Index("idx_action_tokens_device_episode", ActionToken.device_id, ActionToken.episode_id)


class SnoozeState(Base):
    __tablename__ = "snooze_states"
    __table_args__ = (UniqueConstraint("device_id", "contact_id", name="uq_snooze_states_device_contact"),)

    id: Mapped[int] = mapped_column(id_type, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(Text, ForeignKey("devices.device_id", ondelete="CASCADE"), nullable=False)
    contact_id: Mapped[int] = mapped_column(id_type, ForeignKey("notification_contacts.id", ondelete="CASCADE"), nullable=False)
    snoozed_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PipelineCounter(Base):
    __tablename__ = "pipeline_counters"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AggregationFailure(Base):
    __tablename__ = "aggregation_failures"

    device_id: Mapped[str] = mapped_column(Text, primary_key=True)
    interval_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    escalated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
