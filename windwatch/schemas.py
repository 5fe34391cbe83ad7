from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _normalize_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    # Devices without an RTC timezone report naive UTC.
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TelemetryPacket(BaseModel):
    """Wire format sent by anemometers over UDP or HTTP."""

    device_id: str = Field(min_length=1, alias="deviceId")
    timestamp: datetime
    wind_speed: float = Field(alias="windSpeed", allow_inf_nan=True)
    gps: str | None = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("device_id", mode="after")
    @classmethod
    def strip_device_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("deviceId must be non-empty")
        return value

    @field_validator("timestamp", mode="after")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        normalized = _normalize_datetime(value)
        assert normalized is not None
        return normalized


class AlertAction(str, Enum):
    ACKNOWLEDGE = "acknowledge"
    SNOOZE_1H = "snooze_1h"
    SNOOZE_TODAY = "snooze_today"


class IngestResponse(BaseModel):
    status: Literal["ok", "duplicate", "rejected"]
    reason: str | None = None


class AcknowledgementResponse(BaseModel):
    status: Literal["ok"]
    action: AlertAction
    deviceId: str
    snoozedUntil: datetime | None

    model_config = ConfigDict(use_enum_values=True)


class TokenDetailsResponse(BaseModel):
    tokenId: str
    action: AlertAction
    deviceId: str
    deviceName: str
    location: str | None
    alertLevel: str
    windSpeed: float
    notificationId: int
    expiresAt: datetime

    model_config = ConfigDict(use_enum_values=True)


class UnsubscribeResponse(BaseModel):
    status: Literal["ok"]
    deviceId: str


# Admin Schemas


class DeviceCreateRequest(BaseModel):
    device_id: str = Field(min_length=1)
    device_name: str = Field(min_length=1)
    location: str | None = None
    amber_threshold: float = Field(default=20.0, ge=0, le=150)
    red_threshold: float = Field(default=30.0, gt=0, le=150)

    @model_validator(mode="after")
    def validate_threshold_order(self) -> "DeviceCreateRequest":
        if self.amber_threshold >= self.red_threshold:
            raise ValueError("amber_threshold must be below red_threshold")
        return self


class DeviceResponse(BaseModel):
    device_id: str
    device_name: str
    location: str | None
    latitude: float | None
    longitude: float | None
    active: bool
    last_seen_at: datetime | None


class ThresholdUpdateRequest(BaseModel):
    amber_threshold: float = Field(ge=0, le=150)
    red_threshold: float = Field(gt=0, le=150)

    @model_validator(mode="after")
    def validate_threshold_order(self) -> "ThresholdUpdateRequest":
        if self.amber_threshold >= self.red_threshold:
            raise ValueError("amber_threshold must be below red_threshold")
        return self


class ThresholdResponse(BaseModel):
    device_id: str
    amber_threshold: float
    red_threshold: float


class ContactCreateRequest(BaseModel):
    email: str = Field(min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    phone_number: str | None = None


class ContactResponse(BaseModel):
    id: int
    device_id: str
    email: str
    phone_number: str | None


class IntervalAggregateResponse(BaseModel):
    intervalStart: datetime
    intervalEnd: datetime
    avgWindSpeed: float
    maxWindSpeed: float
    stdDeviation: float
    sampleCount: int
    alertLevel: Literal["NORMAL", "AMBER", "RED"]
    alertTriggered: bool
    amberAlertTriggered: bool
    redAlertTriggered: bool
    downtimeSeconds: float


class IntervalListResponse(BaseModel):
    deviceId: str
    intervals: list[IntervalAggregateResponse]
    totalDowntimeSeconds: float


class CounterListResponse(BaseModel):
    counters: dict[str, int]
