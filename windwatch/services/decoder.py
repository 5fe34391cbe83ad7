from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..models import Device
from ..schemas import TelemetryPacket

MIN_WIND_SPEED = 0.0
MAX_WIND_SPEED = 150.0


class PacketRejected(Exception):
    """A telemetry packet that must be dropped and counted."""

    reason = "rejected"

    def __init__(self, message: str, device_id: str | None = None):
        super().__init__(message)
        self.device_id = device_id


class MalformedPacket(PacketRejected):
    reason = "malformed_packet"


class UnknownDevice(PacketRejected):
    reason = "unknown_device"


class OutOfRange(PacketRejected):
    reason = "out_of_range"


@dataclass(frozen=True)
class DecodedReading:
    device_id: str
    timestamp: datetime
    wind_speed: float
    latitude: float | None = None
    longitude: float | None = None


def decode_packet(db: Session, raw: bytes | str | Mapping[str, Any]) -> DecodedReading:
    """
    Validate a raw packet into a reading. Raises a PacketRejected subclass on failure.
    Reads the device table but never writes.
    """
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        if isinstance(raw, str):
            raw = json.loads(raw)
        packet = TelemetryPacket.model_validate(raw)
    except (UnicodeDecodeError, ValueError, TypeError) as err:
        # ValidationError and JSONDecodeError are both ValueError subclasses.
        device_id = raw.get("deviceId") if isinstance(raw, Mapping) else None
        raise MalformedPacket(_describe(err), device_id=device_id) from err

    device = db.get(Device, packet.device_id)
    if device is None or not device.active:
        raise UnknownDevice(f"Unknown or inactive device: {packet.device_id}", device_id=packet.device_id)

    speed = packet.wind_speed
    if not math.isfinite(speed) or speed < MIN_WIND_SPEED or speed > MAX_WIND_SPEED:
        raise OutOfRange(f"Wind speed {speed} outside [{MIN_WIND_SPEED}, {MAX_WIND_SPEED}] m/s", device_id=packet.device_id)

    latitude, longitude = parse_gps(packet.gps)
    return DecodedReading(
        device_id=packet.device_id,
        timestamp=packet.timestamp,
        wind_speed=float(speed),
        latitude=latitude,
        longitude=longitude,
    )


def parse_gps(value: str | None) -> tuple[float | None, float | None]:
    """Parse "lat,lng"; anything unusable yields no position rather than a rejection."""
    if not value:
        return None, None
    parts = value.split(",")
    if len(parts) != 2:
        return None, None
    try:
        latitude, longitude = float(parts[0].strip()), float(parts[1].strip())
    except ValueError:
        return None, None
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        return None, None
    if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
        return None, None
    return latitude, longitude


def _describe(err: Exception) -> str:
    if isinstance(err, ValidationError):
        fields = sorted({".".join(str(part) for part in item["loc"]) for item in err.errors()})
        return f"Invalid packet fields: {', '.join(fields)}"
    return f"Unparseable packet: {err.__class__.__name__}"
