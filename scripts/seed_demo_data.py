from __future__ import annotations

import argparse
import math
from datetime import datetime, timedelta, timezone
from typing import List

from sqlalchemy import delete

from windwatch.database import SessionLocal
from windwatch.models import Device, NotificationContact, Reading, Threshold
from windwatch.services.buffer import append_reading
from windwatch.services.decoder import DecodedReading


def _build_readings(device_id: str, minutes: int, peak: float) -> List[DecodedReading]:
    """One reading per minute: a calm baseline with a single gust front crossing the mast."""
    now = datetime.now(timezone.utc).replace(second=0, microsecond=0)
    start = now - timedelta(minutes=minutes)
    readings: list[DecodedReading] = []
    for index in range(minutes):
        phase = index / max(minutes - 1, 1)
        gust = peak * math.exp(-((phase - 0.6) ** 2) / 0.01)
        speed = round(8.0 + 3.0 * math.sin(index / 4) + gust, 1)
        readings.append(
            DecodedReading(
                device_id=device_id,
                timestamp=start + timedelta(minutes=index),
                wind_speed=min(max(speed, 0.0), 150.0),
            )
        )
    return readings


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed a demo anemometer with contacts and an hour of readings.")
    parser.add_argument("--device", dest="device_id", default="DEMO-ANEM-001", help="Device id to seed.")
    parser.add_argument("--email", default="ops@example.com", help="Notification contact for the device.")
    parser.add_argument("--minutes", type=int, default=60, help="Minutes of readings to generate.")
    parser.add_argument("--peak", type=float, default=26.0, help="Gust strength added on top of the baseline.")
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Clear existing readings for the selected device before seeding.",
    )
    args = parser.parse_args()

    with SessionLocal() as session:
        device = session.get(Device, args.device_id)
        if device is None:
            device = Device(device_id=args.device_id, device_name="Demo anemometer", location="Test Site")
            device.threshold = Threshold(amber_threshold=20.0, red_threshold=30.0)
            device.contacts.append(NotificationContact(email=args.email))
            session.add(device)
            session.commit()
        if args.reset:
            session.execute(delete(Reading).where(Reading.device_id == args.device_id))
            session.commit()
        for reading in _build_readings(args.device_id, args.minutes, args.peak):
            append_reading(session, reading)
        session.commit()


if __name__ == "__main__":
    main()
