from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from ..db_utils import dialect_insert, utcnow
from ..models import Device, PipelineCounter, Reading
from .decoder import DecodedReading, PacketRejected, decode_packet

logger = logging.getLogger("windwatch.ingest")

DUPLICATE_COUNTER = "duplicate_reading"
FORCED_PRUNE_COUNTER = "forced_prune"
LATE_READING_COUNTER = "late_reading"


@dataclass(frozen=True)
class IngestResult:
    status: str
    reason: str | None = None


@dataclass(frozen=True)
class PruneResult:
    folded_deleted: int
    forced_deleted: int


def increment_counter(db: Session, name: str, amount: int = 1, now: datetime | None = None) -> None:
    """Atomically bump a durable pipeline counter."""
    if amount <= 0:
        return
    now = now or utcnow()
    stmt = (
        dialect_insert(db, PipelineCounter)
        .values(name=name, count=amount, updated_at=now)
        .on_conflict_do_update(
            index_elements=["name"],
            set_={"count": PipelineCounter.count + amount, "updated_at": now},
        )
    )
    db.execute(stmt)


def read_counters(db: Session) -> Dict[str, int]:
    rows = db.execute(select(PipelineCounter.name, PipelineCounter.count).order_by(PipelineCounter.name)).all()
    return {name: int(count) for name, count in rows}


def record_rejection(db: Session, reason: str) -> None:
    increment_counter(db, f"rejected_{reason}")


def append_reading(db: Session, reading: DecodedReading, now: datetime | None = None) -> bool:
    """
    Stage a validated reading as unprocessed. Returns False when an identical
    (device_id, timestamp) row already exists.
    """
    now = now or utcnow()
    stmt = dialect_insert(db, Reading).values(
        device_id=reading.device_id,
        timestamp=reading.timestamp,
        wind_speed=reading.wind_speed,
        latitude=reading.latitude,
        longitude=reading.longitude,
        processed=False,
        received_at=now,
    ).on_conflict_do_nothing(index_elements=["device_id", "timestamp"])

    result = db.execute(stmt)
    if result.rowcount == 0:
        increment_counter(db, DUPLICATE_COUNTER, now=now)
        return False

    values: Dict[str, Any] = {"last_seen_at": now}
    if reading.latitude is not None and reading.longitude is not None:
        values["latitude"] = reading.latitude
        values["longitude"] = reading.longitude
    db.execute(update(Device).where(Device.device_id == reading.device_id).values(**values))
    return True


def ingest_packet(db: Session, raw: bytes | str | Mapping[str, Any], now: datetime | None = None) -> IngestResult:
    """Decode and stage one packet. Rejections are counted, never raised."""
    try:
        reading = decode_packet(db, raw)
    except PacketRejected as rejection:
        record_rejection(db, rejection.reason)
        logger.warning(
            json.dumps(
                {
                    "event": "packet_rejected",
                    "reason": rejection.reason,
                    "device_id": rejection.device_id,
                    "detail": str(rejection),
                }
            )
        )
        return IngestResult(status="rejected", reason=rejection.reason)

    if not append_reading(db, reading, now=now):
        return IngestResult(status="duplicate")
    return IngestResult(status="ok")


def prune_buffer(
    db: Session,
    now: datetime,
    retention_minutes: int,
    hard_ceiling_minutes: int,
) -> PruneResult:
    """
    Delete folded readings past the retention horizon, then force out anything
    still unprocessed past the hard ceiling. The forced delete loses data, so it
    is logged per device and counted.
    """
    retention_cutoff = now - timedelta(minutes=retention_minutes)
    folded = db.execute(
        delete(Reading)
        .where(Reading.processed.is_(True), Reading.timestamp < retention_cutoff)
        .execution_options(synchronize_session=False)
    ).rowcount

    ceiling_cutoff = now - timedelta(minutes=hard_ceiling_minutes)
    stranded = db.execute(
        select(Reading.device_id, func.count(Reading.id))
        .where(Reading.processed.is_(False), Reading.timestamp < ceiling_cutoff)
        .group_by(Reading.device_id)
    ).all()

    forced = 0
    if stranded:
        forced = db.execute(
            delete(Reading)
            .where(Reading.processed.is_(False), Reading.timestamp < ceiling_cutoff)
            .execution_options(synchronize_session=False)
        ).rowcount
        for device_id, count in stranded:
            logger.warning(
                json.dumps(
                    {
                        "event": "buffer_forced_prune",
                        "device_id": device_id,
                        "readings_dropped": int(count),
                        "cutoff": ceiling_cutoff.isoformat(),
                    }
                )
            )
        increment_counter(db, FORCED_PRUNE_COUNTER, forced, now=now)

    return PruneResult(folded_deleted=folded or 0, forced_deleted=forced or 0)
