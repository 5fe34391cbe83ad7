from __future__ import annotations

import json
import logging
import statistics
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Sequence, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from ..db_utils import as_utc, dialect_insert
from ..models import (
    ActionToken,
    AggregationFailure,
    DeviceAlertState,
    IntervalAggregate,
    Reading,
    Threshold,
)
from .buffer import LATE_READING_COUNTER, increment_counter
from .downtime import accrue_bucket, bucket_downtime
from .evaluator import AlertLevel, evaluate

logger = logging.getLogger("windwatch.aggregation")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
DEFAULT_AMBER_THRESHOLD = 20.0
DEFAULT_RED_THRESHOLD = 30.0


@dataclass(frozen=True)
class Transition:
    device_id: str
    previous: AlertLevel | None
    current: AlertLevel
    resolved_episodes: Tuple[str, ...] = ()

    @property
    def upward(self) -> bool:
        return self.current > (self.previous if self.previous is not None else AlertLevel.NORMAL)


@dataclass
class AggregationSummary:
    device_id: str
    buckets_written: int = 0
    readings_folded: int = 0
    late_readings: int = 0
    failed_bucket: datetime | None = None
    transitions: List[Transition] = field(default_factory=list)


def bucket_floor(ts: datetime, width: timedelta) -> datetime:
    ts = as_utc(ts)
    return EPOCH + ((ts - EPOCH) // width) * width


def compute_bucket_stats(speeds: Sequence[float]) -> Tuple[float, float, float]:
    """Mean, peak and population standard deviation of a non-empty bucket."""
    if not speeds:
        raise ValueError("cannot aggregate an empty bucket")
    return statistics.fmean(speeds), max(speeds), statistics.pstdev(speeds)


def get_thresholds(db: Session, device_id: str) -> Tuple[float, float]:
    threshold = db.get(Threshold, device_id, populate_existing=True)
    if threshold is None:
        return DEFAULT_AMBER_THRESHOLD, DEFAULT_RED_THRESHOLD
    return threshold.amber_threshold, threshold.red_threshold


def new_episode_id() -> str:
    return uuid.uuid4().hex


def claim_device(db: Session, device_id: str) -> DeviceAlertState:
    """Lock the device's state row for the rest of the transaction, creating it if needed."""
    db.execute(
        dialect_insert(db, DeviceAlertState)
        .values(device_id=device_id, level="NO_DATA")
        .on_conflict_do_nothing(index_elements=["device_id"])
    )
    return db.execute(
        select(DeviceAlertState)
        .where(DeviceAlertState.device_id == device_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()


def pending_buckets(db: Session, device_id: str, now: datetime, width: timedelta, grace: timedelta) -> List[datetime]:
    """Starts of closed buckets that still hold unprocessed readings, oldest first."""
    closed_before = bucket_floor(now - grace, width)
    timestamps = db.scalars(
        select(Reading.timestamp).where(
            Reading.device_id == device_id,
            Reading.processed.is_(False),
            Reading.timestamp < closed_before,
        )
    ).all()
    return sorted({bucket_floor(ts, width) for ts in timestamps})


def devices_with_pending_readings(db: Session) -> List[str]:
    return list(
        db.scalars(select(Reading.device_id).where(Reading.processed.is_(False)).distinct().order_by(Reading.device_id))
    )


def aggregate_device(
    db: Session,
    device_id: str,
    now: datetime,
    *,
    width: timedelta,
    grace: timedelta,
    escalate_after: int,
) -> AggregationSummary:
    """
    Close every finished bucket for one device. Each bucket commits on its own;
    a failing bucket is rolled back, recorded, and stops the pass so later buckets
    never overtake it.
    """
    summary = AggregationSummary(device_id=device_id)
    for start in pending_buckets(db, device_id, now, width, grace):
        try:
            folded, late, transition = fold_bucket(db, device_id, start, start + width, now)
            db.execute(
                delete(AggregationFailure).where(
                    AggregationFailure.device_id == device_id,
                    AggregationFailure.interval_start == start,
                )
            )
            db.commit()
        except Exception as err:
            db.rollback()
            logger.exception(
                json.dumps({"event": "aggregation_failed", "device_id": device_id, "interval_start": start.isoformat()})
            )
            record_failure(db, device_id, start, err, now, escalate_after)
            db.commit()
            summary.failed_bucket = start
            break

        if folded:
            summary.buckets_written += 1
            summary.readings_folded += folded
        summary.late_readings += late
        if transition is not None:
            summary.transitions.append(transition)
    return summary


def fold_bucket(
    db: Session, device_id: str, start: datetime, end: datetime, now: datetime
) -> Tuple[int, int, Transition | None]:
    """
    Fold the unprocessed readings of [start, end) into one IntervalAggregate.
    Returns (readings folded, late readings discarded, state transition). Does not commit.
    """
    state = claim_device(db, device_id)
    readings = db.scalars(
        select(Reading)
        .where(
            Reading.device_id == device_id,
            Reading.processed.is_(False),
            Reading.timestamp >= start,
            Reading.timestamp < end,
        )
        .order_by(Reading.timestamp, Reading.id)
        .with_for_update()
    ).all()
    if not readings:
        return 0, 0, None

    reading_ids = [reading.id for reading in readings]
    already_closed = db.scalar(
        select(IntervalAggregate.id).where(
            IntervalAggregate.device_id == device_id,
            IntervalAggregate.interval_start == start,
        )
    )
    if already_closed is not None:
        # Aggregates are immutable; stragglers for a written bucket are dropped.
        db.execute(update(Reading).where(Reading.id.in_(reading_ids)).values(processed=True))
        increment_counter(db, LATE_READING_COUNTER, len(readings), now=now)
        logger.warning(
            json.dumps(
                {
                    "event": "late_readings_discarded",
                    "device_id": device_id,
                    "interval_start": start.isoformat(),
                    "count": len(readings),
                }
            )
        )
        return 0, len(readings), None

    avg, peak, std = compute_bucket_stats([reading.wind_speed for reading in readings])
    amber, red = get_thresholds(db, device_id)
    level = evaluate(avg, peak, amber, red)

    last_end = as_utc(state.last_interval_end)
    backfill = last_end is not None and start < last_end
    if backfill:
        # A bucket older than the state machine's position: record it, but leave
        # the live downtime window and alert state alone.
        downtime, _ = bucket_downtime(readings, red, start, end)
    else:
        downtime = accrue_bucket(db, device_id, readings, red, start, end, previous_end=last_end)

    db.add(
        IntervalAggregate(
            device_id=device_id,
            interval_start=start,
            interval_end=end,
            avg_wind_speed=avg,
            max_wind_speed=peak,
            std_deviation=std,
            sample_count=len(readings),
            alert_level=level.name,
            downtime_seconds=downtime,
            created_at=now,
        )
    )
    db.execute(update(Reading).where(Reading.id.in_(reading_ids)).values(processed=True))

    transition = None if backfill else advance_state(db, state, level, end, now)
    db.flush()

    logger.info(
        json.dumps(
            {
                "event": "bucket_closed",
                "device_id": device_id,
                "interval_start": start.isoformat(),
                "sample_count": len(readings),
                "avg_wind_speed": round(avg, 2),
                "max_wind_speed": peak,
                "alert_level": level.name,
                "downtime_seconds": round(downtime, 1),
                "backfill": backfill,
            }
        )
    )
    return len(readings), 0, transition


def advance_state(
    db: Session, state: DeviceAlertState, level: AlertLevel, interval_end: datetime, now: datetime
) -> Transition:
    """
    Move the device's alert state machine to `level`, opening episodes on the way
    up and resolving them (revoking their unused tokens) on the way down.
    """
    previous = AlertLevel.from_name(state.level)
    resolved: List[str] = []

    if level >= AlertLevel.AMBER and state.amber_episode_id is None:
        state.amber_episode_id = new_episode_id()
    if level == AlertLevel.RED and state.red_episode_id is None:
        state.red_episode_id = new_episode_id()
    if level < AlertLevel.RED and state.red_episode_id is not None:
        resolved.append(state.red_episode_id)
        state.red_episode_id = None
    if level < AlertLevel.AMBER and state.amber_episode_id is not None:
        resolved.append(state.amber_episode_id)
        state.amber_episode_id = None

    state.level = level.name
    state.last_interval_end = interval_end
    state.updated_at = now

    if resolved:
        revoked = db.execute(
            update(ActionToken)
            .where(
                ActionToken.device_id == state.device_id,
                ActionToken.episode_id.in_(resolved),
                ActionToken.used_at.is_(None),
                ActionToken.revoked_at.is_(None),
            )
            .values(revoked_at=now)
        ).rowcount
        logger.info(
            json.dumps(
                {
                    "event": "episodes_resolved",
                    "device_id": state.device_id,
                    "episodes": resolved,
                    "tokens_revoked": revoked,
                }
            )
        )

    transition = Transition(
        device_id=state.device_id,
        previous=previous,
        current=level,
        resolved_episodes=tuple(resolved),
    )
    if previous != level:
        logger.info(
            json.dumps(
                {
                    "event": "alert_transition",
                    "device_id": state.device_id,
                    "from": previous.name if previous is not None else "NO_DATA",
                    "to": level.name,
                }
            )
        )
    return transition


def record_failure(
    db: Session, device_id: str, start: datetime, err: Exception, now: datetime, escalate_after: int
) -> AggregationFailure:
    failure = db.get(AggregationFailure, (device_id, start))
    if failure is None:
        failure = AggregationFailure(device_id=device_id, interval_start=start, attempts=0, updated_at=now)
        db.add(failure)
    failure.attempts += 1
    failure.last_error = f"{err.__class__.__name__}: {err}"[:1000]
    failure.updated_at = now
    if failure.attempts >= escalate_after and failure.escalated_at is None:
        failure.escalated_at = now
        logger.error(
            json.dumps(
                {
                    "event": "aggregation_escalated",
                    "device_id": device_id,
                    "interval_start": start.isoformat(),
                    "attempts": failure.attempts,
                    "last_error": failure.last_error,
                }
            )
        )
    return failure
