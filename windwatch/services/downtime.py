"""
Downtime accounting: how long a device's wind speed sat at or above its red threshold.

Accrual is per sample: a window opens at the first red reading and closes at the
first reading below red. Each bucket is credited with its overlap with the window.
A window still open when a bucket ends credits up to the bucket end and stays open,
but it never survives a gap in the bucket ledger.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Iterable, Protocol, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db_utils import as_utc
from ..models import DeviceAlertState, DowntimeWindow

logger = logging.getLogger("windwatch.downtime")


class _Sample(Protocol):
    timestamp: datetime
    wind_speed: float


def bucket_downtime(
    samples: Iterable[_Sample],
    red: float,
    start: datetime,
    end: datetime,
    open_since: datetime | None = None,
) -> Tuple[float, datetime | None]:
    """
    Seconds of [start, end) spent at or above red, plus the start of the window
    left open at the end of the bucket (None when closed). Samples must be sorted.
    """
    seconds = 0.0
    for sample in samples:
        ts = as_utc(sample.timestamp)
        if sample.wind_speed >= red:
            if open_since is None:
                open_since = ts
        elif open_since is not None:
            seconds += (ts - max(open_since, start)).total_seconds()
            open_since = None
    if open_since is not None:
        seconds += (end - max(open_since, start)).total_seconds()
    return max(seconds, 0.0), open_since


def accrue_bucket(
    db: Session,
    device_id: str,
    samples: Iterable[_Sample],
    red: float,
    start: datetime,
    end: datetime,
    previous_end: datetime | None,
) -> float:
    """
    Credit downtime for one bucket against the persisted open window and update
    the window row. Caller holds the device claim.
    """
    window = db.get(DowntimeWindow, device_id)
    open_since = as_utc(window.started_at) if window is not None else None

    previous_end = as_utc(previous_end)
    if open_since is not None and previous_end != start:
        # The window's last evidence is the previous bucket end, already credited.
        _log_closed(device_id, open_since, previous_end, "ledger_gap")
        open_since = None

    seconds, still_open = bucket_downtime(samples, red, start, end, open_since)

    if still_open is None:
        if window is not None:
            db.delete(window)
    elif window is None:
        db.add(DowntimeWindow(device_id=device_id, started_at=still_open))
    else:
        window.started_at = still_open
    return seconds


def close_stale_windows(db: Session, now: datetime, stale_minutes: int) -> int:
    """
    Close windows with no aggregated evidence inside the stale threshold, e.g.
    after a restart or a device dropping off the network. Downtime up to the
    last aggregated bucket end has already been credited, so closing is only a
    matter of dropping the marker.
    """
    cutoff = now - timedelta(minutes=stale_minutes)
    rows = db.execute(
        select(DowntimeWindow, DeviceAlertState.last_interval_end)
        .outerjoin(DeviceAlertState, DeviceAlertState.device_id == DowntimeWindow.device_id)
        .with_for_update(of=DowntimeWindow)
    ).all()

    closed = 0
    for window, last_interval_end in rows:
        started_at = as_utc(window.started_at)
        evidence = as_utc(last_interval_end) or started_at
        if evidence >= cutoff:
            continue
        _log_closed(window.device_id, started_at, evidence, "stale")
        db.delete(window)
        closed += 1
    return closed


def _log_closed(device_id: str, started_at: datetime, estimated_end: datetime | None, cause: str) -> None:
    duration = None
    if estimated_end is not None:
        duration = max((estimated_end - started_at).total_seconds(), 0.0)
    logger.info(
        json.dumps(
            {
                "event": "downtime_window_closed",
                "device_id": device_id,
                "cause": cause,
                "started_at": started_at.isoformat(),
                "estimated_end": estimated_end.isoformat() if estimated_end else None,
                "estimated_seconds": duration,
            }
        )
    )
