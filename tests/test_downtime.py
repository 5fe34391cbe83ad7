from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from windwatch.db_utils import as_utc
from windwatch.models import DeviceAlertState, DowntimeWindow, IntervalAggregate, Reading
from windwatch.services.aggregator import aggregate_device
from windwatch.services.downtime import bucket_downtime, close_stale_windows

T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
WIDTH = timedelta(minutes=10)
DEVICE = "HT-ANEM-001"


def _samples(start: datetime, speeds):
    return [SimpleNamespace(timestamp=start + timedelta(minutes=i), wind_speed=s) for i, s in enumerate(speeds)]


def _add_readings(db, start: datetime, speeds) -> None:
    for index, speed in enumerate(speeds):
        ts = start + timedelta(minutes=index)
        db.add(Reading(device_id=DEVICE, timestamp=ts, wind_speed=speed, processed=False, received_at=ts))
    db.commit()


def _aggregate(db, now: datetime):
    return aggregate_device(db, DEVICE, now, width=WIDTH, grace=timedelta(seconds=60), escalate_after=5)


def _downtimes(db):
    rows = db.scalars(select(IntervalAggregate).order_by(IntervalAggregate.interval_start)).all()
    return [row.downtime_seconds for row in rows]


def test_window_closed_inside_bucket():
    seconds, still_open = bucket_downtime(_samples(T0, [18, 19, 21, 32, 33, 19, 5]), 30.0, T0, T0 + WIDTH)

    assert seconds == pytest.approx(120.0)
    assert still_open is None


def test_window_left_open_credits_to_bucket_end():
    seconds, still_open = bucket_downtime(_samples(T0, [10, 31, 35]), 30.0, T0, T0 + WIDTH)

    assert seconds == pytest.approx(540.0)
    assert still_open == T0 + timedelta(minutes=1)


def test_carried_window_only_credits_from_bucket_start():
    opened = T0 - timedelta(minutes=4)

    seconds, still_open = bucket_downtime(_samples(T0, [31, 12]), 30.0, T0, T0 + WIDTH, open_since=opened)

    assert seconds == pytest.approx(60.0)
    assert still_open is None


def test_no_red_samples_means_no_downtime():
    assert bucket_downtime(_samples(T0, [5, 10, 29.9]), 30.0, T0, T0 + WIDTH) == (0.0, None)


def test_downtime_across_buckets_adds_up_to_wall_clock(db_session, make_device):
    make_device()
    # Red from 10:07 through 10:14, first calm reading at 10:15.
    speeds = [10] * 7 + [31] * 8 + [10] * 10
    _add_readings(db_session, T0, speeds)

    _aggregate(db_session, T0 + timedelta(minutes=31))

    downtimes = _downtimes(db_session)
    assert downtimes == pytest.approx([180.0, 300.0, 0.0])
    assert sum(downtimes) == pytest.approx(480.0)
    assert db_session.get(DowntimeWindow, DEVICE) is None


def test_open_window_survives_between_passes(db_session, make_device):
    make_device()
    _add_readings(db_session, T0 + timedelta(minutes=5), [35, 35, 35, 35, 35])
    _aggregate(db_session, T0 + timedelta(minutes=11))

    window = db_session.get(DowntimeWindow, DEVICE, populate_existing=True)
    assert as_utc(window.started_at) == T0 + timedelta(minutes=5)

    _add_readings(db_session, T0 + WIDTH, [35, 35, 20])
    _aggregate(db_session, T0 + timedelta(minutes=21))

    assert _downtimes(db_session) == pytest.approx([300.0, 120.0])
    assert db_session.scalars(select(DowntimeWindow)).all() == []


def test_gap_in_bucket_ledger_closes_window(db_session, make_device):
    make_device()
    _add_readings(db_session, T0 + timedelta(minutes=8), [35, 35])
    _aggregate(db_session, T0 + timedelta(minutes=11))

    # Nothing reported for 10:10-10:30; the next bucket starts calm.
    _add_readings(db_session, T0 + 3 * WIDTH, [10, 10])
    _aggregate(db_session, T0 + timedelta(minutes=41))

    assert _downtimes(db_session) == pytest.approx([120.0, 0.0])
    assert db_session.scalars(select(DowntimeWindow)).all() == []


def test_stale_windows_are_closed(db_session, make_device):
    make_device("HT-ANEM-001")
    make_device("HT-ANEM-002")
    now = T0 + timedelta(hours=2)
    db_session.add_all(
        [
            DowntimeWindow(device_id="HT-ANEM-001", started_at=T0),
            DeviceAlertState(device_id="HT-ANEM-001", level="RED", last_interval_end=T0 + WIDTH),
            DowntimeWindow(device_id="HT-ANEM-002", started_at=now - timedelta(minutes=20)),
            DeviceAlertState(device_id="HT-ANEM-002", level="RED", last_interval_end=now - timedelta(minutes=10)),
        ]
    )
    db_session.commit()

    closed = close_stale_windows(db_session, now, stale_minutes=30)
    db_session.commit()

    assert closed == 1
    remaining = db_session.scalars(select(DowntimeWindow.device_id)).all()
    assert remaining == ["HT-ANEM-002"]
