from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from windwatch.config import get_settings
from windwatch.database import SessionLocal
from windwatch.models import DeviceAlertState, IntervalAggregate, Reading
from windwatch.udp import TelemetryProtocol, handle_datagram
from windwatch.worker import AggregationWorker, devices_needing_work

T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
DEVICE = "HT-ANEM-001"


def _seed(db, speeds) -> None:
    for minute, speed in enumerate(speeds):
        ts = T0 + timedelta(minutes=minute)
        db.add(Reading(device_id=DEVICE, timestamp=ts, wind_speed=speed, processed=False, received_at=ts))
    db.commit()


def test_devices_needing_work_includes_pending_and_elevated(db_session, make_device):
    make_device("HT-ANEM-001")
    make_device("HT-ANEM-002")
    make_device("HT-ANEM-003")
    _seed(db_session, [5.0])
    db_session.add(DeviceAlertState(device_id="HT-ANEM-002", level="RED"))
    db_session.add(DeviceAlertState(device_id="HT-ANEM-003", level="NORMAL"))
    db_session.commit()

    assert devices_needing_work(db_session) == ["HT-ANEM-001", "HT-ANEM-002"]


def test_worker_tick_aggregates_and_notifies(db_session, make_device, delivery):
    make_device(contacts=1)
    _seed(db_session, [25.0, 26.0])
    worker = AggregationWorker(get_settings(), delivery, clock=lambda: T0 + timedelta(minutes=12))

    async def scenario():
        await worker.tick()
        await worker.drain()

    asyncio.run(scenario())

    with SessionLocal() as db:
        aggregate = db.scalars(select(IntervalAggregate)).one()
        assert aggregate.alert_level == "AMBER"
    assert len(delivery.sent) == 1

    asyncio.run(scenario())
    assert len(delivery.sent) == 1


def test_slow_device_does_not_hold_up_the_others(delivery):
    release = threading.Event()
    calls = {"fast": 0, "slow": 0}

    def device_tick(device_id, now):
        calls[device_id] += 1
        if device_id == "slow":
            release.wait(timeout=5)

    worker = AggregationWorker(get_settings(), delivery, clock=lambda: T0)
    worker._list_devices = lambda: ["fast", "slow"]
    worker._housekeeping = lambda now: None
    worker._device_tick = device_tick

    async def scenario():
        for _ in range(4):
            await worker.tick()
            fast = worker._device_tasks.get("fast")
            if fast is not None:
                await fast
        assert worker.in_flight() == {"slow"}
        release.set()
        await worker.drain()
        assert worker.in_flight() == set()

    asyncio.run(scenario())
    assert calls == {"fast": 4, "slow": 1}


def test_worker_start_and_stop():
    async def scenario():
        worker = AggregationWorker(get_settings(), delivery=None, clock=lambda: T0)
        worker.tick = _noop
        await worker.start()
        assert worker.running
        await worker.stop()
        assert not worker.running

    asyncio.run(scenario())


async def _noop():
    return None


def test_udp_datagram_is_staged(make_device):
    make_device()
    data = b'{"deviceId": "HT-ANEM-001", "timestamp": "2026-03-02T10:00:00Z", "windSpeed": 9.5, "gps": "1,2"}'

    assert handle_datagram(data).status == "ok"
    assert handle_datagram(data).status == "duplicate"
    assert handle_datagram(b"\x00garbage").status == "rejected"

    with SessionLocal() as db:
        assert len(db.scalars(select(Reading)).all()) == 1


def test_udp_handler_crash_is_logged(caplog):
    def broken_factory():
        raise RuntimeError("connection pool exhausted")

    def crashed():
        return [r for r in caplog.records if "udp_handler_crashed" in r.getMessage()]

    async def scenario():
        protocol = TelemetryProtocol(broken_factory)
        protocol.datagram_received(b"{}", ("127.0.0.1", 8125))
        for _ in range(100):
            if crashed():
                break
            await asyncio.sleep(0.01)

    with caplog.at_level(logging.ERROR, logger="windwatch.udp"):
        asyncio.run(scenario())

    assert len(crashed()) == 1
    assert "connection pool exhausted" in crashed()[0].getMessage()
