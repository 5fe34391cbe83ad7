"""
Background worker that drives the pipeline on a fixed tick.

Each tick:
- closes downtime windows that lost their evidence
- retries failed or stranded deliveries
- prunes the raw buffer and expired tokens/snoozes
- starts an aggregate-then-dispatch pass for each device in its own thread

Device passes run as independent tasks. A device whose previous pass is still
running is skipped until that pass finishes, so one slow device never holds up
the rest.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import Settings
from .database import SessionLocal
from .db_utils import utcnow
from .models import DeviceAlertState
from .services.aggregator import aggregate_device, devices_with_pending_readings
from .services.buffer import prune_buffer
from .services.delivery import DeliveryClient
from .services.dispatcher import dispatch_device, retry_failed_deliveries
from .services.downtime import close_stale_windows
from .services.maintenance import cleanup_notification_tables

logger = logging.getLogger("windwatch.worker")


def run_device_tick(
    db: Session,
    device_id: str,
    now: datetime,
    settings: Settings,
    delivery: DeliveryClient,
) -> None:
    """Aggregate, then dispatch, for one device. Aggregation always runs first."""
    summary = aggregate_device(
        db,
        device_id,
        now,
        width=timedelta(minutes=settings.bucket_minutes),
        grace=timedelta(seconds=settings.bucket_grace_seconds),
        escalate_after=settings.aggregation_escalate_after,
    )
    if summary.failed_bucket is not None:
        return
    dispatch_device(
        db,
        device_id,
        now,
        delivery,
        base_url=settings.public_base_url,
        token_expiry=timedelta(hours=settings.token_expiry_hours),
    )


def devices_needing_work(db: Session) -> list[str]:
    elevated = db.scalars(select(DeviceAlertState.device_id).where(DeviceAlertState.level.in_(("AMBER", "RED"))))
    return sorted(set(devices_with_pending_readings(db)) | set(elevated))


def run_housekeeping(db: Session, now: datetime, settings: Settings, delivery: DeliveryClient) -> None:
    close_stale_windows(db, now, settings.stale_window_minutes)
    db.commit()
    retry_failed_deliveries(
        db,
        delivery,
        now,
        max_attempts=settings.delivery_max_attempts,
        base_url=settings.public_base_url,
    )
    prune_buffer(db, now, settings.raw_retention_minutes, settings.raw_hard_ceiling_minutes)
    cleanup_notification_tables(db, now)
    db.commit()


class AggregationWorker:
    def __init__(
        self,
        settings: Settings,
        delivery: DeliveryClient,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.delivery = delivery
        self.session_factory = session_factory
        self.clock = clock
        self.running = False
        self._task: Optional[asyncio.Task] = None
        self._device_tasks: Dict[str, asyncio.Task] = {}

    async def start(self) -> None:
        if self.running:
            logger.warning(json.dumps({"event": "worker_already_running"}))
            return
        self.running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(json.dumps({"event": "worker_started", "tick_seconds": self.settings.worker_tick_seconds}))

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        pending = list(self._device_tasks.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._device_tasks.clear()
        logger.info(json.dumps({"event": "worker_stopped", "cancelled_devices": len(pending)}))

    async def _loop(self) -> None:
        while self.running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(json.dumps({"event": "worker_tick_failed"}))
            await asyncio.sleep(self.settings.worker_tick_seconds)

    async def tick(self) -> None:
        """Start a pass for every device that has work. Does not wait for the passes to finish."""
        now = self.clock()
        try:
            await asyncio.to_thread(self._housekeeping, now)
        except Exception:
            logger.exception(json.dumps({"event": "housekeeping_failed"}))
        device_ids = await asyncio.to_thread(self._list_devices)
        for device_id in device_ids:
            if device_id in self._device_tasks:
                logger.info(json.dumps({"event": "device_still_running", "device_id": device_id}))
                continue
            task = asyncio.create_task(self._run_device(device_id, now))
            self._device_tasks[device_id] = task
            task.add_done_callback(lambda _, key=device_id: self._device_tasks.pop(key, None))

    async def drain(self) -> None:
        """Wait for every device pass currently running."""
        pending = list(self._device_tasks.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def in_flight(self) -> Set[str]:
        return set(self._device_tasks)

    async def _run_device(self, device_id: str, now: datetime) -> None:
        try:
            await asyncio.to_thread(self._device_tick, device_id, now)
        except Exception:
            logger.exception(json.dumps({"event": "device_tick_failed", "device_id": device_id}))

    def _list_devices(self) -> list[str]:
        with self.session_factory() as db:
            return devices_needing_work(db)

    def _device_tick(self, device_id: str, now: datetime) -> None:
        with self.session_factory() as db:
            run_device_tick(db, device_id, now, self.settings, self.delivery)

    def _housekeeping(self, now: datetime) -> None:
        with self.session_factory() as db:
            try:
                run_housekeeping(db, now, self.settings, self.delivery)
            except Exception:
                db.rollback()
                raise
