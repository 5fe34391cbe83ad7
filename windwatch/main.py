from __future__ import annotations

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .auth import require_admin_token, require_service_token
from .config import get_settings
from .database import Base, engine
from .db_utils import as_utc, utcnow
from .dependencies import get_db
from .models import Device, IntervalAggregate, NotificationContact, Threshold
from .schemas import (
    AcknowledgementResponse,
    AlertAction,
    ContactCreateRequest,
    ContactResponse,
    CounterListResponse,
    DeviceCreateRequest,
    DeviceResponse,
    IngestResponse,
    IntervalAggregateResponse,
    IntervalListResponse,
    ThresholdResponse,
    ThresholdUpdateRequest,
    TokenDetailsResponse,
    UnsubscribeResponse,
)
from .services.acknowledgements import (
    UNIFORM_REJECTION,
    TokenRejected,
    describe_token,
    redeem_token,
    unsubscribe_contact,
)
from .services.buffer import ingest_packet, read_counters
from .services.delivery import LoggingDeliveryClient
from .services.evaluator import AlertLevel, legacy_flags
from .udp import start_udp_listener
from .worker import AggregationWorker

logger = logging.getLogger("windwatch.api")
logging.basicConfig(level=logging.INFO)

settings = get_settings()

docs_enabled = settings.environment != "production"
DEFAULT_HISTORY_HOURS = 24


@asynccontextmanager
async def lifespan(app: FastAPI):
    worker = None
    udp_transport = None
    if settings.worker_enabled:
        worker = AggregationWorker(settings, LoggingDeliveryClient())
        await worker.start()
    if settings.udp_port is not None:
        udp_transport = await start_udp_listener(settings.udp_port)
    try:
        yield
    finally:
        if udp_transport is not None:
            udp_transport.close()
        if worker is not None:
            await worker.stop()


app = FastAPI(
    title="Wind Alert Pipeline API",
    version="0.1.0",
    docs_url="/docs" if docs_enabled else None,
    redoc_url="/redoc" if docs_enabled else None,
    openapi_url="/openapi.json" if docs_enabled else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.dashboard_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS", "HEAD"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)


_SECRET_PATH_PREFIXES = ("/ack/", "/unsubscribe/")


def _redacted_path(path: str) -> str:
    for prefix in _SECRET_PATH_PREFIXES:
        if path.startswith(prefix):
            suffix = "/details" if path.endswith("/details") else ""
            return f"{prefix}<secret>{suffix}"
    return path


@app.middleware("http")
async def request_logger(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    start_time = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        duration_ms = (time.perf_counter() - start_time) * 1000
        entry = {
            "event": "http_request",
            "request_id": request_id,
            "method": request.method,
            "path": _redacted_path(request.url.path),
            "status_code": 500,
            "duration_ms": round(duration_ms, 2),
            "device_id": getattr(request.state, "device_id", None),
        }
        logger.exception(json.dumps(entry))
        raise

    duration_ms = (time.perf_counter() - start_time) * 1000
    response.headers["X-Request-ID"] = request_id

    entry = {
        "event": "http_request",
        "request_id": request_id,
        "method": request.method,
        # Action tokens and unsubscribe keys travel in the path; keep them out of the log.
        "path": _redacted_path(request.url.path),
        "status_code": response.status_code,
        "duration_ms": round(duration_ms, 2),
        "device_id": getattr(request.state, "device_id", None),
    }
    logger.info(json.dumps(entry))
    return response


# Ensure the schema exists automatically only in non-production environments.
if settings.environment in {"development", "test"}:
    Base.metadata.create_all(bind=engine)


@app.get("/healthz", status_code=status.HTTP_200_OK)
def healthz(db: Session = Depends(get_db)) -> Dict[str, str]:
    db.execute(select(1))
    return {"status": "ok"}


@app.get("/readyz", status_code=status.HTTP_200_OK)
def readyz(db: Session = Depends(get_db)) -> Dict[str, int | str]:
    db.execute(select(Device.device_id).limit(1))
    return {"status": "ready", "bucketMinutes": settings.bucket_minutes}


@app.head("/readyz", status_code=status.HTTP_200_OK)
def readyz_head(db: Session = Depends(get_db)) -> Response:
    readyz(db)
    return Response(status_code=status.HTTP_200_OK)


@app.post("/internal/ingest/reading", response_model=IngestResponse, status_code=status.HTTP_200_OK)
def ingest_reading(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    authorization: str | None = Header(default=None),
) -> IngestResponse:
    require_service_token(authorization)
    request.state.device_id = payload.get("deviceId")
    result = ingest_packet(db, payload)
    db.commit()
    return IngestResponse(status=result.status, reason=result.reason)


@app.api_route("/ack/{token_id}", methods=["GET", "POST"], response_model=AcknowledgementResponse)
def acknowledge_alert(
    token_id: str,
    request: Request,
    action: str = Query(default=AlertAction.ACKNOWLEDGE.value),
    db: Session = Depends(get_db),
) -> AcknowledgementResponse:
    try:
        result = redeem_token(db, token_id, action, utcnow(), snooze_timezone=settings.snooze_timezone)
        db.commit()
    except TokenRejected:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=UNIFORM_REJECTION)
    request.state.device_id = result.device_id
    return AcknowledgementResponse(
        status="ok",
        action=AlertAction(result.action),
        deviceId=result.device_id,
        snoozedUntil=result.snoozed_until,
    )


@app.get("/ack/{token_id}/details", response_model=TokenDetailsResponse)
def token_details(token_id: str, request: Request, db: Session = Depends(get_db)) -> TokenDetailsResponse:
    """What a link would do, without spending it. Lets a landing page confirm before posting."""
    try:
        details = describe_token(db, token_id, utcnow())
    except TokenRejected:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=UNIFORM_REJECTION)
    request.state.device_id = details.device_id
    return TokenDetailsResponse(
        tokenId=details.token_id,
        action=AlertAction(details.action),
        deviceId=details.device_id,
        deviceName=details.device_name,
        location=details.location,
        alertLevel=details.alert_level,
        windSpeed=details.wind_speed,
        notificationId=details.notification_id,
        expiresAt=details.expires_at,
    )


@app.api_route("/unsubscribe/{unsubscribe_key}", methods=["GET", "POST"], response_model=UnsubscribeResponse)
def unsubscribe(unsubscribe_key: str, request: Request, db: Session = Depends(get_db)) -> UnsubscribeResponse:
    try:
        result = unsubscribe_contact(db, unsubscribe_key)
        db.commit()
    except TokenRejected:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=UNIFORM_REJECTION)
    request.state.device_id = result.device_id
    return UnsubscribeResponse(status="ok", deviceId=result.device_id)


# Admin Endpoints


@app.post("/admin/devices", response_model=DeviceResponse, status_code=status.HTTP_201_CREATED)
def create_device(
    payload: DeviceCreateRequest,
    db: Session = Depends(get_db),
    authorization: str | None = Header(default=None),
) -> DeviceResponse:
    """Register a device together with its alert thresholds."""
    require_admin_token(authorization)
    if db.get(Device, payload.device_id) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Device already exists")
    device = Device(
        device_id=payload.device_id,
        device_name=payload.device_name,
        location=payload.location,
        active=True,
    )
    device.threshold = Threshold(amber_threshold=payload.amber_threshold, red_threshold=payload.red_threshold)
    db.add(device)
    db.commit()
    logger.info(json.dumps({"event": "device_registered", "device_id": device.device_id}))
    return _device_response(device)


@app.put("/admin/devices/{device_id}/thresholds", response_model=ThresholdResponse, status_code=status.HTTP_200_OK)
def update_thresholds(
    device_id: str,
    payload: ThresholdUpdateRequest,
    db: Session = Depends(get_db),
    authorization: str | None = Header(default=None),
) -> ThresholdResponse:
    """Replace a device's thresholds. Takes effect from the next bucket closed."""
    require_admin_token(authorization)
    _get_device_or_404(db, device_id)
    threshold = db.get(Threshold, device_id)
    if threshold is None:
        threshold = Threshold(device_id=device_id)
        db.add(threshold)
    threshold.amber_threshold = payload.amber_threshold
    threshold.red_threshold = payload.red_threshold
    db.commit()
    logger.info(
        json.dumps(
            {
                "event": "thresholds_updated",
                "device_id": device_id,
                "amber_threshold": payload.amber_threshold,
                "red_threshold": payload.red_threshold,
            }
        )
    )
    return ThresholdResponse(
        device_id=device_id,
        amber_threshold=threshold.amber_threshold,
        red_threshold=threshold.red_threshold,
    )


@app.post("/admin/devices/{device_id}/contacts", response_model=ContactResponse, status_code=status.HTTP_201_CREATED)
def add_contact(
    device_id: str,
    payload: ContactCreateRequest,
    db: Session = Depends(get_db),
    authorization: str | None = Header(default=None),
) -> ContactResponse:
    require_admin_token(authorization)
    _get_device_or_404(db, device_id)
    contact = NotificationContact(device_id=device_id, email=payload.email, phone_number=payload.phone_number)
    db.add(contact)
    db.commit()
    logger.info(json.dumps({"event": "contact_added", "device_id": device_id, "contact_id": contact.id}))
    return ContactResponse(
        id=contact.id,
        device_id=contact.device_id,
        email=contact.email,
        phone_number=contact.phone_number,
    )


@app.get("/admin/counters", response_model=CounterListResponse, status_code=status.HTTP_200_OK)
def get_counters(
    db: Session = Depends(get_db),
    authorization: str | None = Header(default=None),
) -> CounterListResponse:
    """Dropped-packet, late-reading and forced-prune totals."""
    require_admin_token(authorization)
    return CounterListResponse(counters=read_counters(db))


@app.get("/api/devices/{device_id}/intervals", response_model=IntervalListResponse, status_code=status.HTTP_200_OK)
def list_intervals(
    device_id: str,
    request: Request,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    authorization: str | None = Header(default=None),
) -> IntervalListResponse:
    require_admin_token(authorization)
    request.state.device_id = device_id
    _get_device_or_404(db, device_id)

    end = as_utc(end) if end is not None else utcnow()
    start = as_utc(start) if start is not None else end - timedelta(hours=DEFAULT_HISTORY_HOURS)
    if start >= end:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start must be before end")

    window = (
        IntervalAggregate.device_id == device_id,
        IntervalAggregate.interval_start >= start,
        IntervalAggregate.interval_start < end,
    )
    rows = db.scalars(select(IntervalAggregate).where(*window).order_by(IntervalAggregate.interval_start)).all()
    total = db.scalar(select(func.coalesce(func.sum(IntervalAggregate.downtime_seconds), 0.0)).where(*window))
    return IntervalListResponse(
        deviceId=device_id,
        intervals=[_interval_response(row) for row in rows],
        totalDowntimeSeconds=float(total or 0.0),
    )


def _get_device_or_404(db: Session, device_id: str) -> Device:
    device = db.get(Device, device_id)
    if device is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
    return device


def _device_response(device: Device) -> DeviceResponse:
    return DeviceResponse(
        device_id=device.device_id,
        device_name=device.device_name,
        location=device.location,
        latitude=device.latitude,
        longitude=device.longitude,
        active=device.active,
        last_seen_at=device.last_seen_at,
    )


def _interval_response(row: IntervalAggregate) -> IntervalAggregateResponse:
    alert, amber, red = legacy_flags(AlertLevel[row.alert_level])
    return IntervalAggregateResponse(
        intervalStart=as_utc(row.interval_start),
        intervalEnd=as_utc(row.interval_end),
        avgWindSpeed=row.avg_wind_speed,
        maxWindSpeed=row.max_wind_speed,
        stdDeviation=row.std_deviation,
        sampleCount=row.sample_count,
        alertLevel=row.alert_level,
        alertTriggered=alert,
        amberAlertTriggered=amber,
        redAlertTriggered=red,
        downtimeSeconds=row.downtime_seconds,
    )
