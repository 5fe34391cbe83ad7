from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Sequence

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db_utils import as_utc
from ..models import (
    TOKEN_ACTIONS,
    ActionToken,
    Device,
    DeviceAlertState,
    IntervalAggregate,
    NotificationContact,
    NotificationEvent,
    NotificationHistory,
    SnoozeState,
)
from .delivery import ALERT_TEMPLATE, DeliveryClient, DeliveryResult
from .evaluator import AlertLevel

logger = logging.getLogger("windwatch.notifications")

SUPPRESSED_SNOOZED = "snoozed"
SUPPRESSED_DUPLICATE = "already_notified"

# A PENDING event older than this never reached delivery.
PENDING_GRACE = timedelta(minutes=5)


@dataclass
class DispatchSummary:
    device_id: str
    notified: int = 0
    snoozed: int = 0
    deduplicated: int = 0
    delivery_failed: int = 0


@dataclass
class RetrySummary:
    retried: int = 0
    delivered: int = 0
    abandoned: int = 0


def lock_contact(db: Session, contact_id: int) -> NotificationContact | None:
    """
    Serialise everything touching one (device, contact) pair: the dispatcher's
    snooze check and the acknowledgement handler's snooze upsert both take this lock.
    """
    return db.execute(
        select(NotificationContact)
        .where(NotificationContact.id == contact_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def current_episode(state: DeviceAlertState) -> tuple[AlertLevel | None, str | None]:
    level = AlertLevel.from_name(state.level)
    if level == AlertLevel.RED:
        return level, state.red_episode_id
    if level == AlertLevel.AMBER:
        return level, state.amber_episode_id
    return level, None


def suppression_reason(
    db: Session, state: DeviceAlertState, contact_id: int, now: datetime
) -> str | None:
    """
    None when the contact should be notified for the device's current episode.
    One notification per episode, unless a snooze has expired since the last one.
    """
    snooze = db.scalar(
        select(SnoozeState).where(
            SnoozeState.device_id == state.device_id,
            SnoozeState.contact_id == contact_id,
        )
    )
    snoozed_until = as_utc(snooze.snoozed_until) if snooze is not None else None
    if snoozed_until is not None and snoozed_until > now:
        return SUPPRESSED_SNOOZED

    level, episode_id = current_episode(state)
    if level == AlertLevel.RED:
        in_episode = NotificationEvent.episode_id == episode_id
    else:
        # A red notification also covers the amber episode around it.
        in_episode = NotificationEvent.amber_episode_id == episode_id
    latest = db.scalar(
        select(NotificationEvent)
        .where(NotificationEvent.contact_id == contact_id, in_episode)
        .order_by(NotificationEvent.created_at.desc(), NotificationEvent.id.desc())
        .limit(1)
    )
    if latest is None:
        return None
    if snoozed_until is not None and as_utc(latest.created_at) < snoozed_until <= now:
        return None
    return SUPPRESSED_DUPLICATE


def dispatch_device(
    db: Session,
    device_id: str,
    now: datetime,
    delivery: DeliveryClient,
    *,
    base_url: str,
    token_expiry: timedelta,
) -> DispatchSummary:
    """
    Notify every eligible contact of a device currently at AMBER or RED.
    Safe to re-run: each contact is decided and recorded in its own transaction.
    """
    summary = DispatchSummary(device_id=device_id)
    state = _load_state(db, device_id)
    if state is None:
        return summary
    level, _ = current_episode(state)
    if level is None or level < AlertLevel.AMBER:
        return summary

    contact_ids = list(
        db.scalars(
            select(NotificationContact.id)
            .where(NotificationContact.device_id == device_id)
            .order_by(NotificationContact.id)
        )
    )
    db.commit()

    for contact_id in contact_ids:
        try:
            outcome = _dispatch_contact(db, device_id, contact_id, now, token_expiry)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                json.dumps({"event": "dispatch_failed", "device_id": device_id, "contact_id": contact_id})
            )
            continue

        if outcome == SUPPRESSED_SNOOZED:
            summary.snoozed += 1
            continue
        if outcome == SUPPRESSED_DUPLICATE or outcome is None:
            summary.deduplicated += 1
            continue

        event, contact, tokens = outcome
        summary.notified += 1
        result = deliver_event(db, event, contact, tokens, now, delivery, base_url=base_url)
        db.commit()
        if not result.ok:
            summary.delivery_failed += 1
    return summary


def _load_state(db: Session, device_id: str) -> DeviceAlertState | None:
    return db.execute(
        select(DeviceAlertState)
        .where(DeviceAlertState.device_id == device_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _dispatch_contact(
    db: Session, device_id: str, contact_id: int, now: datetime, token_expiry: timedelta
):
    contact = lock_contact(db, contact_id)
    if contact is None:
        return None
    state = _load_state(db, device_id)
    level, episode_id = current_episode(state) if state is not None else (None, None)
    if level is None or level < AlertLevel.AMBER or episode_id is None:
        return None

    reason = suppression_reason(db, state, contact_id, now)
    if reason is not None:
        logger.info(
            json.dumps(
                {
                    "event": "notification_suppressed",
                    "device_id": device_id,
                    "contact_id": contact_id,
                    "episode_id": episode_id,
                    "reason": reason,
                }
            )
        )
        return reason

    event = NotificationEvent(
        device_id=device_id,
        contact_id=contact_id,
        episode_id=episode_id,
        amber_episode_id=state.amber_episode_id,
        alert_level=level.name,
        wind_speed=_latest_peak(db, device_id),
        created_at=now,
        delivery_status="PENDING",
        delivery_attempts=0,
    )
    db.add(event)
    db.flush()

    tokens = mint_tokens(db, event, now, token_expiry)
    _append_history(db, event, "DISPATCHED", now, detail=f"level={level.name}")
    db.flush()
    logger.info(
        json.dumps(
            {
                "event": "notification_created",
                "notification_id": event.id,
                "device_id": device_id,
                "contact_id": contact_id,
                "episode_id": episode_id,
                "alert_level": level.name,
            }
        )
    )
    return event, contact, tokens


def mint_tokens(db: Session, event: NotificationEvent, now: datetime, expiry: timedelta) -> List[ActionToken]:
    tokens = [
        ActionToken(
            id=secrets.token_hex(32),
            event_id=event.id,
            device_id=event.device_id,
            contact_id=event.contact_id,
            episode_id=event.episode_id,
            action=action,
            created_at=now,
            expires_at=now + expiry,
        )
        for action in TOKEN_ACTIONS
    ]
    db.add_all(tokens)
    return tokens


def action_links(base_url: str, tokens: Sequence[ActionToken]) -> Dict[str, str]:
    links = {token.action: f"{base_url}/ack/{token.id}?action={token.action}" for token in tokens}
    if tokens:
        # Plain acknowledgement rides on the first token.
        links["acknowledge"] = f"{base_url}/ack/{tokens[0].id}?action=acknowledge"
    return links


def deliver_event(
    db: Session,
    event: NotificationEvent,
    contact: NotificationContact,
    tokens: Sequence[ActionToken],
    now: datetime,
    delivery: DeliveryClient,
    *,
    base_url: str,
) -> DeliveryResult:
    """
    Hand one notification to the delivery collaborator. A failure flags the event
    for the retry path; the event and its tokens stay in place. Does not commit.
    """
    device = db.get(Device, event.device_id)
    variables: Dict[str, Any] = {
        "device_id": event.device_id,
        "device_name": device.device_name if device is not None else event.device_id,
        "location": (device.location if device is not None else None) or "Unknown Location",
        "alert_level": event.alert_level,
        "wind_speed": round(event.wind_speed, 1),
        "timestamp": as_utc(event.created_at).isoformat(),
        "links": action_links(base_url, tokens),
        "unsubscribe_url": f"{base_url}/unsubscribe/{contact.unsubscribe_key}",
    }

    try:
        result = delivery.send(contact.email, ALERT_TEMPLATE, variables)
    except Exception as err:  # collaborator faults must not stop evaluation
        result = DeliveryResult(ok=False, error=f"{err.__class__.__name__}: {err}")

    event.delivery_attempts += 1
    if result.ok:
        event.delivery_status = "SENT"
        event.last_delivery_error = None
    else:
        event.delivery_status = "FAILED"
        event.last_delivery_error = (result.error or "unknown error")[:1000]
        _append_history(db, event, "DELIVERY_FAILED", now, detail=event.last_delivery_error)
        logger.warning(
            json.dumps(
                {
                    "event": "delivery_failed",
                    "notification_id": event.id,
                    "device_id": event.device_id,
                    "contact_id": event.contact_id,
                    "attempts": event.delivery_attempts,
                    "error": event.last_delivery_error,
                }
            )
        )
    return result


def retry_failed_deliveries(
    db: Session,
    delivery: DeliveryClient,
    now: datetime,
    *,
    max_attempts: int,
    base_url: str,
    pending_grace: timedelta = PENDING_GRACE,
    limit: int = 100,
) -> RetrySummary:
    """
    Bounded retry path for notifications whose delivery failed, and for
    notifications recorded as PENDING but never handed to delivery (the
    process stopped between the commit and the send).
    """
    summary = RetrySummary()
    stranded = and_(
        NotificationEvent.delivery_status == "PENDING",
        NotificationEvent.created_at <= now - pending_grace,
    )
    events = db.scalars(
        select(NotificationEvent)
        .where(or_(NotificationEvent.delivery_status == "FAILED", stranded))
        .order_by(NotificationEvent.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).all()

    for event in events:
        contact = db.get(NotificationContact, event.contact_id)
        tokens = [token for token in event.tokens if _redeemable(token, now)]
        if contact is None or not tokens:
            _abandon(db, event, now, "episode_resolved" if contact is not None else "contact_removed")
            summary.abandoned += 1
            continue
        if event.delivery_attempts >= max_attempts:
            _abandon(db, event, now, "max_attempts")
            summary.abandoned += 1
            continue

        summary.retried += 1
        result = deliver_event(db, event, contact, tokens, now, delivery, base_url=base_url)
        if result.ok:
            summary.delivered += 1
        elif event.delivery_attempts >= max_attempts:
            _abandon(db, event, now, "max_attempts")
            summary.abandoned += 1
    db.commit()
    return summary


def _redeemable(token: ActionToken, now: datetime) -> bool:
    return token.used_at is None and token.revoked_at is None and as_utc(token.expires_at) > now


def _abandon(db: Session, event: NotificationEvent, now: datetime, cause: str) -> None:
    event.delivery_status = "ABANDONED"
    _append_history(db, event, "DELIVERY_ABANDONED", now, detail=cause)
    logger.error(
        json.dumps(
            {
                "event": "delivery_abandoned",
                "notification_id": event.id,
                "device_id": event.device_id,
                "contact_id": event.contact_id,
                "attempts": event.delivery_attempts,
                "cause": cause,
                "last_error": event.last_delivery_error,
            }
        )
    )


def _append_history(
    db: Session,
    event: NotificationEvent,
    kind: str,
    now: datetime,
    *,
    action: str | None = None,
    token_id: str | None = None,
    detail: str | None = None,
) -> None:
    db.add(
        NotificationHistory(
            event_id=event.id,
            device_id=event.device_id,
            contact_id=event.contact_id,
            kind=kind,
            action=action,
            token_id=token_id,
            detail=detail,
            created_at=now,
        )
    )


def _latest_peak(db: Session, device_id: str) -> float:
    peak = db.scalar(
        select(IntervalAggregate.max_wind_speed)
        .where(IntervalAggregate.device_id == device_id)
        .order_by(IntervalAggregate.interval_end.desc())
        .limit(1)
    )
    return float(peak) if peak is not None else 0.0
