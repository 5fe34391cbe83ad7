from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db_utils import as_utc, dialect_insert
from ..models import ActionToken, Device, NotificationContact, NotificationEvent, NotificationHistory, SnoozeState
from .dispatcher import lock_contact

logger = logging.getLogger("windwatch.acknowledgements")

ACKNOWLEDGE = "acknowledge"
SNOOZE_1H = "snooze_1h"
SNOOZE_TODAY = "snooze_today"
ACTIONS = (ACKNOWLEDGE, SNOOZE_1H, SNOOZE_TODAY)

UNIFORM_REJECTION = "Invalid or expired link"


class TokenRejected(Exception):
    """Raised for every unusable link. The message never says why."""

    def __init__(self, reason: str):
        super().__init__(UNIFORM_REJECTION)
        self.reason = reason


@dataclass(frozen=True)
class AcknowledgementResult:
    action: str
    device_id: str
    contact_id: int
    event_id: int
    snoozed_until: datetime | None


@dataclass(frozen=True)
class TokenDetails:
    token_id: str
    action: str
    device_id: str
    device_name: str
    location: str | None
    alert_level: str
    wind_speed: float
    notification_id: int
    expires_at: datetime


@dataclass(frozen=True)
class UnsubscribeResult:
    device_id: str
    contact_id: int


def snooze_until(action: str, now: datetime, tz: ZoneInfo) -> datetime | None:
    """End of the snooze an action grants, in UTC; None for a plain acknowledgement."""
    if action == SNOOZE_1H:
        return now + timedelta(hours=1)
    if action == SNOOZE_TODAY:
        local = now.astimezone(tz)
        next_midnight = datetime.combine(local.date() + timedelta(days=1), datetime.min.time(), tzinfo=tz)
        return as_utc(next_midnight)
    return None


def redeem_token(
    db: Session,
    token_id: str,
    action: str,
    now: datetime,
    *,
    snooze_timezone: str = "UTC",
) -> AcknowledgementResult:
    """
    Spend a one-time action token. On success the token is marked used, the
    contact's snooze is set (for snooze actions), the event is stamped as
    acknowledged and a history row is appended, all in the caller's transaction.
    """
    if action not in ACTIONS:
        _reject(token_id, "unknown_action")

    token = _usable_token(db, token_id, now, lock=True)
    if action != ACKNOWLEDGE and action != token.action:
        _reject(token_id, "action_mismatch")

    # Same lock the dispatcher takes before reading the snooze.
    lock_contact(db, token.contact_id)

    token.used_at = now
    until = snooze_until(action, now, ZoneInfo(snooze_timezone))
    if until is not None:
        db.execute(
            dialect_insert(db, SnoozeState)
            .values(device_id=token.device_id, contact_id=token.contact_id, snoozed_until=until, updated_at=now)
            .on_conflict_do_update(
                index_elements=["device_id", "contact_id"],
                set_={"snoozed_until": until, "updated_at": now},
            )
        )

    event = db.get(NotificationEvent, token.event_id)
    if event is not None and event.acknowledged_at is None:
        event.acknowledged_at = now
        event.acknowledged_action = action

    db.add(
        NotificationHistory(
            event_id=token.event_id,
            device_id=token.device_id,
            contact_id=token.contact_id,
            kind="ACKNOWLEDGED",
            action=action,
            token_id=token.id,
            created_at=now,
        )
    )
    db.flush()

    logger.info(
        json.dumps(
            {
                "event": "token_redeemed",
                "device_id": token.device_id,
                "contact_id": token.contact_id,
                "notification_id": token.event_id,
                "action": action,
                "snoozed_until": until.isoformat() if until else None,
            }
        )
    )
    return AcknowledgementResult(
        action=action,
        device_id=token.device_id,
        contact_id=token.contact_id,
        event_id=token.event_id,
        snoozed_until=until,
    )


def describe_token(db: Session, token_id: str, now: datetime) -> TokenDetails:
    """Read-only view of a link, for a confirmation page. Nothing is spent or written."""
    token = _usable_token(db, token_id, now, lock=False)
    event = db.get(NotificationEvent, token.event_id)
    device = db.get(Device, token.device_id)
    return TokenDetails(
        token_id=token.id,
        action=token.action,
        device_id=token.device_id,
        device_name=device.device_name if device is not None else token.device_id,
        location=device.location if device is not None else None,
        alert_level=event.alert_level,
        wind_speed=event.wind_speed,
        notification_id=event.id,
        expires_at=as_utc(token.expires_at),
    )


def unsubscribe_contact(db: Session, unsubscribe_key: str) -> UnsubscribeResult:
    """
    Remove the contact owning this key. Its events, tokens and snoozes go with it.
    Does not commit.
    """
    contact = db.execute(
        select(NotificationContact)
        .where(NotificationContact.unsubscribe_key == unsubscribe_key)
        .with_for_update()
    ).scalar_one_or_none()
    if contact is None:
        _reject(unsubscribe_key, "unknown_unsubscribe_key")

    result = UnsubscribeResult(device_id=contact.device_id, contact_id=contact.id)
    db.delete(contact)
    db.flush()
    logger.info(json.dumps({"event": "contact_unsubscribed", "device_id": result.device_id, "contact_id": result.contact_id}))
    return result


def _usable_token(db: Session, token_id: str, now: datetime, *, lock: bool) -> ActionToken:
    query = select(ActionToken).where(ActionToken.id == token_id).execution_options(populate_existing=True)
    if lock:
        query = query.with_for_update()
    token = db.execute(query).scalar_one_or_none()
    if token is None:
        _reject(token_id, "not_found")
    if token.used_at is not None:
        _reject(token_id, "already_used")
    if token.revoked_at is not None:
        _reject(token_id, "revoked")
    if as_utc(token.expires_at) <= now:
        _reject(token_id, "expired")
    return token


def _reject(token_id: str, reason: str) -> None:
    logger.warning(json.dumps({"event": "token_rejected", "token_prefix": token_id[:8], "reason": reason}))
    raise TokenRejected(reason)
