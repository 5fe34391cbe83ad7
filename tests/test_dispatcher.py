from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from windwatch.models import ActionToken, NotificationContact, NotificationEvent, NotificationHistory, Reading
from windwatch.services.acknowledgements import redeem_token
from windwatch.services.aggregator import aggregate_device
from windwatch.services.dispatcher import _dispatch_contact, dispatch_device, retry_failed_deliveries

T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
WIDTH = timedelta(minutes=10)
DEVICE = "HT-ANEM-001"
BASE_URL = "https://alerts.example.test"


def _bucket(db, index: int, speeds) -> None:
    start = T0 + index * WIDTH
    for offset, speed in enumerate(speeds):
        ts = start + timedelta(minutes=offset)
        db.add(Reading(device_id=DEVICE, timestamp=ts, wind_speed=speed, processed=False, received_at=ts))
    db.commit()


def _tick(db, now: datetime, delivery):
    aggregate_device(db, DEVICE, now, width=WIDTH, grace=timedelta(seconds=60), escalate_after=5)
    return _dispatch(db, now, delivery)


def _dispatch(db, now: datetime, delivery):
    return dispatch_device(db, DEVICE, now, delivery, base_url=BASE_URL, token_expiry=timedelta(hours=24))


def _after(index: int, minutes: int = 1) -> datetime:
    return T0 + (index + 1) * WIDTH + timedelta(minutes=minutes)


def _events(db):
    return db.scalars(select(NotificationEvent).order_by(NotificationEvent.id)).all()


def test_three_elevated_buckets_notify_each_contact_once(db_session, make_device, delivery):
    make_device(contacts=2)
    for index in range(3):
        _bucket(db_session, index, [24.0, 25.0])
        _tick(db_session, _after(index), delivery)

    assert len(delivery.sent) == 2
    assert sorted(message["recipient"] for message in delivery.sent) == ["ops0@example.test", "ops1@example.test"]
    assert len(_events(db_session)) == 2


def test_escalation_to_red_notifies_again_but_dropping_back_to_amber_does_not(db_session, make_device, delivery):
    make_device()

    _bucket(db_session, 0, [24.0])
    _tick(db_session, _after(0), delivery)
    _bucket(db_session, 1, [35.0])
    _tick(db_session, _after(1), delivery)
    _bucket(db_session, 2, [24.0])
    _tick(db_session, _after(2), delivery)

    assert [message["variables"]["alert_level"] for message in delivery.sent] == ["AMBER", "RED"]


def test_straight_to_red_then_amber_is_one_notification(db_session, make_device, delivery):
    make_device()

    _bucket(db_session, 0, [35.0])
    _tick(db_session, _after(0), delivery)
    _bucket(db_session, 1, [24.0])
    _tick(db_session, _after(1), delivery)

    assert len(delivery.sent) == 1


def test_normal_device_is_never_notified(db_session, make_device, delivery):
    make_device()
    _bucket(db_session, 0, [5.0, 6.0])

    summary = _tick(db_session, _after(0), delivery)

    assert summary.notified == 0
    assert delivery.sent == []


def test_new_episode_after_recovery_notifies_again(db_session, make_device, delivery):
    make_device()
    _bucket(db_session, 0, [25.0])
    _tick(db_session, _after(0), delivery)
    _bucket(db_session, 1, [5.0])
    _tick(db_session, _after(1), delivery)
    _bucket(db_session, 2, [25.0])
    _tick(db_session, _after(2), delivery)

    assert len(delivery.sent) == 2
    first, second = _events(db_session)
    assert first.episode_id != second.episode_id


def test_snooze_1h_suppresses_until_it_lapses(db_session, make_device, delivery):
    make_device()
    _bucket(db_session, 0, [25.0])
    _tick(db_session, _after(0), delivery)
    token = db_session.scalars(select(ActionToken).where(ActionToken.action == "snooze_1h")).one()

    acked_at = T0 + timedelta(minutes=12)
    redeem_token(db_session, token.id, "snooze_1h", acked_at)
    db_session.commit()

    summary = _dispatch(db_session, acked_at + timedelta(minutes=59), delivery)
    assert summary.snoozed == 1
    assert len(delivery.sent) == 1

    summary = _dispatch(db_session, acked_at + timedelta(minutes=61), delivery)
    assert summary.notified == 1
    assert len(delivery.sent) == 2

    # And only once per lapse.
    _dispatch(db_session, acked_at + timedelta(minutes=62), delivery)
    assert len(delivery.sent) == 2


def test_acknowledge_alone_keeps_dedup(db_session, make_device, delivery):
    make_device()
    _bucket(db_session, 0, [25.0])
    _tick(db_session, _after(0), delivery)
    token = db_session.scalars(select(ActionToken)).first()

    redeem_token(db_session, token.id, "acknowledge", T0 + timedelta(minutes=12))
    db_session.commit()
    _dispatch(db_session, T0 + timedelta(hours=3), delivery)

    assert len(delivery.sent) == 1


def test_message_carries_action_links(db_session, make_device, delivery):
    make_device()
    _bucket(db_session, 0, [24.0, 33.0])
    _tick(db_session, _after(0), delivery)

    message = delivery.sent[0]
    assert message["template"] == "wind_alert"
    variables = message["variables"]
    assert variables["device_name"] == "Anemometer HT-ANEM-001"
    assert variables["wind_speed"] == 33.0
    links = variables["links"]
    assert set(links) == {"acknowledge", "snooze_1h", "snooze_today"}
    tokens = {t.action: t.id for t in db_session.scalars(select(ActionToken)).all()}
    assert links["snooze_1h"] == f"{BASE_URL}/ack/{tokens['snooze_1h']}?action=snooze_1h"
    assert links["snooze_today"].endswith("?action=snooze_today")
    key = db_session.scalar(select(NotificationContact.unsubscribe_key))
    assert variables["unsubscribe_url"] == f"{BASE_URL}/unsubscribe/{key}"


def test_failed_delivery_keeps_event_and_tokens_then_retries(db_session, make_device, delivery):
    make_device()
    delivery.fail_with = "mailbox unavailable"
    _bucket(db_session, 0, [25.0])

    summary = _tick(db_session, _after(0), delivery)

    assert summary.delivery_failed == 1
    event = _events(db_session)[0]
    assert event.delivery_status == "FAILED"
    assert event.delivery_attempts == 1
    assert event.last_delivery_error == "mailbox unavailable"
    assert len(db_session.scalars(select(ActionToken)).all()) == 2
    kinds = db_session.scalars(select(NotificationHistory.kind).order_by(NotificationHistory.id)).all()
    assert kinds == ["DISPATCHED", "DELIVERY_FAILED"]

    # Evaluation is not blocked and the episode is not re-notified.
    _dispatch(db_session, _after(0, minutes=2), delivery)
    assert len(_events(db_session)) == 1

    delivery.fail_with = None
    retry = retry_failed_deliveries(db_session, delivery, _after(0, minutes=3), max_attempts=5, base_url=BASE_URL)

    assert retry.delivered == 1
    assert event.delivery_status == "SENT"
    assert event.delivery_attempts == 2
    assert len(delivery.sent) == 1


def test_repeated_delivery_failure_is_abandoned(db_session, make_device, delivery):
    make_device()
    delivery.fail_with = "mailbox unavailable"
    _bucket(db_session, 0, [25.0])
    _tick(db_session, _after(0), delivery)

    retry = retry_failed_deliveries(db_session, delivery, _after(0, minutes=2), max_attempts=2, base_url=BASE_URL)

    assert retry.abandoned == 1
    event = _events(db_session)[0]
    assert event.delivery_status == "ABANDONED"
    assert event.delivery_attempts == 2


def test_delivery_exception_is_treated_as_failure(db_session, make_device):
    class Exploding:
        def send(self, recipient, template, variables):
            raise ConnectionError("relay refused")

    make_device()
    _bucket(db_session, 0, [25.0])

    summary = _tick(db_session, _after(0), Exploding())

    assert summary.delivery_failed == 1
    assert "relay refused" in _events(db_session)[0].last_delivery_error


def test_recovery_revokes_tokens_and_abandons_pending_retry(db_session, make_device, delivery):
    make_device()
    delivery.fail_with = "mailbox unavailable"
    _bucket(db_session, 0, [25.0])
    _tick(db_session, _after(0), delivery)

    _bucket(db_session, 1, [5.0])
    _tick(db_session, _after(1), delivery)

    tokens = db_session.scalars(select(ActionToken).execution_options(populate_existing=True)).all()
    assert tokens and all(token.revoked_at is not None for token in tokens)

    delivery.fail_with = None
    retry = retry_failed_deliveries(db_session, delivery, _after(1, minutes=2), max_attempts=5, base_url=BASE_URL)

    assert retry.abandoned == 1
    assert delivery.sent == []


def test_event_stranded_before_send_is_picked_up_by_retry(db_session, make_device, delivery):
    make_device()
    _bucket(db_session, 0, [25.0])
    aggregate_device(db_session, DEVICE, _after(0), width=WIDTH, grace=timedelta(seconds=60), escalate_after=5)
    contact_id = db_session.scalar(select(NotificationContact.id))

    # Recorded and committed, then the process stops before delivery.
    _dispatch_contact(db_session, DEVICE, contact_id, _after(0), timedelta(hours=24))
    db_session.commit()

    early = retry_failed_deliveries(db_session, delivery, _after(0, minutes=2), max_attempts=5, base_url=BASE_URL)
    assert early.retried == 0
    assert delivery.sent == []

    later = retry_failed_deliveries(db_session, delivery, _after(0, minutes=30), max_attempts=5, base_url=BASE_URL)

    assert later.delivered == 1
    assert len(delivery.sent) == 1
    assert [event.delivery_status for event in _events(db_session)] == ["SENT"]
    _dispatch(db_session, _after(0, minutes=31), delivery)
    assert len(delivery.sent) == 1
