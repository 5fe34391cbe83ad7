from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from windwatch.models import ActionToken, NotificationEvent, SnoozeState
from windwatch.services.dispatcher import mint_tokens
from windwatch.services.maintenance import cleanup_notification_tables

T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def test_cleanup_drops_spent_tokens_and_old_snoozes(db_session, make_device):
    device = make_device()
    contact_id = device.contacts[0].id
    event = NotificationEvent(
        device_id=device.device_id,
        contact_id=contact_id,
        episode_id="c" * 32,
        amber_episode_id="c" * 32,
        alert_level="AMBER",
        wind_speed=22.0,
        created_at=T0,
        delivery_status="SENT",
        delivery_attempts=1,
    )
    db_session.add(event)
    db_session.flush()
    used, fresh = mint_tokens(db_session, event, T0, timedelta(days=30))
    used.used_at = T0
    db_session.add(SnoozeState(device_id=device.device_id, contact_id=contact_id, snoozed_until=T0, updated_at=T0))
    db_session.commit()
    fresh_id = fresh.id

    nothing_yet = cleanup_notification_tables(db_session, T0 + timedelta(hours=12))
    assert (nothing_yet.tokens_deleted, nothing_yet.snoozes_deleted) == (0, 0)

    result = cleanup_notification_tables(db_session, T0 + timedelta(days=2))
    db_session.commit()

    assert result.tokens_deleted == 1
    assert result.snoozes_deleted == 1
    assert db_session.scalars(select(ActionToken.id)).all() == [fresh_id]
    assert db_session.scalars(select(SnoozeState.id)).all() == []
    # Events are history and stay.
    assert db_session.scalars(select(NotificationEvent.id)).all() == [event.id]
