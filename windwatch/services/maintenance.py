from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, or_
from sqlalchemy.orm import Session

from ..models import ActionToken, SnoozeState

logger = logging.getLogger("windwatch.maintenance")

RETENTION = timedelta(days=1)


@dataclass(frozen=True)
class CleanupResult:
    tokens_deleted: int
    snoozes_deleted: int


def cleanup_notification_tables(db: Session, now: datetime) -> CleanupResult:
    """Drop spent tokens and long-expired snoozes. Events and history are kept."""
    cutoff = now - RETENTION
    tokens = db.execute(
        delete(ActionToken).where(
            or_(
                ActionToken.used_at < cutoff,
                ActionToken.revoked_at < cutoff,
                ActionToken.expires_at < cutoff,
            )
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    snoozes = db.execute(
        delete(SnoozeState).where(SnoozeState.snoozed_until < cutoff).execution_options(synchronize_session=False)
    ).rowcount

    result = CleanupResult(tokens_deleted=tokens or 0, snoozes_deleted=snoozes or 0)
    if result.tokens_deleted or result.snoozes_deleted:
        logger.info(
            json.dumps(
                {
                    "event": "notification_cleanup",
                    "tokens_deleted": result.tokens_deleted,
                    "snoozes_deleted": result.snoozes_deleted,
                }
            )
        )
    return result
