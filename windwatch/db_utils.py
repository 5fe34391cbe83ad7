"""Database utility functions for cross-dialect compatibility."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import Session


def dialect_insert(db: Session, model):
    """Return dialect-appropriate insert statement for ON CONFLICT support.

    SQLAlchemy's insert().on_conflict_do_nothing() / on_conflict_do_update() require
    dialect-specific imports. This helper selects the right dialect based on the
    database connection.

    Args:
        db: SQLAlchemy session
        model: The model class to insert into

    Returns:
        Insert statement object with on_conflict_do_nothing() / on_conflict_do_update() support

    Example:
        stmt = dialect_insert(db, Reading).values(device_id="HT-ANEM-001", ...).on_conflict_do_nothing(
            index_elements=["device_id", "timestamp"]
        )
        db.execute(stmt)
    """
    # get_bind() reads the dialect without checking a connection out of the pool.
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert(model)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalise a datetime to aware UTC; SQLite hands back naive values."""
    if value is None:
        return None
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
