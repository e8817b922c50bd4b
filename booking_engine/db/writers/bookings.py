from datetime import datetime
from typing import Any, Iterable

import structlog
from sqlalchemy import delete, update
from sqlalchemy.engine import Connection

from booking_engine.db._upsert import dialect_insert
from booking_engine.models.bookings import Booking as BookingRow
from booking_engine.models.bookings import IdempotencyKey
from booking_engine.schemas.bookings import BookingStatus

logger = structlog.get_logger(__name__)


def claim_idempotency_key(
    conn: Connection, requester_id: str, key: str, booking_id: str, now: datetime
) -> bool:
    """
    Atomically claim ``key`` for ``booking_id``.

    A single INSERT .. ON CONFLICT DO NOTHING, so two retries of the same
    request racing each other cannot both win.

    Args:
        conn: Active database connection (within transaction)
        requester_id: Guest who sent the request
        key: Idempotency key
        booking_id: Booking the key will point at
        now: Claim timestamp

    Returns:
        bool: True if this call claimed the key, False if it was already taken
    """
    stmt = dialect_insert(conn, IdempotencyKey).values(
        requester_id=requester_id, key=key, booking_id=booking_id, created_at=now
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=["requester_id", "key"])
    return conn.execute(stmt).rowcount == 1


def release_idempotency_key(conn: Connection, requester_id: str, key: str, booking_id: str) -> None:
    """Free a key whose booking never settled, so the client can retry with it."""
    conn.execute(
        delete(IdempotencyKey)
        .where(IdempotencyKey.requester_id == requester_id)
        .where(IdempotencyKey.key == key)
        .where(IdempotencyKey.booking_id == booking_id)
    )


def insert_booking(conn: Connection, row: dict[str, Any]) -> None:
    """
    Insert a new booking row.

    Args:
        conn: Active database connection (within transaction)
        row: Column values; ``version`` defaults to 1
    """
    row.setdefault("version", 1)
    conn.execute(BookingRow.__table__.insert().values(**row))
    logger.debug("booking_inserted", booking_id=row["id"], status=row["status"])


def transition_booking(
    conn: Connection,
    booking_id: str,
    from_statuses: Iterable[BookingStatus],
    expected_version: int,
    now: datetime,
    **values: Any,
) -> bool:
    """
    Compare-and-swap a booking out of one of ``from_statuses``.

    The update only applies if the row still has the status and version the
    caller read, so two concurrent transitions on the same booking cannot both
    succeed. Enum values in ``values`` are stored by value.

    Args:
        conn: Active database connection (within transaction)
        booking_id: Booking to update
        from_statuses: Statuses the booking must currently be in
        expected_version: Version the caller read
        now: ``updated_at`` timestamp
        **values: Column values to set (typically ``status`` and timestamps)

    Returns:
        bool: True if the row was updated
    """
    values = {k: getattr(v, "value", v) for k, v in values.items()}
    result = conn.execute(
        update(BookingRow)
        .where(BookingRow.id == booking_id)
        .where(BookingRow.status.in_([s.value for s in from_statuses]))
        .where(BookingRow.version == expected_version)
        .values(version=BookingRow.version + 1, updated_at=now, **values)
    )
    return result.rowcount == 1
