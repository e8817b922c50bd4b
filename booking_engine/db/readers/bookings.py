from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection

from booking_engine.models.bookings import Booking as BookingRow
from booking_engine.models.bookings import IdempotencyKey
from booking_engine.schemas.bookings import Booking, BookingStatus


def get_booking(conn: Connection, booking_id: str) -> Optional[Booking]:
    """
    Fetch a booking with its pricing snapshot.

    Args:
        conn (Connection): An active SQLAlchemy database connection.
        booking_id (str): Booking id

    Returns:
        Optional[Booking]: The booking, or None if not found
    """
    row = conn.execute(select(BookingRow).where(BookingRow.id == booking_id)).fetchone()
    return Booking.model_validate(dict(row._mapping)) if row else None


def get_booking_by_idempotency_key(
    conn: Connection, requester_id: str, key: str
) -> Optional[Booking]:
    """
    Resolve a claimed idempotency key to the booking it created.

    Args:
        conn (Connection): An active SQLAlchemy database connection.
        requester_id (str): Guest who sent the request
        key (str): Client or server generated idempotency key

    Returns:
        Optional[Booking]: The original booking, or None if the key is unclaimed
    """
    row = conn.execute(
        select(BookingRow)
        .join(IdempotencyKey, IdempotencyKey.booking_id == BookingRow.id)
        .where(IdempotencyKey.requester_id == requester_id)
        .where(IdempotencyKey.key == key)
    ).fetchone()
    return Booking.model_validate(dict(row._mapping)) if row else None


def find_bookings(
    conn: Connection,
    status: BookingStatus,
    created_before: Optional[datetime] = None,
    ended_before: Optional[datetime] = None,
    limit: int = 500,
) -> list[Booking]:
    """
    List bookings in one state, oldest first.

    Args:
        conn (Connection): An active SQLAlchemy database connection.
        status (BookingStatus): State to filter on
        created_before (datetime, optional): Only bookings created before this instant
        ended_before (datetime, optional): Only bookings whose stay ended at or before this instant
        limit (int): Maximum rows to return

    Returns:
        list[Booking]: Matching bookings
    """
    stmt = (
        select(BookingRow)
        .where(BookingRow.status == status.value)
        .order_by(BookingRow.created_at)
        .limit(limit)
    )
    if created_before is not None:
        stmt = stmt.where(BookingRow.created_at < created_before)
    if ended_before is not None:
        stmt = stmt.where(BookingRow.ends_at <= ended_before)
    return [Booking.model_validate(dict(row._mapping)) for row in conn.execute(stmt)]


def get_booking_statuses(conn: Connection, booking_ids: list[str]) -> dict[str, BookingStatus]:
    """Map each existing booking id to its current status."""
    if not booking_ids:
        return {}
    rows = conn.execute(
        select(BookingRow.id, BookingRow.status).where(BookingRow.id.in_(booking_ids))
    )
    return {row.id: BookingStatus(row.status) for row in rows}
