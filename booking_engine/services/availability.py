"""
Availability Ledger.

Daily listings are tracked as one cell per (resource, day); 24-hour stays and
service slots as exact instant spans in ``slot_holds``. Both representations
of the same resource are checked against each other, so a daily booking and a
24-hour stay can never overlap.

All functions take a ``Connection`` inside the caller's transaction. ``hold``
serialises on the resource's lock row and then swaps every cell from
``available`` with a conditional upsert; the first cell that does not swap
raises ``ResourceConflict`` and the caller's transaction rolls back, so a hold
is all-or-nothing.
"""

from datetime import date, datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import ColumnElement, and_, select, update
from sqlalchemy.engine import Connection

from booking_engine.db._upsert import dialect_insert
from booking_engine.errors import ResourceConflict
from booking_engine.metrics import cells_released, hold_conflicts
from booking_engine.models.availability import AvailabilityCell, ResourceLock, SlotHold
from booking_engine.schemas.availability import CellStatus, DateSpan, Span, TimeSpan
from booking_engine.schemas.resources import ResourceRef
from booking_engine.utils.datetime import start_of_day, utc_now

logger = structlog.get_logger(__name__)

AVAILABLE = CellStatus.AVAILABLE.value


def _lock_resource(conn: Connection, resource: ResourceRef) -> None:
    """Take the per-resource write lock for the rest of the transaction."""
    stmt = dialect_insert(conn, ResourceLock).values(
        resource_kind=resource.kind.value, resource_id=resource.id, version=1
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["resource_kind", "resource_id"],
        set_={"version": ResourceLock.version + 1},
    )
    conn.execute(stmt)


def _cells_in(resource: ResourceRef, days: list[date]) -> ColumnElement[bool]:
    return and_(
        AvailabilityCell.resource_kind == resource.kind.value,
        AvailabilityCell.resource_id == resource.id,
        AvailabilityCell.day.in_(days),
    )


def _slots_overlapping(resource: ResourceRef, start: datetime, end: datetime) -> ColumnElement[bool]:
    return and_(
        SlotHold.resource_kind == resource.kind.value,
        SlotHold.resource_id == resource.id,
        SlotHold.start_at < end,
        SlotHold.end_at > start,
    )


def _instant_bounds(span: Span) -> tuple[datetime, datetime]:
    if isinstance(span, DateSpan):
        return start_of_day(span.start), start_of_day(span.end)
    return span.start, span.end


def _taken_cells(conn: Connection, resource: ResourceRef, days: list[date]) -> list[date]:
    rows = conn.execute(
        select(AvailabilityCell.day)
        .where(_cells_in(resource, days))
        .where(AvailabilityCell.status != AVAILABLE)
    )
    return [row.day for row in rows]


def _taken_slots(conn: Connection, resource: ResourceRef, start: datetime, end: datetime) -> int:
    rows = conn.execute(
        select(SlotHold.id)
        .where(_slots_overlapping(resource, start, end))
        .where(SlotHold.status != AVAILABLE)
    )
    return len(rows.fetchall())


def _conflict(resource: ResourceRef, span: Span, **details: object) -> ResourceConflict:
    hold_conflicts.labels(resource_kind=resource.kind.value).inc()
    logger.info(
        "availability_conflict",
        resource_kind=resource.kind.value,
        resource_id=resource.id,
        span_start=str(span.start),
        span_end=str(span.end),
        **details,
    )
    return ResourceConflict(
        "requested span is not available",
        resource_kind=resource.kind.value,
        resource_id=resource.id,
        span_start=str(span.start),
        span_end=str(span.end),
    )


def hold(
    conn: Connection,
    resource: ResourceRef,
    span: Span,
    booking_id: str,
    status: CellStatus = CellStatus.HELD,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Atomically reserve every cell (or the slot) in ``span`` for ``booking_id``.

    Missing cells are treated as available and created on the fly. Must run
    inside a transaction: on conflict the caller's transaction has to roll
    back to undo any cells already swapped by this call.

    Args:
        conn: Active database connection (within transaction)
        resource: Listing or service being reserved
        span: Whole-day span (daily listings) or instant span (24-hour, slot)
        booking_id: Owning booking
        status: ``held`` while settlement is in flight, ``booked`` otherwise
        reason: Optional free-text note stored on the cells
        now: Timestamp for ``updated_at`` (default: current UTC time)

    Returns:
        int: Number of cells or slots reserved

    Raises:
        ResourceConflict: If any part of the span is held or booked
    """
    now = now or utc_now()
    _lock_resource(conn, resource)

    start, end = _instant_bounds(span)
    if _taken_slots(conn, resource, start, end):
        raise _conflict(resource, span, blocked_by="slot")

    if isinstance(span, TimeSpan):
        days = list(span.days())
        taken = _taken_cells(conn, resource, days)
        if taken:
            raise _conflict(resource, span, blocked_by="day", day=str(taken[0]))
        conn.execute(
            SlotHold.__table__.insert().values(
                resource_kind=resource.kind.value,
                resource_id=resource.id,
                start_at=span.start,
                end_at=span.end,
                status=status.value,
                booking_id=booking_id,
                reason=reason,
                created_at=now,
                updated_at=now,
            )
        )
        logger.debug("slot_held", resource_id=resource.id, booking_id=booking_id)
        return 1

    count = 0
    for day in span.days():
        stmt = dialect_insert(conn, AvailabilityCell).values(
            resource_kind=resource.kind.value,
            resource_id=resource.id,
            day=day,
            status=status.value,
            booking_id=booking_id,
            reason=reason,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["resource_kind", "resource_id", "day"],
            set_={
                "status": stmt.excluded.status,
                "booking_id": stmt.excluded.booking_id,
                "reason": stmt.excluded.reason,
                "updated_at": stmt.excluded.updated_at,
            },
            where=AvailabilityCell.status == AVAILABLE,
        )
        if conn.execute(stmt).rowcount != 1:
            raise _conflict(resource, span, blocked_by="day", day=str(day))
        count += 1

    logger.debug("cells_held", resource_id=resource.id, booking_id=booking_id, cells=count)
    return count


def release(
    conn: Connection,
    resource: ResourceRef,
    span: Span,
    booking_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Return the cells and slots in ``span`` to ``available``.

    Idempotent: cells that are already available, or (when ``booking_id`` is
    given) owned by another booking, are left untouched.

    Returns:
        int: Number of cells and slots released
    """
    now = now or utc_now()
    start, end = _instant_bounds(span)
    days = list(span.days())

    cell_stmt = (
        update(AvailabilityCell)
        .where(_cells_in(resource, days))
        .where(AvailabilityCell.status != AVAILABLE)
    )
    slot_stmt = (
        update(SlotHold)
        .where(_slots_overlapping(resource, start, end))
        .where(SlotHold.status != AVAILABLE)
    )
    if booking_id is not None:
        cell_stmt = cell_stmt.where(AvailabilityCell.booking_id == booking_id)
        slot_stmt = slot_stmt.where(SlotHold.booking_id == booking_id)

    released = conn.execute(
        cell_stmt.values(status=AVAILABLE, booking_id=None, reason=None, updated_at=now)
    ).rowcount
    released += conn.execute(
        slot_stmt.values(status=AVAILABLE, booking_id=None, reason=None, updated_at=now)
    ).rowcount

    cells_released.inc(released)
    return released


def release_booking(conn: Connection, booking_id: str, now: Optional[datetime] = None) -> int:
    """
    Release everything ``booking_id`` holds, wherever it is.

    Returns:
        int: Number of cells and slots released
    """
    now = now or utc_now()
    released = conn.execute(
        update(AvailabilityCell)
        .where(AvailabilityCell.booking_id == booking_id)
        .where(AvailabilityCell.status != AVAILABLE)
        .values(status=AVAILABLE, booking_id=None, reason=None, updated_at=now)
    ).rowcount
    released += conn.execute(
        update(SlotHold)
        .where(SlotHold.booking_id == booking_id)
        .where(SlotHold.status != AVAILABLE)
        .values(status=AVAILABLE, booking_id=None, reason=None, updated_at=now)
    ).rowcount

    if released:
        cells_released.inc(released)
        logger.debug("booking_cells_released", booking_id=booking_id, released=released)
    return released


def confirm_booking_cells(conn: Connection, booking_id: str, now: Optional[datetime] = None) -> int:
    """
    Flip a booking's ``held`` cells and slots to ``booked`` after settlement.

    Returns:
        int: Number of cells and slots flipped
    """
    now = now or utc_now()
    held, booked = CellStatus.HELD.value, CellStatus.BOOKED.value
    flipped = conn.execute(
        update(AvailabilityCell)
        .where(AvailabilityCell.booking_id == booking_id)
        .where(AvailabilityCell.status == held)
        .values(status=booked, updated_at=now)
    ).rowcount
    flipped += conn.execute(
        update(SlotHold)
        .where(SlotHold.booking_id == booking_id)
        .where(SlotHold.status == held)
        .values(status=booked, updated_at=now)
    ).rowcount
    return flipped


def is_available(conn: Connection, resource: ResourceRef, span: Span) -> bool:
    """True when no cell or slot overlapping ``span`` is held or booked."""
    start, end = _instant_bounds(span)
    if _taken_slots(conn, resource, start, end):
        return False
    return not _taken_cells(conn, resource, list(span.days()))


def owners_in_span(conn: Connection, resource: ResourceRef, span: Span) -> set[str]:
    """Booking ids currently holding any part of ``span``."""
    start, end = _instant_bounds(span)
    cell_owners = conn.execute(
        select(AvailabilityCell.booking_id)
        .where(_cells_in(resource, list(span.days())))
        .where(AvailabilityCell.status != AVAILABLE)
    )
    slot_owners = conn.execute(
        select(SlotHold.booking_id)
        .where(_slots_overlapping(resource, start, end))
        .where(SlotHold.status != AVAILABLE)
    )
    return {row.booking_id for row in [*cell_owners, *slot_owners] if row.booking_id}


def stale_held_booking_ids(conn: Connection, cutoff: datetime) -> set[Optional[str]]:
    """
    Owners of ``held`` cells or slots last touched before ``cutoff``.

    A ``None`` entry means a held row with no owner at all.
    """
    held = CellStatus.HELD.value
    cell_owners = conn.execute(
        select(AvailabilityCell.booking_id)
        .where(AvailabilityCell.status == held)
        .where(AvailabilityCell.updated_at < cutoff)
        .distinct()
    )
    slot_owners = conn.execute(
        select(SlotHold.booking_id)
        .where(SlotHold.status == held)
        .where(SlotHold.updated_at < cutoff)
        .distinct()
    )
    return {row.booking_id for row in [*cell_owners, *slot_owners]}


def release_unowned_holds(conn: Connection, cutoff: datetime, now: Optional[datetime] = None) -> int:
    """Release ``held`` rows older than ``cutoff`` that reference no booking."""
    now = now or utc_now()
    held = CellStatus.HELD.value
    released = conn.execute(
        update(AvailabilityCell)
        .where(AvailabilityCell.status == held)
        .where(AvailabilityCell.booking_id.is_(None))
        .where(AvailabilityCell.updated_at < cutoff)
        .values(status=AVAILABLE, reason=None, updated_at=now)
    ).rowcount
    released += conn.execute(
        update(SlotHold)
        .where(SlotHold.status == held)
        .where(SlotHold.booking_id.is_(None))
        .where(SlotHold.updated_at < cutoff)
        .values(status=AVAILABLE, reason=None, updated_at=now)
    ).rowcount
    if released:
        cells_released.inc(released)
    return released


def cells_for_booking(conn: Connection, booking_id: str) -> list[dict]:
    """Cells and slots currently owned by ``booking_id`` (diagnostics and tests)."""
    cells = conn.execute(
        select(AvailabilityCell.day, AvailabilityCell.status).where(
            AvailabilityCell.booking_id == booking_id
        )
    )
    slots = conn.execute(
        select(SlotHold.start_at, SlotHold.end_at, SlotHold.status).where(
            SlotHold.booking_id == booking_id
        )
    )
    return [dict(row._mapping) for row in cells] + [dict(row._mapping) for row in slots]


def day_span(check_in: date, check_out: date, extra_day: bool = False) -> DateSpan:
    """Night cells of a daily stay, plus the checkout day for late checkouts."""
    end = check_out + timedelta(days=1) if extra_day else check_out
    return DateSpan(start=check_in, end=end)
