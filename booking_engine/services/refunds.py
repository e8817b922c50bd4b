"""
Refund ledger and the admin refund workflow.

Refunds are filed by the booking state machine inside the transaction of the
transition that causes them, always starting ``pending``. An admin then walks
them through ``approved -> processing -> completed`` (or ``rejected`` /
``failed``). The booking's running ``refund_amount`` is checked and bumped
under the booking's row lock, so the refunds of one booking can never add up
to more than its ``total_amount``.
"""

import secrets
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.engine import Connection, Engine

from booking_engine.errors import Inconsistent, InvalidTransition, NotFound, Unauthorized
from booking_engine.metrics import refund_amount, refunds_issued
from booking_engine.models.bookings import Booking as BookingRow
from booking_engine.models.refunds import Refund as RefundRow
from booking_engine.schemas.bookings import Actor, Booking, BookingRefundStatus, PaymentStatus, Role
from booking_engine.schemas.refunds import (
    VOID_REFUND_STATES,
    Refund,
    RefundQuote,
    RefundReason,
    RefundState,
)
from booking_engine.utils.datetime import utc_now
from booking_engine.utils.money import ZERO, round2

logger = structlog.get_logger(__name__)

OPEN_REFUND_STATES = (RefundState.PENDING, RefundState.APPROVED, RefundState.PROCESSING)

# from-states -> to-state for each admin operation
WORKFLOW = {
    "approve": ({RefundState.PENDING}, RefundState.APPROVED),
    "reject": ({RefundState.PENDING, RefundState.APPROVED}, RefundState.REJECTED),
    "mark_processing": ({RefundState.APPROVED}, RefundState.PROCESSING),
    "complete": ({RefundState.PROCESSING}, RefundState.COMPLETED),
    "fail": ({RefundState.PROCESSING}, RefundState.FAILED),
}


def generate_reference(now: datetime) -> str:
    """Human-quotable refund reference, e.g. ``REF-20250101120000-1A2B3C``."""
    return f"REF-{now:%Y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"


def get_refund(conn: Connection, refund_id: str) -> Refund:
    """
    Load a refund by id.

    Raises:
        NotFound: If no refund has this id
    """
    row = conn.execute(select(RefundRow).where(RefundRow.id == refund_id)).fetchone()
    if row is None:
        raise NotFound("refund not found", refund_id=refund_id)
    return Refund.model_validate(dict(row._mapping))


def list_refunds(
    conn: Connection,
    booking_id: Optional[str] = None,
    status: Optional[RefundState] = None,
    limit: int = 100,
) -> list[Refund]:
    """Refunds filtered by booking and/or state, oldest first."""
    stmt = select(RefundRow).order_by(RefundRow.created_at).limit(limit)
    if booking_id is not None:
        stmt = stmt.where(RefundRow.booking_id == booking_id)
    if status is not None:
        stmt = stmt.where(RefundRow.status == status.value)
    return [Refund.model_validate(dict(row._mapping)) for row in conn.execute(stmt)]


def refunded_total(
    conn: Connection,
    booking_id: str,
    completed_only: bool = False,
    reason: Optional[RefundReason] = None,
) -> Decimal:
    """Sum of refunds still counting against a booking's balance, optionally for one reason."""
    stmt = select(func.coalesce(func.sum(RefundRow.amount), 0)).where(
        RefundRow.booking_id == booking_id
    )
    if reason is not None:
        stmt = stmt.where(RefundRow.reason == reason.value)
    if completed_only:
        stmt = stmt.where(RefundRow.status == RefundState.COMPLETED.value)
    else:
        stmt = stmt.where(RefundRow.status.not_in([s.value for s in VOID_REFUND_STATES]))
    return round2(Decimal(str(conn.execute(stmt).scalar())))


def lock_booking(conn: Connection, booking_id: str, now: datetime) -> None:
    """
    Take the booking's row lock for the rest of the caller's transaction.

    Refund totals read after this call cannot change until the transaction ends.
    """
    conn.execute(update(BookingRow).where(BookingRow.id == booking_id).values(updated_at=now))


def issue_refund(
    conn: Connection,
    booking: Booking,
    quote: RefundQuote,
    now: Optional[datetime] = None,
    admin_notes: Optional[str] = None,
) -> Optional[Refund]:
    """
    File a ``pending`` refund for ``booking`` inside the caller's transaction.

    Zero-amount quotes file nothing.

    Args:
        conn: Active database connection (within transaction)
        booking: Booking being refunded
        quote: Output of the refund policy engine
        now: Filing time (default: current UTC time)
        admin_notes: Optional note stored on the refund

    Returns:
        Refund | None: The new refund row, or None for a zero quote

    Raises:
        Inconsistent: If the refund would push the booking's refunds past its total
    """
    if quote.amount <= ZERO:
        return None

    now = now or utc_now()
    amount = round2(quote.amount)

    lock_booking(conn, booking.id, now)
    current = conn.execute(
        select(BookingRow.refund_amount, BookingRow.total_amount).where(BookingRow.id == booking.id)
    ).fetchone()
    if current is None:
        raise NotFound("booking not found", booking_id=booking.id)

    new_total = round2(Decimal(str(current.refund_amount)) + amount)
    if new_total > round2(Decimal(str(current.total_amount))):
        logger.critical(
            "refund_exceeds_total",
            booking_id=booking.id,
            amount=str(amount),
            refunded=str(current.refund_amount),
            total_amount=str(current.total_amount),
        )
        raise Inconsistent(
            "refunds would exceed the booking total",
            booking_id=booking.id,
            amount=str(amount),
        )
    conn.execute(
        update(BookingRow)
        .where(BookingRow.id == booking.id)
        .values(refund_amount=new_total, refund_status=BookingRefundStatus.PENDING.value)
    )

    row = {
        "id": str(uuid.uuid4()),
        "booking_id": booking.id,
        "guest_id": booking.guest_id,
        "host_id": booking.host_id,
        "amount": amount,
        "percentage": quote.percentage,
        "currency": booking.currency,
        "reason": quote.reason.value,
        "refund_type": quote.refund_type.value,
        "status": RefundState.PENDING.value,
        "reference": generate_reference(now),
        "breakdown": {
            "policy": quote.policy,
            "description": quote.description,
            "hours_until_check_in": quote.hours_until_check_in,
            "total_amount": str(booking.total_amount),
        },
        "admin_notes": admin_notes,
        "created_at": now,
        "updated_at": now,
    }
    conn.execute(RefundRow.__table__.insert().values(**row))

    refunds_issued.labels(reason=quote.reason.value).inc()
    refund_amount.labels(reason=quote.reason.value).inc(float(amount))
    logger.info(
        "refund_issued",
        booking_id=booking.id,
        refund_id=row["id"],
        reference=row["reference"],
        amount=str(amount),
        percentage=str(quote.percentage),
        reason=quote.reason.value,
    )
    return Refund.model_validate(row)


def _require_admin(actor: Actor) -> None:
    if actor.role != Role.ADMIN:
        raise Unauthorized("refund workflow is restricted to admins", user_id=actor.user_id)


def _settle_booking(conn: Connection, refund: Refund, now: datetime) -> None:
    """Mirror a refund's final state onto its booking."""
    booking_row = conn.execute(
        select(BookingRow.total_amount).where(BookingRow.id == refund.booking_id)
    ).fetchone()
    if booking_row is None:
        raise Inconsistent("refund references a missing booking", refund_id=refund.id)

    values: dict = {"updated_at": now}
    if refund.status in VOID_REFUND_STATES:
        values["refund_amount"] = refunded_total(conn, refund.booking_id)
    live = conn.execute(
        select(func.count(RefundRow.id))
        .where(RefundRow.booking_id == refund.booking_id)
        .where(RefundRow.status.in_([s.value for s in OPEN_REFUND_STATES]))
    ).scalar()

    completed = refunded_total(conn, refund.booking_id, completed_only=True)
    if completed > ZERO:
        values["payment_status"] = (
            PaymentStatus.REFUNDED.value
            if completed >= round2(Decimal(str(booking_row.total_amount)))
            else PaymentStatus.PARTIALLY_REFUNDED.value
        )
    if not live:
        values["refund_status"] = (
            BookingRefundStatus.COMPLETED.value
            if completed > ZERO
            else BookingRefundStatus.REJECTED.value
        )

    conn.execute(update(BookingRow).where(BookingRow.id == refund.booking_id).values(**values))


def _advance(
    engine: Engine,
    operation: str,
    actor: Actor,
    refund_id: str,
    now: Optional[datetime] = None,
    **values,
) -> Refund:
    _require_admin(actor)
    sources, target = WORKFLOW[operation]
    now = now or utc_now()

    with engine.begin() as conn:
        current = get_refund(conn, refund_id)
        result = conn.execute(
            update(RefundRow)
            .where(RefundRow.id == refund_id)
            .where(RefundRow.status.in_([s.value for s in sources]))
            .values(status=target.value, updated_at=now, **values)
        )
        if result.rowcount != 1:
            raise InvalidTransition(
                f"cannot {operation} a {current.status.value} refund",
                current=current.status.value,
                target=target.value,
                refund_id=refund_id,
            )
        refund = get_refund(conn, refund_id)
        if target in VOID_REFUND_STATES or target == RefundState.COMPLETED:
            _settle_booking(conn, refund, now)

    logger.info(
        "refund_transition",
        refund_id=refund_id,
        operation=operation,
        status=target.value,
        admin_id=actor.user_id,
    )
    return refund


def approve_refund(
    engine: Engine, actor: Actor, refund_id: str, notes: Optional[str] = None, now: Optional[datetime] = None
) -> Refund:
    """pending -> approved."""
    now = now or utc_now()
    values = {"approved_by": actor.user_id, "approved_at": now}
    if notes is not None:
        values["admin_notes"] = notes
    return _advance(engine, "approve", actor, refund_id, now, **values)


def reject_refund(
    engine: Engine, actor: Actor, refund_id: str, notes: Optional[str] = None, now: Optional[datetime] = None
) -> Refund:
    """pending/approved -> rejected; the amount returns to the refundable balance."""
    values = {"admin_notes": notes} if notes is not None else {}
    return _advance(engine, "reject", actor, refund_id, now, **values)


def mark_refund_processing(
    engine: Engine, actor: Actor, refund_id: str, now: Optional[datetime] = None
) -> Refund:
    """approved -> processing (handed to the payment provider)."""
    return _advance(engine, "mark_processing", actor, refund_id, now)


def complete_refund(
    engine: Engine, actor: Actor, refund_id: str, now: Optional[datetime] = None
) -> Refund:
    """processing -> completed; updates the booking's payment status."""
    now = now or utc_now()
    return _advance(engine, "complete", actor, refund_id, now, processed_at=now)


def fail_refund(
    engine: Engine, actor: Actor, refund_id: str, notes: Optional[str] = None, now: Optional[datetime] = None
) -> Refund:
    """processing -> failed; the amount returns to the refundable balance."""
    now = now or utc_now()
    values = {"processed_at": now}
    if notes is not None:
        values["admin_notes"] = notes
    return _advance(engine, "fail", actor, refund_id, now, **values)
