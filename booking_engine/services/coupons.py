"""
Coupon validation, discount computation and the per-user redemption ledger.

Validation happens before pricing; redemption happens inside the booking
creation transaction, where the unique (coupon, user) constraint closes the
race between two concurrent bookings by the same user.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import delete, exists, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from booking_engine.errors import ValidationError
from booking_engine.models.coupons import Coupon as CouponRow
from booking_engine.models.coupons import CouponRedemption
from booking_engine.schemas.coupons import Coupon, CouponCreatePayload, DiscountType
from booking_engine.schemas.resources import ResourceKind, ResourceRef
from booking_engine.utils.money import round2

logger = structlog.get_logger(__name__)


def compute_discount(coupon: Coupon, booking_amount: Decimal) -> Decimal:
    """
    Discount a coupon grants on ``booking_amount``.

    Percentage discounts are capped by ``max_discount``; no discount ever
    exceeds the amount it applies to.

    Args:
        coupon: Validated coupon
        booking_amount: Pre-discount host subtotal

    Returns:
        Decimal: Discount rounded to 2 places
    """
    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = booking_amount * coupon.amount / Decimal("100")
        if coupon.max_discount is not None:
            discount = min(discount, coupon.max_discount)
    else:
        discount = coupon.amount
    return round2(min(discount, booking_amount))


def get_coupon(conn: Connection, code: str) -> Optional[Coupon]:
    """Look up a coupon by code, case-insensitively."""
    row = conn.execute(select(CouponRow).where(CouponRow.code == code.upper())).fetchone()
    return Coupon.model_validate(dict(row._mapping)) if row else None


def has_redeemed(conn: Connection, coupon_id: int, user_id: str) -> bool:
    """True when ``user_id`` already appears in the coupon's usage ledger."""
    return bool(
        conn.execute(
            select(
                exists().where(
                    CouponRedemption.coupon_id == coupon_id,
                    CouponRedemption.user_id == user_id,
                )
            )
        ).scalar()
    )


def resolve_discount(
    conn: Connection,
    code: str,
    user_id: str,
    resource: ResourceRef,
    booking_amount: Decimal,
    now: datetime,
) -> tuple[Coupon, Decimal]:
    """
    Validate a coupon for this user and booking and compute its discount.

    Args:
        conn: Active database connection
        code: Coupon code as entered by the guest
        user_id: Guest applying the coupon
        resource: Listing or service being booked
        booking_amount: Pre-discount host subtotal
        now: Evaluation time

    Returns:
        tuple[Coupon, Decimal]: The coupon and the discount it grants

    Raises:
        ValidationError: If the coupon is unknown, inactive, expired, exhausted,
            already used by this user, below its minimum amount or not
            applicable to the resource
    """
    coupon = get_coupon(conn, code)
    if coupon is None or not coupon.is_active:
        raise ValidationError("invalid or expired coupon code", coupon_code=code)
    if not coupon.valid_from <= now <= coupon.valid_to:
        raise ValidationError("invalid or expired coupon code", coupon_code=code)
    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        raise ValidationError("coupon usage limit reached", coupon_code=code)
    if has_redeemed(conn, coupon.id, user_id):
        raise ValidationError("coupon already used by this user", coupon_code=code)
    if coupon.min_booking_amount is not None and booking_amount < coupon.min_booking_amount:
        raise ValidationError(
            f"minimum booking amount of {coupon.min_booking_amount} required",
            coupon_code=code,
        )

    applicable = (
        coupon.applicable_listings
        if resource.kind == ResourceKind.LISTING
        else coupon.applicable_services
    )
    if applicable and resource.id not in applicable:
        raise ValidationError(f"coupon is not applicable to this {resource.kind.value}", coupon_code=code)

    return coupon, compute_discount(coupon, booking_amount)


def redeem_coupon(
    conn: Connection, coupon: Coupon, user_id: str, booking_id: str, now: datetime
) -> None:
    """
    Record a redemption inside the caller's transaction.

    A concurrent redemption by the same user surfaces as an IntegrityError from
    the unique constraint and aborts the whole transaction.

    Raises:
        IntegrityError: If the user redeemed the coupon concurrently
        ValidationError: If the usage limit was reached concurrently
    """
    conn.execute(
        CouponRedemption.__table__.insert().values(
            coupon_id=coupon.id, user_id=user_id, booking_id=booking_id, used_at=now
        )
    )

    stmt = update(CouponRow).where(CouponRow.id == coupon.id)
    if coupon.usage_limit is not None:
        stmt = stmt.where(CouponRow.used_count < coupon.usage_limit)
    result = conn.execute(stmt.values(used_count=CouponRow.used_count + 1))
    if result.rowcount != 1:
        raise ValidationError("coupon usage limit reached", coupon_code=coupon.code)


def revoke_redemption(conn: Connection, coupon_code: str, booking_id: str) -> None:
    """Undo a redemption whose booking never settled."""
    coupon = get_coupon(conn, coupon_code)
    if coupon is None:
        return
    result = conn.execute(
        delete(CouponRedemption)
        .where(CouponRedemption.coupon_id == coupon.id)
        .where(CouponRedemption.booking_id == booking_id)
    )
    if result.rowcount:
        conn.execute(
            update(CouponRow)
            .where(CouponRow.id == coupon.id)
            .where(CouponRow.used_count > 0)
            .values(used_count=CouponRow.used_count - 1)
        )
        logger.info("coupon_redemption_revoked", coupon_code=coupon.code, booking_id=booking_id)


def create_coupon(engine: Engine, payload: CouponCreatePayload) -> Coupon:
    """
    Insert a new coupon (admin operation).

    Raises:
        ValidationError: If the code already exists or the window is inverted
    """
    if payload.valid_to <= payload.valid_from:
        raise ValidationError("coupon validity window is empty", coupon_code=payload.code)

    values = payload.model_dump()
    values["code"] = payload.code.upper()
    values["discount_type"] = payload.discount_type.value
    try:
        with engine.begin() as conn:
            conn.execute(CouponRow.__table__.insert().values(**values))
            coupon = get_coupon(conn, payload.code)
    except IntegrityError:
        raise ValidationError("coupon code already exists", coupon_code=payload.code)

    logger.info("coupon_created", coupon_code=values["code"])
    return coupon  # type: ignore[return-value]
