from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)

from booking_engine.models.base import Base, JSONType


class Coupon(Base):
    """ORM model for discount coupons."""

    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(32), nullable=False, unique=True)  # stored upper-case
    discount_type = Column(String(16), nullable=False)  # percentage | fixed
    amount = Column(Numeric(12, 2), nullable=False)
    max_discount = Column(Numeric(12, 2), nullable=True)
    min_booking_amount = Column(Numeric(12, 2), nullable=True)
    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_to = Column(DateTime(timezone=True), nullable=False)
    usage_limit = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    applicable_listings = Column(JSONType, nullable=True)
    applicable_services = Column(JSONType, nullable=True)


class CouponRedemption(Base):
    """
    Per-user usage ledger for coupons (``usedBy``).

    The unique constraint is what enforces "at most once per user" under
    concurrent bookings.
    """

    __tablename__ = "coupon_redemptions"
    __table_args__ = (UniqueConstraint("coupon_id", "user_id", name="uq_coupon_redemption"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    coupon_id = Column(Integer, ForeignKey(Coupon.id, ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), nullable=False)
    booking_id = Column(String(36), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=False)
