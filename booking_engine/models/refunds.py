from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String, Text

from booking_engine.models.base import Base, JSONType
from booking_engine.models.bookings import Booking


class Refund(Base):
    """
    One settlement adjustment against a booking.

    A booking may carry several refunds (e.g. a partial cancellation refund and
    a later security-deposit refund). Their sum never exceeds the booking's
    ``total_amount``; the original charge itself is never mutated.
    """

    __tablename__ = "refunds"
    __table_args__ = (Index("ix_refunds_status", "status"),)

    id = Column(String(36), primary_key=True)
    booking_id = Column(String(36), ForeignKey(Booking.id), nullable=False, index=True)
    guest_id = Column(String(64), nullable=False)
    host_id = Column(String(64), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    percentage = Column(Numeric(5, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    reason = Column(String(32), nullable=False)
    refund_type = Column(String(32), nullable=False)  # full | partial | security_deposit_only
    status = Column(String(16), nullable=False)
    reference = Column(String(40), nullable=False, unique=True)
    breakdown = Column(JSONType, nullable=True)
    admin_notes = Column(Text, nullable=True)
    approved_by = Column(String(64), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
