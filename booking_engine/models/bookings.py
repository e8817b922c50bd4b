from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)

from booking_engine.models.base import Base, JSONType

Money = Numeric(12, 2)


class Booking(Base):
    """
    ORM model for the Booking aggregate.

    Rows are only ever mutated through the state machine's compare-and-swap
    transitions (``status`` + ``version``) and never deleted. Money columns are
    written once at creation; refunds live in the ``refunds`` table and only the
    running ``refund_amount`` total is kept here.
    """

    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint(
            "(listing_id IS NULL) <> (service_id IS NULL)",
            name="ck_bookings_one_resource",
        ),
        CheckConstraint("adults >= 1", name="ck_bookings_adults"),
        Index("ix_bookings_guest_id", "guest_id"),
        Index("ix_bookings_host_id", "host_id"),
        Index("ix_bookings_status_created", "status", "created_at"),
    )

    id = Column(String(36), primary_key=True)
    idempotency_key = Column(String(128), nullable=False)
    guest_id = Column(String(64), nullable=False)
    host_id = Column(String(64), nullable=False)
    listing_id = Column(String(64), nullable=True)
    service_id = Column(String(64), nullable=True)
    booking_type = Column(String(16), nullable=False)  # property | service
    booking_duration = Column(String(16), nullable=False)  # daily | 24hour | slot

    # Temporal shape
    check_in = Column(Date, nullable=True)
    check_out = Column(Date, nullable=True)
    check_in_time = Column(String(5), nullable=True)
    check_out_time = Column(String(5), nullable=True)
    slot_start = Column(DateTime(timezone=True), nullable=True)
    slot_end = Column(DateTime(timezone=True), nullable=True)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    ends_at = Column(DateTime(timezone=True), nullable=False)
    extension_hours = Column(Integer, nullable=False, default=0)
    host_buffer_hours = Column(Integer, nullable=False, default=0)

    # Guests
    adults = Column(Integer, nullable=False, default=1)
    children = Column(Integer, nullable=False, default=0)
    infants = Column(Integer, nullable=False, default=0)

    # Money
    currency = Column(String(3), nullable=False)
    base_amount = Column(Money, nullable=False)
    extra_guest_cost = Column(Money, nullable=False)
    cleaning_fee = Column(Money, nullable=False)
    service_fee = Column(Money, nullable=False)
    security_deposit = Column(Money, nullable=False)
    hourly_extension_cost = Column(Money, nullable=False)
    discount_amount = Column(Money, nullable=False)
    subtotal = Column(Money, nullable=False)
    platform_fee = Column(Money, nullable=False)
    gst = Column(Money, nullable=False)
    processing_fee = Column(Money, nullable=False)
    total_amount = Column(Money, nullable=False)
    host_earning = Column(Money, nullable=False)
    pricing_breakdown = Column(JSONType, nullable=False)
    coupon_code = Column(String(32), nullable=True)
    cancellation_policy = Column(String(16), nullable=False)

    # Lifecycle
    status = Column(String(16), nullable=False)
    payment_status = Column(String(24), nullable=False)
    transaction_id = Column(String(128), nullable=True)
    refund_amount = Column(Money, nullable=False)
    refund_status = Column(String(24), nullable=False, default="not_applicable")
    host_message = Column(Text, nullable=True)
    special_requests = Column(Text, nullable=True)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(64), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    checked_in = Column(Boolean, nullable=False, default=False)
    checked_in_at = Column(DateTime(timezone=True), nullable=True)
    checked_in_by = Column(String(64), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Audit
    request_metadata = Column(JSONType, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class IdempotencyKey(Base):
    """
    Claimed idempotency keys, unique per requester.

    Claiming is a single INSERT .. ON CONFLICT DO NOTHING inside the create
    transaction; the key is deleted again only when settlement fails, so the
    client can retry with the same key.
    """

    __tablename__ = "idempotency_keys"

    requester_id = Column(String(64), primary_key=True)
    key = Column(String(128), primary_key=True)
    booking_id = Column(String(36), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
