from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from booking_engine.schemas.pricing import PricingBreakdown
from booking_engine.schemas.refunds import RefundQuote
from booking_engine.schemas.resources import ResourceKind, ResourceRef
from booking_engine.utils.datetime import ensure_utc


class BookingStatus(str, Enum):
    PROCESSING = "processing"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.EXPIRED}
)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class BookingRefundStatus(str, Enum):
    NOT_APPLICABLE = "not_applicable"
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class Role(str, Enum):
    GUEST = "guest"
    HOST = "host"
    ADMIN = "admin"
    SYSTEM = "system"


class Actor(BaseModel, frozen=True):
    """Authenticated caller, supplied by the identity layer and trusted as-is."""

    user_id: str
    role: Role

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id="system", role=Role.SYSTEM)


class GuestCounts(BaseModel):
    adults: int = Field(1, ge=1)
    children: int = Field(0, ge=0)
    infants: int = Field(0, ge=0)

    @property
    def occupying(self) -> int:
        """Guests counted against capacity (infants excluded)."""
        return self.adults + self.children


class CreateBookingRequest(BaseModel):
    """
    Reservation request for exactly one listing or one service.

    The temporal fields that must be present depend on the resource's booking
    mode: ``check_in``/``check_out`` for daily listings, ``check_in_at`` for
    24-hour stays, ``slot_start``/``slot_end`` for services.
    """

    listing_id: Optional[str] = None
    service_id: Optional[str] = None
    check_in: Optional[date] = None
    check_out: Optional[date] = None
    check_in_at: Optional[datetime] = None
    slot_start: Optional[datetime] = None
    slot_end: Optional[datetime] = None
    extension_hours: int = 0
    guests: GuestCounts = Field(default_factory=GuestCounts)
    coupon_code: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, max_length=128)
    payment_method: str = "card"
    special_requests: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None

    @field_validator("check_in_at", "slot_start", "slot_end")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _exactly_one_resource(self) -> "CreateBookingRequest":
        if (self.listing_id is None) == (self.service_id is None):
            raise ValueError("exactly one of listing_id or service_id is required")
        return self

    @property
    def resource(self) -> ResourceRef:
        if self.listing_id is not None:
            return ResourceRef(kind=ResourceKind.LISTING, id=self.listing_id)
        return ResourceRef(kind=ResourceKind.SERVICE, id=self.service_id)  # type: ignore[arg-type]


class Booking(BaseModel):
    """Booking aggregate as returned to callers, with its pricing snapshot."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    idempotency_key: str
    guest_id: str
    host_id: str
    listing_id: Optional[str] = None
    service_id: Optional[str] = None
    booking_type: str
    booking_duration: str
    check_in: Optional[date] = None
    check_out: Optional[date] = None
    check_in_time: Optional[str] = None
    check_out_time: Optional[str] = None
    slot_start: Optional[datetime] = None
    slot_end: Optional[datetime] = None
    starts_at: datetime
    ends_at: datetime
    extension_hours: int = 0
    host_buffer_hours: int = 0
    adults: int
    children: int
    infants: int
    currency: str
    base_amount: Decimal
    extra_guest_cost: Decimal
    cleaning_fee: Decimal
    service_fee: Decimal
    security_deposit: Decimal
    hourly_extension_cost: Decimal
    discount_amount: Decimal
    subtotal: Decimal
    platform_fee: Decimal
    gst: Decimal
    processing_fee: Decimal
    total_amount: Decimal
    host_earning: Decimal
    pricing_breakdown: PricingBreakdown
    coupon_code: Optional[str] = None
    cancellation_policy: str
    status: BookingStatus
    payment_status: PaymentStatus
    transaction_id: Optional[str] = None
    refund_amount: Decimal
    refund_status: BookingRefundStatus
    host_message: Optional[str] = None
    special_requests: Optional[str] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    checked_in: bool = False
    checked_in_at: Optional[datetime] = None
    checked_in_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    request_metadata: Optional[dict[str, Any]] = None
    version: int
    created_at: datetime
    updated_at: datetime

    @field_validator(
        "slot_start",
        "slot_end",
        "starts_at",
        "ends_at",
        "accepted_at",
        "rejected_at",
        "cancelled_at",
        "checked_in_at",
        "completed_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def resource(self) -> ResourceRef:
        if self.listing_id is not None:
            return ResourceRef(kind=ResourceKind.LISTING, id=self.listing_id)
        return ResourceRef(kind=ResourceKind.SERVICE, id=self.service_id)  # type: ignore[arg-type]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class CancellationPreview(BaseModel):
    """What cancelling right now would do, without doing it."""

    booking_id: str
    allowed: bool
    reason: Optional[str] = None
    refund: RefundQuote
