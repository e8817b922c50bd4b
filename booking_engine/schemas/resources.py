from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from booking_engine.config import DEFAULT_CURRENCY, DEFAULT_HOST_BUFFER_HOURS


class ResourceKind(str, Enum):
    LISTING = "listing"
    SERVICE = "service"


class BookingMode(str, Enum):
    DAILY = "daily"
    TWENTY_FOUR_HOUR = "24hour"
    SLOT = "slot"


class CancellationPolicy(str, Enum):
    FLEXIBLE = "flexible"
    MODERATE = "moderate"
    STRICT = "strict"
    SUPER_STRICT = "super_strict"


class ResourceRef(BaseModel, frozen=True):
    """Identity of a bookable resource."""

    kind: ResourceKind
    id: str


class Tariff(BaseModel):
    """
    Host-set prices for a resource.

    ``base_price`` is nightly for daily listings and flat for services;
    ``base_price_24h`` is the fixed rate of a 24-hour stay.
    """

    base_price: Decimal = Field(..., ge=0)
    base_price_24h: Optional[Decimal] = Field(None, ge=0)
    extra_guest_price: Decimal = Field(Decimal("0"), ge=0)
    cleaning_fee: Decimal = Field(Decimal("0"), ge=0)
    service_fee: Decimal = Field(Decimal("0"), ge=0)
    security_deposit: Decimal = Field(Decimal("0"), ge=0)


class Resource(BaseModel):
    """
    Catalog entry as seen by the booking engine.

    Read-only here: tariff, cancellation policy, stay rules and host identity.
    """

    id: str
    kind: ResourceKind
    host_id: str
    booking_mode: BookingMode = BookingMode.DAILY
    tariff: Tariff
    cancellation_policy: CancellationPolicy = CancellationPolicy.MODERATE
    currency: str = DEFAULT_CURRENCY
    max_guests: Optional[int] = Field(None, ge=1)
    min_nights: int = Field(1, ge=1)
    min_hours: Optional[int] = Field(None, ge=1)
    max_hours: Optional[int] = Field(None, ge=1)
    check_in_time: str = Field("15:00", pattern=r"^\d{2}:\d{2}$")
    check_out_time: str = Field("11:00", pattern=r"^\d{2}:\d{2}$")
    host_buffer_hours: int = Field(DEFAULT_HOST_BUFFER_HOURS, ge=0)
    is_active: bool = True

    @model_validator(mode="after")
    def _mode_matches_kind(self) -> "Resource":
        if self.kind == ResourceKind.SERVICE and self.booking_mode != BookingMode.SLOT:
            raise ValueError("services are booked by time slot")
        if self.kind == ResourceKind.LISTING and self.booking_mode == BookingMode.SLOT:
            raise ValueError("listings are booked daily or by 24-hour stay")
        return self

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(kind=self.kind, id=self.id)
