from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from booking_engine.config import DEFAULT_CURRENCY
from booking_engine.errors import Inconsistent
from booking_engine.utils.money import ZERO

# Late checkout / 24-hour extension tiers: hours -> share of the base rate
HOURLY_EXTENSION_RATES: dict[int, Decimal] = {
    6: Decimal("0.30"),
    12: Decimal("0.60"),
    18: Decimal("0.75"),
}


class PricingInput(BaseModel):
    """
    Everything the Pricing Engine needs, already resolved from the catalog.

    ``duration`` is the number of nights for daily stays and 1 for 24-hour
    stays and service slots.
    """

    model_config = ConfigDict(frozen=True)

    base_price: Decimal = Field(..., ge=0)
    duration: int = Field(1, ge=1)
    is_time_boxed: bool = False
    extra_guest_price: Decimal = Field(ZERO, ge=0)
    extra_guests: int = Field(0, ge=0)
    cleaning_fee: Decimal = Field(ZERO, ge=0)
    service_fee: Decimal = Field(ZERO, ge=0)
    security_deposit: Decimal = Field(ZERO, ge=0)
    extension_hours: int = 0
    discount_amount: Decimal = Field(ZERO, ge=0)
    currency: str = DEFAULT_CURRENCY

    @field_validator("extension_hours")
    @classmethod
    def _known_tier(cls, value: int) -> int:
        if value and value not in HOURLY_EXTENSION_RATES:
            raise ValueError(f"extension_hours must be one of {sorted(HOURLY_EXTENSION_RATES)}")
        return value


class PricingBreakdown(BaseModel):
    """
    Immutable priced breakdown, persisted once on the booking.

    Keeps every intermediate value so guest receipts, host payouts and the
    platform ledger each read their own subset without recomputing.
    """

    model_config = ConfigDict(frozen=True)

    base_price: Decimal
    duration: int
    total_hours: Optional[int] = None
    extra_guests: int
    base_amount: Decimal
    extra_guest_cost: Decimal
    cleaning_fee: Decimal
    service_fee: Decimal
    security_deposit: Decimal
    extension_hours: int
    hourly_extension_cost: Decimal
    discount_amount: Decimal
    host_subtotal: Decimal
    subtotal: Decimal
    platform_fee_rate: Decimal
    platform_fee: Decimal
    gst: Decimal
    processing_fee: Decimal
    total_amount: Decimal
    host_earning: Decimal
    platform_revenue: Decimal
    currency: str

    def guest_receipt(self) -> dict[str, Any]:
        """What the guest sees on the receipt."""
        return {
            "base_amount": self.base_amount,
            "extra_guest_cost": self.extra_guest_cost,
            "cleaning_fee": self.cleaning_fee,
            "service_fee": self.service_fee,
            "security_deposit": self.security_deposit,
            "hourly_extension_cost": self.hourly_extension_cost,
            "discount_amount": self.discount_amount,
            "subtotal": self.subtotal,
            "platform_fee": self.platform_fee,
            "gst": self.gst,
            "processing_fee": self.processing_fee,
            "total_amount": self.total_amount,
        }

    def host_payout(self) -> dict[str, Any]:
        """What the host payout ledger records. The deposit is never host revenue."""
        return {
            "base_amount": self.base_amount,
            "extra_guest_cost": self.extra_guest_cost,
            "cleaning_fee": self.cleaning_fee,
            "service_fee": self.service_fee,
            "hourly_extension_cost": self.hourly_extension_cost,
            "discount_amount": self.discount_amount,
            "host_subtotal": self.host_subtotal,
            "platform_fee": self.platform_fee,
            "host_earning": self.host_earning,
        }

    def platform_ledger(self) -> dict[str, Any]:
        """What the platform revenue report records."""
        return {
            "platform_fee_rate": self.platform_fee_rate,
            "platform_fee": self.platform_fee,
            "processing_fee": self.processing_fee,
            "gst": self.gst,
            "platform_revenue": self.platform_revenue,
        }

    def reconcile(self) -> None:
        """
        Check that the three views add up to the cent.

        Raises:
            Inconsistent: If any identity does not hold
        """
        checks = {
            "total_amount": (
                self.subtotal + self.platform_fee + self.gst + self.processing_fee,
                self.total_amount,
            ),
            "subtotal": (self.host_subtotal + self.security_deposit, self.subtotal),
            "host_earning": (self.host_subtotal - self.platform_fee, self.host_earning),
            "platform_revenue": (self.platform_fee + self.processing_fee, self.platform_revenue),
        }
        for name, (expected, actual) in checks.items():
            if expected != actual:
                raise Inconsistent(
                    f"pricing breakdown does not reconcile on {name}",
                    field=name,
                    expected=str(expected),
                    actual=str(actual),
                )
