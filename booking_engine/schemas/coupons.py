from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from booking_engine.utils.datetime import ensure_utc


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class Coupon(BaseModel):
    """Coupon as read from the database."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    discount_type: DiscountType
    amount: Decimal = Field(..., ge=0)
    max_discount: Optional[Decimal] = None
    min_booking_amount: Optional[Decimal] = None
    valid_from: datetime
    valid_to: datetime
    usage_limit: Optional[int] = None
    used_count: int = 0
    is_active: bool = True
    applicable_listings: Optional[list[str]] = None
    applicable_services: Optional[list[str]] = None

    @field_validator("valid_from", "valid_to")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)  # type: ignore[return-value]


class CouponCreatePayload(BaseModel):
    """Fields an admin supplies to create a coupon."""

    code: str = Field(..., pattern=r"^[A-Za-z0-9]{3,20}$")
    discount_type: DiscountType
    amount: Decimal = Field(..., ge=0)
    max_discount: Optional[Decimal] = Field(None, ge=0)
    min_booking_amount: Optional[Decimal] = Field(None, ge=0)
    valid_from: datetime
    valid_to: datetime
    usage_limit: Optional[int] = Field(None, ge=1)
    applicable_listings: Optional[list[str]] = None
    applicable_services: Optional[list[str]] = None
