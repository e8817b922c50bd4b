"""
Unit tests for coupon discount computation.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest

from booking_engine.schemas.coupons import Coupon
from booking_engine.services.coupons import compute_discount


def coupon(**overrides: Any) -> Coupon:
    fields: dict[str, Any] = {
        "id": 1,
        "code": "SUMMER10",
        "discount_type": "percentage",
        "amount": Decimal("10"),
        "valid_from": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "valid_to": datetime(2025, 12, 31, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return Coupon(**fields)


@pytest.mark.unit
def test_percentage_discount() -> None:
    assert compute_discount(coupon(), Decimal("3250")) == Decimal("325.00")


@pytest.mark.unit
def test_percentage_discount_is_capped() -> None:
    assert compute_discount(coupon(max_discount=Decimal("200")), Decimal("3250")) == Decimal("200.00")


@pytest.mark.unit
def test_fixed_discount_never_exceeds_amount() -> None:
    fixed = coupon(discount_type="fixed", amount=Decimal("500"))
    assert compute_discount(fixed, Decimal("3250")) == Decimal("500.00")
    assert compute_discount(fixed, Decimal("300")) == Decimal("300.00")


@pytest.mark.unit
def test_discount_rounds_half_up() -> None:
    assert compute_discount(coupon(amount=Decimal("12.5")), Decimal("100.1")) == Decimal("12.51")
