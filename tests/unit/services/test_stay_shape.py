"""
Unit tests for stay validation and pricing input in services/bookings.py.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from booking_engine.errors import ValidationError
from booking_engine.schemas.availability import DateSpan, TimeSpan
from booking_engine.schemas.bookings import CreateBookingRequest, GuestCounts
from booking_engine.schemas.resources import BookingMode, Resource
from booking_engine.services.bookings import build_pricing_input, resolve_stay_shape

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

DAILY = Resource.model_validate(
    {
        "id": "lst-1",
        "kind": "listing",
        "host_id": "host-1",
        "tariff": {"base_price": "1000", "extra_guest_price": "300"},
        "min_nights": 2,
        "max_guests": 3,
    }
)
STAY_24H = Resource.model_validate(
    {
        "id": "lst-2",
        "kind": "listing",
        "host_id": "host-1",
        "booking_mode": "24hour",
        "tariff": {"base_price": "1000", "base_price_24h": "1500"},
        "host_buffer_hours": 2,
    }
)
SERVICE = Resource.model_validate(
    {
        "id": "svc-1",
        "kind": "service",
        "host_id": "host-1",
        "booking_mode": "slot",
        "tariff": {"base_price": "800"},
        "min_hours": 1,
        "max_hours": 3,
    }
)


@pytest.mark.unit
def test_daily_shape_uses_listing_clock_times() -> None:
    request = CreateBookingRequest(listing_id="lst-1", check_in=date(2025, 6, 10), check_out=date(2025, 6, 13))
    shape = resolve_stay_shape(DAILY, request, NOW)

    assert shape.booking_duration == BookingMode.DAILY
    assert shape.span == DateSpan(start=date(2025, 6, 10), end=date(2025, 6, 13))
    assert shape.duration == 3
    assert shape.starts_at == datetime(2025, 6, 10, 15, 0, tzinfo=timezone.utc)
    assert shape.ends_at == datetime(2025, 6, 13, 11, 0, tzinfo=timezone.utc)


@pytest.mark.unit
def test_late_checkout_holds_the_checkout_day() -> None:
    request = CreateBookingRequest(
        listing_id="lst-1", check_in=date(2025, 6, 10), check_out=date(2025, 6, 12), extension_hours=6
    )
    shape = resolve_stay_shape(DAILY, request, NOW)

    assert shape.span.end == date(2025, 6, 13)
    assert shape.ends_at == datetime(2025, 6, 12, 17, 0, tzinfo=timezone.utc)


@pytest.mark.unit
@pytest.mark.parametrize(
    "check_in,check_out,message",
    [
        (date(2025, 6, 10), date(2025, 6, 10), "after check_in"),
        (date(2025, 5, 30), date(2025, 6, 2), "past"),
        (date(2025, 6, 10), date(2025, 6, 11), "minimum stay"),
        (None, date(2025, 6, 11), "required"),
    ],
)
def test_daily_shape_rejections(check_in: date, check_out: date, message: str) -> None:
    request = CreateBookingRequest(listing_id="lst-1", check_in=check_in, check_out=check_out)
    with pytest.raises(ValidationError, match=message):
        resolve_stay_shape(DAILY, request, NOW)


@pytest.mark.unit
def test_24_hour_span_includes_host_buffer() -> None:
    start = NOW + timedelta(days=2)
    request = CreateBookingRequest(listing_id="lst-2", check_in_at=start, extension_hours=12)
    shape = resolve_stay_shape(STAY_24H, request, NOW)

    assert shape.is_time_boxed
    assert shape.base_price == Decimal("1500")
    assert shape.ends_at == start + timedelta(hours=36)
    assert shape.span == TimeSpan(start=start, end=start + timedelta(hours=38))
    assert shape.host_buffer_hours == 2


@pytest.mark.unit
def test_24_hour_stay_must_start_in_future() -> None:
    request = CreateBookingRequest(listing_id="lst-2", check_in_at=NOW - timedelta(hours=1))
    with pytest.raises(ValidationError, match="past"):
        resolve_stay_shape(STAY_24H, request, NOW)


@pytest.mark.unit
def test_slot_shape_and_hour_limits() -> None:
    start = NOW + timedelta(days=1)
    ok = CreateBookingRequest(service_id="svc-1", slot_start=start, slot_end=start + timedelta(hours=2))
    shape = resolve_stay_shape(SERVICE, ok, NOW)
    assert shape.span == TimeSpan(start=start, end=start + timedelta(hours=2))
    assert shape.slot_start == start

    too_long = CreateBookingRequest(service_id="svc-1", slot_start=start, slot_end=start + timedelta(hours=5))
    with pytest.raises(ValidationError, match="maximum"):
        resolve_stay_shape(SERVICE, too_long, NOW)

    extended = CreateBookingRequest(
        service_id="svc-1", slot_start=start, slot_end=start + timedelta(hours=2), extension_hours=6
    )
    with pytest.raises(ValidationError, match="extended"):
        resolve_stay_shape(SERVICE, extended, NOW)


@pytest.mark.unit
def test_unknown_extension_tier_is_a_validation_error() -> None:
    request = CreateBookingRequest(
        listing_id="lst-1", check_in=date(2025, 6, 10), check_out=date(2025, 6, 13), extension_hours=5
    )
    with pytest.raises(ValidationError, match="extension_hours"):
        resolve_stay_shape(DAILY, request, NOW)


@pytest.mark.unit
def test_pricing_input_counts_extra_adults_only() -> None:
    request = CreateBookingRequest(
        listing_id="lst-1",
        check_in=date(2025, 6, 10),
        check_out=date(2025, 6, 13),
        guests=GuestCounts(adults=2, children=1, infants=2),
    )
    params = build_pricing_input(DAILY, request, resolve_stay_shape(DAILY, request, NOW))

    assert params.extra_guests == 1
    assert params.duration == 3
    assert params.extra_guest_price == Decimal("300")


@pytest.mark.unit
def test_pricing_input_enforces_capacity() -> None:
    request = CreateBookingRequest(
        listing_id="lst-1",
        check_in=date(2025, 6, 10),
        check_out=date(2025, 6, 13),
        guests=GuestCounts(adults=2, children=2),
    )
    with pytest.raises(ValidationError, match="maximum 3 guests"):
        build_pricing_input(DAILY, request, resolve_stay_shape(DAILY, request, NOW))


@pytest.mark.unit
def test_request_targets_exactly_one_resource() -> None:
    with pytest.raises(ValueError):
        CreateBookingRequest(listing_id="lst-1", service_id="svc-1")
    with pytest.raises(ValueError):
        CreateBookingRequest()
