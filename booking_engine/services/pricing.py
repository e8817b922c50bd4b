"""
Pricing Engine.

Pure computation of a priced breakdown from a tariff and a requested stay.
The only external input is the platform fee rate, which the caller reads from
the active PricingConfig and passes in, so identical inputs always produce an
identical breakdown.

Rounding happens at every step, in the fixed order below. Reordering the
steps changes totals by rounding drift and breaks reconciliation against
breakdowns that are already persisted.
"""

from decimal import Decimal

from booking_engine.config import GST_RATE, PROCESSING_FEE_FIXED, PROCESSING_FEE_RATE
from booking_engine.schemas.pricing import HOURLY_EXTENSION_RATES, PricingBreakdown, PricingInput
from booking_engine.utils.money import ZERO, round2


def hourly_extension_cost(base_price: Decimal, hours: int) -> Decimal:
    """
    Surcharge for a 6/12/18 hour extension, as a share of the base rate.

    Args:
        base_price: Daily (or 24-hour) base rate
        hours: Extension hours; anything outside the tiers costs nothing

    Returns:
        Decimal: Extension cost rounded to 2 places
    """
    rate = HOURLY_EXTENSION_RATES.get(hours, ZERO)
    return round2(base_price * rate)


def compute_pricing(params: PricingInput, platform_fee_rate: Decimal) -> PricingBreakdown:
    """
    Compute the full pricing breakdown for a stay or slot.

    Steps (each rounded half-up to 2 places):
        1. base_amount = base price x duration (24-hour and slot: the base price)
        2. extra_guest_cost = extra guest price x extra guests x duration multiplier
        3. host_subtotal = base + extra guests + cleaning + service + extension - discount
        4. subtotal = host_subtotal + security deposit
        5. platform_fee = host_subtotal x rate
        6. gst = subtotal x GST_RATE
        7. processing_fee = subtotal x PROCESSING_FEE_RATE + PROCESSING_FEE_FIXED
        8. total_amount = subtotal + platform_fee + gst + processing_fee
        9. host_earning = host_subtotal - platform_fee

    Args:
        params: Resolved tariff and stay shape
        platform_fee_rate: Current platform fee rate (e.g. Decimal("0.15"))

    Returns:
        PricingBreakdown: Every intermediate value plus the totals
    """
    duration = 1 if params.is_time_boxed else params.duration

    base_amount = round2(params.base_price * duration)
    extra_guest_cost = round2(params.extra_guest_price * params.extra_guests * duration)
    extension_cost = hourly_extension_cost(params.base_price, params.extension_hours)
    cleaning_fee = round2(params.cleaning_fee)
    service_fee = round2(params.service_fee)
    security_deposit = round2(params.security_deposit)
    discount_amount = round2(params.discount_amount)

    # Security deposit is held, not earned
    host_subtotal = round2(
        base_amount + extra_guest_cost + cleaning_fee + service_fee + extension_cost
        - discount_amount
    )
    subtotal = round2(host_subtotal + security_deposit)

    platform_fee = round2(host_subtotal * platform_fee_rate)
    # Tax applies to the full customer-facing subtotal, deposit included
    gst = round2(subtotal * GST_RATE)
    processing_fee = round2(subtotal * PROCESSING_FEE_RATE + PROCESSING_FEE_FIXED)
    total_amount = round2(subtotal + platform_fee + gst + processing_fee)
    host_earning = round2(host_subtotal - platform_fee)

    return PricingBreakdown(
        base_price=round2(params.base_price),
        duration=duration,
        total_hours=24 + params.extension_hours if params.is_time_boxed else None,
        extra_guests=params.extra_guests,
        base_amount=base_amount,
        extra_guest_cost=extra_guest_cost,
        cleaning_fee=cleaning_fee,
        service_fee=service_fee,
        security_deposit=security_deposit,
        extension_hours=params.extension_hours,
        hourly_extension_cost=extension_cost,
        discount_amount=discount_amount,
        host_subtotal=host_subtotal,
        subtotal=subtotal,
        platform_fee_rate=platform_fee_rate,
        platform_fee=platform_fee,
        gst=gst,
        processing_fee=processing_fee,
        total_amount=total_amount,
        host_earning=host_earning,
        platform_revenue=round2(platform_fee + processing_fee),
        currency=params.currency,
    )


def pre_discount_amount(params: PricingInput) -> Decimal:
    """
    Host subtotal before any discount; the base coupons are computed against.

    Args:
        params: Resolved tariff and stay shape

    Returns:
        Decimal: Host subtotal with discount_amount ignored
    """
    duration = 1 if params.is_time_boxed else params.duration
    return round2(
        round2(params.base_price * duration)
        + round2(params.extra_guest_price * params.extra_guests * duration)
        + round2(params.cleaning_fee)
        + round2(params.service_fee)
        + hourly_extension_cost(params.base_price, params.extension_hours)
    )
