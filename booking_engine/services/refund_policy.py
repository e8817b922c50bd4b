"""
Refund Policy Engine.

Pure functions over the four named cancellation policies. A refund *reason*
other than ``guest_request`` overrides the policy table entirely.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from booking_engine.schemas.refunds import RefundQuote, RefundReason
from booking_engine.schemas.resources import CancellationPolicy
from booking_engine.utils.datetime import hours_between
from booking_engine.utils.money import ZERO, round2

HUNDRED = Decimal("100")

# Guests may not cancel a confirmed super_strict booking this close to check-in
SUPER_STRICT_LOCKOUT_HOURS = 168

# policy -> [(more than N hours before check-in, percentage, description)], first match wins
POLICY_TIERS: dict[CancellationPolicy, list[tuple[float, Decimal, str]]] = {
    CancellationPolicy.FLEXIBLE: [
        (24, HUNDRED, "Full refund if cancelled more than 24 hours before check-in"),
    ],
    CancellationPolicy.MODERATE: [
        (120, HUNDRED, "Full refund if cancelled more than 5 days before check-in"),
        (24, Decimal("50"), "50% refund if cancelled between 1-5 days before check-in"),
    ],
    CancellationPolicy.STRICT: [
        (168, Decimal("50"), "50% refund if cancelled more than 7 days before check-in"),
    ],
    CancellationPolicy.SUPER_STRICT: [],
}

NO_REFUND_DESCRIPTIONS = {
    CancellationPolicy.FLEXIBLE: "No refund if cancelled within 24 hours of check-in",
    CancellationPolicy.MODERATE: "No refund if cancelled within 24 hours of check-in",
    CancellationPolicy.STRICT: "No refund if cancelled within 7 days of check-in",
    CancellationPolicy.SUPER_STRICT: "No refunds under any circumstances",
}

OVERRIDE_DESCRIPTIONS = {
    RefundReason.HOST_CANCEL: "Full refund: cancelled by host",
    RefundReason.APPROVAL_TIMEOUT: "Full refund: host did not respond in time",
    RefundReason.SETTLEMENT_REVERSAL: "Full refund: booking could not be completed after payment",
}


def policy_percentage(
    policy: Union[CancellationPolicy, str], hours_until_check_in: float
) -> tuple[Decimal, str]:
    """
    Look up the refund percentage for ``policy`` at a given lead time.

    Args:
        policy: Cancellation policy name
        hours_until_check_in: Hours from cancellation to check-in (negative once started)

    Returns:
        tuple[Decimal, str]: Percentage in [0, 100] and a human-readable description
    """
    policy = CancellationPolicy(policy)
    for threshold, percentage, description in POLICY_TIERS[policy]:
        if hours_until_check_in > threshold:
            return percentage, description
    return ZERO, NO_REFUND_DESCRIPTIONS[policy]


def compute_refund(
    policy: Union[CancellationPolicy, str],
    now: datetime,
    check_in_at: datetime,
    total_amount: Decimal,
) -> RefundQuote:
    """
    Refund a guest receives for cancelling under ``policy`` at ``now``.

    Args:
        policy: Cancellation policy name
        now: Cancellation time
        check_in_at: Start instant of the stay or slot
        total_amount: Amount the guest was charged

    Returns:
        RefundQuote: ``amount = round2(total_amount x percentage / 100)``

    Example:
        >>> compute_refund("moderate", now, now + timedelta(days=3), Decimal("1000")).amount
        Decimal('500.00')
    """
    hours = hours_between(now, check_in_at)
    percentage, description = policy_percentage(policy, hours)
    return RefundQuote(
        percentage=percentage,
        amount=round2(total_amount * percentage / HUNDRED),
        policy=CancellationPolicy(policy).value,
        reason=RefundReason.GUEST_REQUEST,
        hours_until_check_in=round(hours, 2),
        description=description,
    )


def cancellation_allowed(
    policy: Union[CancellationPolicy, str], now: datetime, check_in_at: datetime
) -> bool:
    """False when the policy forbids a guest cancellation at ``now``."""
    if CancellationPolicy(policy) == CancellationPolicy.SUPER_STRICT:
        return hours_between(now, check_in_at) > SUPER_STRICT_LOCKOUT_HOURS
    return True


def refund_for_reason(
    reason: RefundReason,
    total_amount: Decimal,
    security_deposit: Decimal = ZERO,
    policy: Optional[Union[CancellationPolicy, str]] = None,
    now: Optional[datetime] = None,
    check_in_at: Optional[datetime] = None,
) -> RefundQuote:
    """
    Resolve the refund for a reason, applying overrides before the policy table.

    ``host_cancel``, ``approval_timeout`` and ``settlement_reversal`` always
    refund in full; ``security_deposit_only`` refunds exactly the deposit line;
    ``guest_request`` falls through to ``compute_refund``.

    Raises:
        ValueError: If ``guest_request`` is given without policy and timing
    """
    if reason in OVERRIDE_DESCRIPTIONS:
        return RefundQuote(
            percentage=HUNDRED,
            amount=round2(total_amount),
            policy=CancellationPolicy(policy).value if policy else None,
            reason=reason,
            description=OVERRIDE_DESCRIPTIONS[reason],
        )

    if reason == RefundReason.SECURITY_DEPOSIT_ONLY:
        deposit = round2(min(security_deposit, total_amount))
        percentage = round2(deposit * HUNDRED / total_amount) if total_amount else ZERO
        return RefundQuote(
            percentage=percentage,
            amount=deposit,
            policy=CancellationPolicy(policy).value if policy else None,
            reason=reason,
            description="Security deposit returned",
        )

    if policy is None or now is None or check_in_at is None:
        raise ValueError("guest_request refunds need a policy, a time and a check-in instant")
    return compute_refund(policy, now, check_in_at, total_amount)
