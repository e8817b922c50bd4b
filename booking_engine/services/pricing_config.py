"""
Versioned platform fee rate (PricingConfig).

Reads are frequent (every quote) and served from a short-lived cache; writes
are an administrative operation that closes the active version and appends a
new one in a single transaction.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.engine import Connection, Engine

from booking_engine.cache import TTLCache
from booking_engine.config import DEFAULT_PLATFORM_FEE_RATE, RATE_CACHE_TTL_SECONDS
from booking_engine.errors import ValidationError
from booking_engine.models.pricing import PricingConfig
from booking_engine.utils.datetime import utc_now

logger = structlog.get_logger(__name__)

RATE_CACHE_KEY = "platform_fee_rate"

# Process-wide cache of the active rate
rate_cache = TTLCache(ttl_seconds=RATE_CACHE_TTL_SECONDS)


def get_current_platform_fee_rate(conn: Connection, now: Optional[datetime] = None) -> Decimal:
    """
    Return the platform fee rate in force at ``now``.

    Falls back to DEFAULT_PLATFORM_FEE_RATE (with a warning) when no active
    configuration exists, so quoting never fails on an empty table.

    Args:
        conn: Active database connection
        now: Point in time to evaluate (default: current UTC time)

    Returns:
        Decimal: Rate in [0, 1]
    """
    cached = rate_cache.get(RATE_CACHE_KEY)
    if cached is not None:
        return Decimal(cached)

    now = now or utc_now()
    row = conn.execute(
        select(PricingConfig.platform_fee_rate)
        .where(PricingConfig.is_active == True)  # noqa: E712
        .where(PricingConfig.effective_from <= now)
        .where(or_(PricingConfig.effective_to.is_(None), PricingConfig.effective_to >= now))
        .order_by(PricingConfig.effective_from.desc())
        .limit(1)
    ).fetchone()

    if row is None:
        logger.warning(
            "pricing_config_missing",
            fallback_rate=str(DEFAULT_PLATFORM_FEE_RATE),
        )
        return DEFAULT_PLATFORM_FEE_RATE

    rate = Decimal(row[0])
    rate_cache.set(RATE_CACHE_KEY, rate)
    return rate


def update_platform_fee_rate(
    engine: Engine,
    new_rate: Decimal,
    admin_id: str,
    change_reason: str = "",
    now: Optional[datetime] = None,
) -> dict:
    """
    Close the active configuration and append a new active version.

    Args:
        engine: SQLAlchemy engine
        new_rate: New platform fee rate (0.15 = 15%)
        admin_id: Admin performing the change
        change_reason: Free-text justification kept in the history
        now: Change timestamp (default: current UTC time)

    Returns:
        dict: The new configuration row

    Raises:
        ValidationError: If the rate is outside [0, 1]
    """
    if not Decimal("0") <= new_rate <= Decimal("1"):
        raise ValidationError("platform fee rate must be between 0 and 1", rate=str(new_rate))

    now = now or utc_now()

    with engine.begin() as conn:
        conn.execute(
            update(PricingConfig)
            .where(PricingConfig.is_active == True)  # noqa: E712
            .values(is_active=False, effective_to=now)
        )
        version = (conn.execute(select(func.count(PricingConfig.id))).scalar() or 0) + 1
        row = {
            "platform_fee_rate": new_rate,
            "is_active": True,
            "effective_from": now,
            "effective_to": None,
            "created_by": admin_id,
            "change_reason": change_reason,
            "version": version,
            "created_at": now,
        }
        result = conn.execute(PricingConfig.__table__.insert().values(**row))
        row["id"] = result.inserted_primary_key[0]

    rate_cache.invalidate(RATE_CACHE_KEY)

    logger.info(
        "platform_fee_rate_updated",
        rate=str(new_rate),
        version=version,
        admin_id=admin_id,
    )
    return row


def get_pricing_history(conn: Connection, limit: int = 10) -> list[dict]:
    """
    Return the most recent configuration versions, newest first.

    Args:
        conn: Active database connection
        limit: Maximum rows to return

    Returns:
        list[dict]: Configuration rows
    """
    result = conn.execute(
        select(PricingConfig).order_by(PricingConfig.version.desc()).limit(limit)
    )
    return [dict(row._mapping) for row in result]
