"""
Unit tests for cache.py.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest

from booking_engine.cache import TTLCache

START = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.unit
@patch("booking_engine.cache.utc_now")
def test_entries_expire_after_ttl(mock_now: Mock) -> None:
    mock_now.return_value = START
    cache = TTLCache(ttl_seconds=60)
    cache.set("rate", Decimal("0.15"))

    mock_now.return_value = START + timedelta(seconds=59)
    assert cache.get("rate") == Decimal("0.15")

    mock_now.return_value = START + timedelta(seconds=61)
    assert cache.get("rate") is None
    assert cache.size() == 0


@pytest.mark.unit
def test_invalidate_and_clear() -> None:
    cache = TTLCache()
    cache.set("a", 1)
    cache.set("b", 2)

    cache.invalidate("a")
    assert cache.get("a") is None
    assert cache.get("b") == 2

    cache.clear()
    assert cache.size() == 0
