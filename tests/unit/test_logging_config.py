"""
Unit tests for log setup and per-operation log context.
"""

from __future__ import annotations

import io
import json

import pytest
import structlog

from booking_engine import logging_config
from booking_engine.logging_config import log_context, setup_logging


@pytest.fixture(autouse=True)
def clean_structlog():
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


@pytest.mark.unit
def test_log_context_binds_and_restores() -> None:
    structlog.contextvars.bind_contextvars(request_id="r-1")

    with log_context(booking_id="b-1", actor_id=None):
        structlog.contextvars.bind_contextvars(idempotency_key="k-1")
        inside = structlog.contextvars.get_contextvars()

    assert inside == {"request_id": "r-1", "booking_id": "b-1", "idempotency_key": "k-1"}
    assert structlog.contextvars.get_contextvars() == {"request_id": "r-1"}


@pytest.mark.unit
def test_log_context_restores_on_error() -> None:
    with pytest.raises(RuntimeError):
        with log_context(booking_id="b-2"):
            raise RuntimeError("boom")
    assert structlog.contextvars.get_contextvars() == {}


@pytest.mark.unit
def test_json_lines_carry_service_and_booking_context(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(logging_config, "DEBUG", False)
    monkeypatch.setattr(logging_config, "LOG_LEVEL", "INFO")
    setup_logging()
    out = io.StringIO()
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(file=out), cache_logger_on_first_use=False)

    with log_context(booking_id="b-3", actor_id="host-1"):
        structlog.get_logger("booking_engine.test").info("booking_transition", transition="accept")

    line = json.loads(out.getvalue().strip())
    assert line["event"] == "booking_transition"
    assert line["booking_id"] == "b-3"
    assert line["actor_id"] == "host-1"
    assert line["service"] == "booking-engine"
    assert line["level"] == "info"
    assert "timestamp" in line
