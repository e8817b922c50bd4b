"""
Prometheus metrics endpoint for monitoring and observability.

Example:
    GET /metrics

    Response:
        # HELP booking_engine_bookings_created_total Booking creation attempts by outcome
        # TYPE booking_engine_bookings_created_total counter
        booking_engine_bookings_created_total{booking_type="property",outcome="created"} 42.0
        ...
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter()


@router.get("/metrics", response_class=Response)
async def metrics() -> Any:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text-based exposition format, to be scraped
    at regular intervals (e.g. every 15-30 seconds).
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
