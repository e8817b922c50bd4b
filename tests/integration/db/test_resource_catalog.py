"""
Integration tests for the SQL-backed resource catalog.
"""

from __future__ import annotations

from decimal import Decimal

import pytest
from conftest import HOST, make_resource
from sqlalchemy.engine import Engine

from booking_engine.db.readers.resources import list_resource_ids
from booking_engine.db.writers.resources import insert_resources
from booking_engine.errors import NotFound, UpstreamFailure
from booking_engine.models.resources import Resource as ResourceRow
from booking_engine.schemas.resources import BookingMode, CancellationPolicy, ResourceKind, ResourceRef
from booking_engine.services.catalog import SqlResourceCatalog
from booking_engine.utils.datetime import utc_now

DAILY = ResourceRef(kind=ResourceKind.LISTING, id="lst-daily")


@pytest.mark.integration
def test_get_parses_stored_payload(seeded_engine: Engine) -> None:
    resource = SqlResourceCatalog(seeded_engine).get(DAILY)

    assert resource.host_id == HOST.user_id
    assert resource.booking_mode == BookingMode.DAILY
    assert resource.cancellation_policy == CancellationPolicy.MODERATE
    assert resource.tariff.base_price == Decimal("1000")


@pytest.mark.integration
def test_unknown_resource_is_not_found(seeded_engine: Engine) -> None:
    catalog = SqlResourceCatalog(seeded_engine)

    with pytest.raises(NotFound):
        catalog.get(ResourceRef(kind=ResourceKind.LISTING, id="nope"))
    # Same id under the other kind is a different resource
    with pytest.raises(NotFound):
        catalog.get(ResourceRef(kind=ResourceKind.SERVICE, id="lst-daily"))


@pytest.mark.integration
def test_entries_are_cached_until_invalidated(seeded_engine: Engine) -> None:
    catalog = SqlResourceCatalog(seeded_engine)
    assert catalog.get(DAILY).tariff.base_price == Decimal("1000")

    insert_resources(seeded_engine, [make_resource(tariff={"base_price": "1200"})])
    assert catalog.get(DAILY).tariff.base_price == Decimal("1000")

    catalog.invalidate(DAILY)
    assert catalog.get(DAILY).tariff.base_price == Decimal("1200")


@pytest.mark.integration
def test_malformed_payload_is_an_upstream_failure(engine: Engine) -> None:
    now = utc_now()
    with engine.begin() as conn:
        conn.execute(
            ResourceRow.__table__.insert().values(
                kind="listing",
                id="broken",
                host_id=HOST.user_id,
                is_active=True,
                payload={"id": "broken", "kind": "listing"},
                created_at=now,
                updated_at=now,
            )
        )

    with pytest.raises(UpstreamFailure, match="malformed"):
        SqlResourceCatalog(engine).get(ResourceRef(kind=ResourceKind.LISTING, id="broken"))


@pytest.mark.integration
def test_insert_resources_upserts_and_dry_run_writes_nothing(engine: Engine) -> None:
    insert_resources(engine, [make_resource(id="dry")], dry_run=True)
    with engine.connect() as conn:
        assert list_resource_ids(conn) == []

    insert_resources(engine, [make_resource(), make_resource(id="lst-2", host_id="host-2")])
    insert_resources(engine, [make_resource(is_active=False)])

    with engine.connect() as conn:
        assert [r.id for r in list_resource_ids(conn)] == ["lst-2", "lst-daily"]
        assert [r.id for r in list_resource_ids(conn, host_id="host-2")] == ["lst-2"]
    assert SqlResourceCatalog(engine).get(DAILY).is_active is False
