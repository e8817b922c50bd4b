from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection

from booking_engine.models.resources import Resource
from booking_engine.schemas.resources import ResourceRef


def get_resource_payload(conn: Connection, ref: ResourceRef) -> Optional[dict[str, Any]]:
    """
    Fetch the catalog document of a listing or service.

    Args:
        conn (Connection): An active SQLAlchemy database connection.
        ref (ResourceRef): Listing or service identity

    Returns:
        Optional[dict[str, Any]]: Stored payload, or None if unknown
    """
    row = conn.execute(
        select(Resource.payload)
        .where(Resource.kind == ref.kind.value)
        .where(Resource.id == ref.id)
    ).fetchone()
    return dict(row.payload) if row else None


def list_resource_ids(conn: Connection, host_id: Optional[str] = None) -> list[ResourceRef]:
    """Identities of all catalog entries, optionally for one host."""
    stmt = select(Resource.kind, Resource.id).order_by(Resource.kind, Resource.id)
    if host_id is not None:
        stmt = stmt.where(Resource.host_id == host_id)
    return [ResourceRef(kind=row.kind, id=row.id) for row in conn.execute(stmt)]
