"""
Resource Catalog collaborator.

The booking engine only ever reads the catalog: tariff, cancellation policy,
stay rules and host identity. ``SqlResourceCatalog`` reads the ``resources``
table and keeps a short-lived cache of parsed entries.
"""

from typing import Optional, Protocol

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from booking_engine.cache import TTLCache
from booking_engine.db.readers.resources import get_resource_payload
from booking_engine.errors import NotFound, UpstreamFailure
from booking_engine.schemas.resources import Resource, ResourceRef

logger = structlog.get_logger(__name__)


class ResourceCatalog(Protocol):
    def get(self, ref: ResourceRef) -> Resource:
        """
        Return the catalog entry for ``ref``.

        Raises:
            NotFound: If the resource does not exist
            UpstreamFailure: If the catalog could not be read
        """
        ...


class SqlResourceCatalog:
    """
    Catalog backed by the ``resources`` table.

    Example:
        >>> catalog = SqlResourceCatalog(engine)
        >>> listing = catalog.get(ResourceRef(kind="listing", id="lst-1"))
    """

    def __init__(self, engine: Engine, ttl_seconds: int = 60):
        self.engine = engine
        self._cache = TTLCache(ttl_seconds=ttl_seconds)

    def get(self, ref: ResourceRef) -> Resource:
        cached: Optional[Resource] = self._cache.get(ref)
        if cached is not None:
            return cached

        try:
            with self.engine.connect() as conn:
                payload = get_resource_payload(conn, ref)
        except SQLAlchemyError as exc:
            logger.error("catalog_lookup_failed", kind=ref.kind.value, resource_id=ref.id)
            raise UpstreamFailure("resource catalog unavailable", resource_id=ref.id) from exc

        if payload is None:
            raise NotFound(f"{ref.kind.value} not found", resource_id=ref.id)

        try:
            resource = Resource.model_validate(payload)
        except PydanticValidationError as exc:
            logger.error("catalog_entry_invalid", kind=ref.kind.value, resource_id=ref.id)
            raise UpstreamFailure("resource catalog entry is malformed", resource_id=ref.id) from exc

        self._cache.set(ref, resource)
        return resource

    def invalidate(self, ref: ResourceRef) -> None:
        self._cache.invalidate(ref)
