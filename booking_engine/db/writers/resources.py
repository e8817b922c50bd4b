import json

import structlog
from sqlalchemy.engine import Engine

from booking_engine.config import DEBUG
from booking_engine.db._upsert import upsert_with_distinct_check
from booking_engine.models.resources import Resource as ResourceRow
from booking_engine.schemas.resources import Resource
from booking_engine.utils.datetime import utc_now

logger = structlog.get_logger(__name__)


def insert_resources(engine: Engine, resources: list[Resource], dry_run: bool = False) -> None:
    """
    Upsert catalog entries, only updating rows whose payload changed.

    Args:
        engine: SQLAlchemy Engine
        resources: Validated listings and services
        dry_run: If True, skip DB writes and log only
    """
    now = utc_now()
    rows = [
        {
            "kind": resource.kind.value,
            "id": resource.id,
            "host_id": resource.host_id,
            "is_active": resource.is_active,
            "payload": resource.model_dump(mode="json"),
            "created_at": now,
            "updated_at": now,
        }
        for resource in resources
    ]

    if dry_run:
        logger.info("resources_upsert_dry_run", count=len(rows))
        return

    if not rows:
        logger.info("resources_upsert_empty")
        return

    if DEBUG:
        logger.debug("resource_upsert_sample", row=json.dumps(rows[0], default=str))

    with engine.begin() as conn:
        upsert_with_distinct_check(
            conn=conn,
            table=ResourceRow,
            rows=rows,
            conflict_columns=["kind", "id"],
            distinct_column="payload",
            update_columns=["host_id", "is_active", "payload", "updated_at"],
        )

    logger.info("resources_upserted", count=len(rows))
