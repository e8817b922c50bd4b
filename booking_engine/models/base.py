from sqlalchemy import JSON, MetaData
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

from booking_engine.config import DB_SCHEMA

# JSON everywhere, JSONB on PostgreSQL (JSONB supports equality/IS DISTINCT FROM)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    All tables share one MetaData whose schema comes from DB_SCHEMA, so the
    same models work on a PostgreSQL schema and on a schemaless SQLite file.
    """

    metadata = MetaData(schema=DB_SCHEMA)
