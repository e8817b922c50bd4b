from logging.config import fileConfig
from typing import Any

from sqlalchemy import engine_from_config, pool
from sqlalchemy.schema import CreateSchema

from alembic import context  # type: ignore[attr-defined]
from booking_engine.config import DATABASE_URL, DB_SCHEMA
from booking_engine.models.availability import AvailabilityCell  # noqa: F401
from booking_engine.models.base import Base
from booking_engine.models.bookings import Booking  # noqa: F401
from booking_engine.models.coupons import Coupon  # noqa: F401
from booking_engine.models.pricing import PricingConfig  # noqa: F401
from booking_engine.models.refunds import Refund  # noqa: F401
from booking_engine.models.resources import Resource  # noqa: F401

# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# Interpret the config file for Python logging.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata
config.set_main_option("sqlalchemy.url", DATABASE_URL)


def include_object(
    object_: Any,
    name: str,
    type_: str,
    reflected: bool,
    compare_to: Any,
) -> bool:
    if hasattr(object_, "schema") and object_.schema != DB_SCHEMA:
        return False
    return True


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    This configures the context with just a URL and not an Engine. Calls to
    context.execute() here emit the given string to the script output.
    """
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        include_schemas=DB_SCHEMA is not None,
        include_object=include_object,
        version_table_schema=DB_SCHEMA,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode against a live connection."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            include_schemas=DB_SCHEMA is not None,
            include_object=include_object,
            version_table_schema=DB_SCHEMA,
        )
        # The version table lives in DB_SCHEMA, so it must exist first
        if DB_SCHEMA:
            connection.execute(CreateSchema(DB_SCHEMA, if_not_exists=True))
            connection.commit()

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
