"""
Dialect-aware INSERT .. ON CONFLICT helpers.

PostgreSQL and SQLite both support ``ON CONFLICT DO UPDATE .. WHERE`` with the
same SQLAlchemy API, but through different ``insert`` constructs. Everything
that relies on conflict handling for atomicity (idempotency keys, availability
compare-and-swap, resource locks, catalog upserts) goes through here.
"""

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection


def dialect_insert(conn: Connection, table: Any) -> Any:
    """
    Return the dialect-specific ``insert()`` for ``table``.

    Args:
        conn: Active database connection
        table: SQLAlchemy ORM class or Table

    Returns:
        Insert construct supporting ``on_conflict_do_update``/``on_conflict_do_nothing``

    Raises:
        NotImplementedError: For backends without ON CONFLICT support
    """
    name = conn.dialect.name
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"ON CONFLICT is not supported for dialect {name!r}")


def upsert_with_distinct_check(
    conn: Connection,
    table: Any,
    rows: list[dict[str, Any]],
    conflict_columns: list[str],
    distinct_column: str,
    update_columns: list[str] | None = None,
) -> None:
    """
    Perform upsert that only writes when ``distinct_column`` changed.

    Prevents unnecessary writes and ``updated_at`` churn when re-syncing the
    same catalog payload.

    Args:
        conn: Active database connection (within transaction)
        table: SQLAlchemy ORM table class
        rows: List of row dicts to upsert
        conflict_columns: Columns of the unique index used for ON CONFLICT
        distinct_column: Column to check for changes
        update_columns: Columns to update on conflict (default: [distinct_column, "updated_at"])
    """
    if not rows:
        return

    if update_columns is None:
        update_columns = [distinct_column, "updated_at"]

    stmt = dialect_insert(conn, table).values(rows)
    set_dict = {col: getattr(stmt.excluded, col) for col in update_columns}
    distinct_check = getattr(table, distinct_column).is_distinct_from(
        getattr(stmt.excluded, distinct_column)
    )

    stmt = stmt.on_conflict_do_update(
        index_elements=conflict_columns,
        set_=set_dict,
        where=distinct_check,
    )
    conn.execute(stmt)
