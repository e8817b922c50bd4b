"""
SQLAlchemy engine factory and process-wide engine.

PostgreSQL gets a production connection pool. SQLite (local runs and tests)
gets ``check_same_thread`` disabled and a generous busy timeout so concurrent
request threads queue on the database write lock instead of failing.
"""

from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from booking_engine.config import DATABASE_URL

if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set.")


def build_engine(url: str, echo: bool = False) -> Engine:
    """
    Create an engine with pool settings appropriate for the backend.

    Args:
        url: SQLAlchemy database URL
        echo: Log emitted SQL (debugging only)

    Returns:
        Engine: Configured SQLAlchemy engine
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            future=True,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    options: dict[str, Any] = {
        "pool_size": 10,  # Number of connections to maintain in the pool
        "max_overflow": 20,  # Additional connections when pool is exhausted
        "pool_pre_ping": True,  # Detect stale connections before use
        "pool_recycle": 3600,  # Recycle connections after 1 hour
    }
    return create_engine(url, future=True, echo=echo, **options)


engine: Engine = build_engine(DATABASE_URL)


def check_engine_health(target: Engine = engine) -> bool:
    """
    Check if database engine is healthy and connections are working.

    This function is used by the /ready endpoint to verify database
    connectivity before allowing traffic to the service.

    Args:
        target: Engine to probe (defaults to the process engine)

    Returns:
        bool: True if database is reachable and healthy, False otherwise
    """
    try:
        with target.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
