"""Database engine helpers."""

from __future__ import annotations

import os

from sqlalchemy import Table, create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine


DEFAULT_DATABASE_URL = "postgresql://user:pass@db:5432/stockmind"


def create_engine_from_env() -> Engine:
    """Create an engine using the DATABASE_URL environment variable."""
    url = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)
    return create_engine(url, pool_pre_ping=True, future=True)


def dialect_insert(conn: Connection, table: Table):
    """Return an INSERT construct that supports ``on_conflict_do_update``."""
    if conn.dialect.name == "sqlite":
        return sqlite.insert(table)
    return postgresql.insert(table)
