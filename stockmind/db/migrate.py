"""Database migration helpers."""

from __future__ import annotations

import sys

from sqlalchemy.engine import Engine
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

from stockmind.db.session import create_engine_from_env
from stockmind.db.tables import metadata


def run_migrations(engine: Engine) -> None:
    """Create any missing tables, indexes and constraints."""
    metadata.create_all(engine)


def main() -> None:
    try:
        engine = create_engine_from_env()
    except ArgumentError as exc:  # pragma: no cover - bad DATABASE_URL is user error
        print(f"Invalid DATABASE_URL: {exc}", file=sys.stderr)
        sys.exit(1)
    try:
        run_migrations(engine)
    except SQLAlchemyError as exc:
        print(f"Migration failed: {exc}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
