"""Idempotent batch persistence for daily sales records."""

from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import func, or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from stockmind.db.session import dialect_insert
from stockmind.db.tables import IDENTITY_FIELD, sellerboard_daily
from stockmind.errors import PersistenceError
from stockmind.ingest.models import DailySalesRecord

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500
MAX_BATCH_SIZE = 5000

CONFLICT_COLUMNS = ("owner_id", IDENTITY_FIELD, "marketplace", "report_date")
UPDATE_COLUMNS = (
    "asin",
    "sku",
    "title",
    "category",
    "units_total",
    "revenue_total",
    "net_profit",
    "roi",
    "cost_of_goods",
    "raw",
)
# JSON columns have no equality operator on PostgreSQL, so raw never decides a no-op.
CHANGE_COLUMNS = tuple(column for column in UPDATE_COLUMNS if column != "raw")


def dedupe_records(records: Iterable[DailySalesRecord]) -> list[DailySalesRecord]:
    """Keep the first record seen for each (report_date, marketplace, identity)."""
    unique: dict[tuple, DailySalesRecord] = {}
    for record in records:
        unique.setdefault(record.dedup_key, record)
    return list(unique.values())


class DailySalesUpserter:
    def __init__(self, engine: Engine, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self.engine = engine
        self.batch_size = _clamp_batch_size(batch_size)

    def upsert(self, owner_id: str, records: Iterable[DailySalesRecord], batch_size: int | None = None) -> int:
        """Write ``records`` in slices and return the number of rows the store changed.

        A failing slice stops the run and raises :class:`PersistenceError`;
        slices written before it stay committed.
        """
        size = _clamp_batch_size(batch_size) if batch_size else self.batch_size
        records = list(records)
        unique = dedupe_records(records)
        if not unique:
            return 0
        if len(unique) < len(records):
            logger.info("Collapsed %s duplicate daily rows", len(records) - len(unique))
        total = 0
        for start in range(0, len(unique), size):
            batch = [record.to_row(owner_id) for record in unique[start : start + size]]
            try:
                total += self._write_batch(batch)
            except SQLAlchemyError as exc:
                logger.error("Daily upsert failed at row %s of %s: %s", start, len(unique), exc)
                raise PersistenceError(f"Daily upsert failed at row {start}: {exc}") from exc
        logger.info("Upserted %s daily rows for owner %s (%s submitted)", total, owner_id, len(unique))
        return total

    def _write_batch(self, rows: list[dict]) -> int:
        with self.engine.begin() as conn:
            insert_stmt = dialect_insert(conn, sellerboard_daily)
            excluded = insert_stmt.excluded
            stmt = (
                insert_stmt.values(rows)
                .on_conflict_do_update(
                    index_elements=list(CONFLICT_COLUMNS),
                    set_={**{column: excluded[column] for column in UPDATE_COLUMNS}, "synced_at": func.current_timestamp()},
                    where=or_(
                        *(
                            sellerboard_daily.c[column].is_distinct_from(excluded[column])
                            for column in CHANGE_COLUMNS
                        )
                    ),
                )
                .returning(sellerboard_daily.c.id)
            )
            result = conn.execute(stmt)
            return len(result.fetchall())


def _clamp_batch_size(value: int) -> int:
    return max(1, min(MAX_BATCH_SIZE, int(value)))
