"""Rolling per-product aggregates recomputed after each daily sync."""

from __future__ import annotations

import asyncio
import logging
from datetime import date, timedelta
from typing import Sequence

import pandas as pd
from sqlalchemy import func, select
from sqlalchemy.engine import Connection, Engine

from stockmind.db.session import dialect_insert
from stockmind.db.tables import products, sellerboard_daily
from stockmind.logic.metrics import coefficient_of_variation

logger = logging.getLogger(__name__)

WINDOW_DAYS = 30
HISTORY_DAYS = 365
PEAK_FACTOR = 1.3
SKU_CHUNK = 500

COLUMNS = [
    "report_date",
    "sku",
    "marketplace",
    "asin",
    "title",
    "category",
    "units_total",
    "revenue_total",
    "net_profit",
    "roi",
    "cost_of_goods",
]


def peak_months(frame: pd.DataFrame, as_of: date) -> list[int]:
    """Calendar months of the trailing year selling above 1.3x the monthly mean."""
    recent = frame[frame["report_date"] > as_of - timedelta(days=HISTORY_DAYS)]
    if recent.empty:
        return []
    monthly = recent.groupby(pd.to_datetime(recent["report_date"]).dt.month)["units_total"].sum()
    mean = monthly.mean()
    if mean <= 0:
        return []
    return sorted(int(month) for month in monthly[monthly > mean * PEAK_FACTOR].index)


def summarize_group(group: pd.DataFrame, as_of: date) -> dict:
    group = group.sort_values("report_date")
    window = group[group["report_date"] > as_of - timedelta(days=WINDOW_DAYS)]
    units = int(window["units_total"].sum())
    revenue = float(window["revenue_total"].sum())
    profit = float(window["net_profit"].sum())
    costs = group["cost_of_goods"].dropna()
    sold = group[group["units_total"] > 0]
    latest = group.iloc[-1]
    return {
        "asin": latest["asin"],
        "title": latest["title"],
        "category": latest["category"] or "other",
        "units_30d": units,
        "revenue_30d": round(revenue, 2),
        "profit_30d": round(profit, 2),
        "profit_unit": round(profit / units, 4) if units > 0 else 0.0,
        "cogs": float(costs.iloc[-1]) if not costs.empty else None,
        "roi": round(float(window["roi"].mean()), 2) if not window.empty else 0.0,
        "volatility_30d": coefficient_of_variation(
            units, float((window["units_total"].astype(float) ** 2).sum()), len(window)
        ),
        "days_since_last_sale": (as_of - sold["report_date"].iloc[-1]).days if not sold.empty else None,
        "peak_months": peak_months(group, as_of),
    }


class ProductAggregateRefresher:
    """Recompute ``products`` aggregates for a set of SKUs.

    Instances are awaitable refresh hooks for the daily sync: calling one
    runs :meth:`refresh` in the default executor.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    async def __call__(self, owner_id: str, skus: list[str]) -> int:
        return await asyncio.get_running_loop().run_in_executor(None, self.refresh, owner_id, skus)

    def refresh(self, owner_id: str, skus: Sequence[str], as_of: date | None = None) -> int:
        skus = sorted(set(skus))
        if not skus:
            return 0
        with self.engine.begin() as conn:
            as_of = as_of or self._latest_report_date(conn, owner_id)
            if as_of is None:
                return 0
            frame = self._load_frame(conn, owner_id, skus, as_of)
            if frame.empty:
                return 0
            rows = [
                {"owner_id": owner_id, "sku": sku, "marketplace": marketplace, **summarize_group(group, as_of)}
                for (sku, marketplace), group in frame.groupby(["sku", "marketplace"], sort=True)
            ]
            self._upsert(conn, rows)
        logger.info("Refreshed %s product aggregates for %s as of %s", len(rows), owner_id, as_of)
        return len(rows)

    @staticmethod
    def _latest_report_date(conn: Connection, owner_id: str) -> date | None:
        return conn.execute(
            select(func.max(sellerboard_daily.c.report_date)).where(sellerboard_daily.c.owner_id == owner_id)
        ).scalar_one_or_none()

    @staticmethod
    def _load_frame(conn: Connection, owner_id: str, skus: list[str], as_of: date) -> pd.DataFrame:
        table = sellerboard_daily
        rows = []
        for start in range(0, len(skus), SKU_CHUNK):
            query = select(*(table.c[column] for column in COLUMNS)).where(
                table.c.owner_id == owner_id,
                table.c.sku.in_(skus[start : start + SKU_CHUNK]),
                table.c.report_date > as_of - timedelta(days=HISTORY_DAYS),
                table.c.report_date <= as_of,
            )
            rows.extend(conn.execute(query).all())
        frame = pd.DataFrame(rows, columns=COLUMNS)
        if not frame.empty:
            frame["report_date"] = pd.to_datetime(frame["report_date"]).dt.date
        return frame

    @staticmethod
    def _upsert(conn: Connection, rows: list[dict]) -> None:
        if not rows:
            return
        stmt = dialect_insert(conn, products).values(rows)
        updated = [column for column in rows[0] if column not in {"owner_id", "sku", "marketplace"}]
        conn.execute(
            stmt.on_conflict_do_update(
                index_elements=["owner_id", "sku", "marketplace"],
                set_={
                    **{column: stmt.excluded[column] for column in updated},
                    "updated_at": func.current_timestamp(),
                },
            )
        )
