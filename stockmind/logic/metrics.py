"""Date-range rollups over persisted daily sales."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterator, NamedTuple

import numpy as np
from sqlalchemy import select
from sqlalchemy.engine import Engine

from stockmind.db.tables import IDENTITY_FIELD, sellerboard_daily

logger = logging.getLogger(__name__)

PAGE_SIZE = 1000
ALL_MARKETS = "all"
MERGED_MARKETPLACE = "ALL"


class ProductKey(NamedTuple):
    identity: str
    marketplace: str


@dataclass(slots=True)
class ProductMetrics:
    asin: str | None = None
    title: str | None = None
    units: int = 0
    revenue: float = 0.0
    profit: float = 0.0
    days: int = 0
    sum_squares: float = 0.0
    volatility: float = 0.0

    @property
    def profit_unit(self) -> float:
        return self.profit / self.units if self.units > 0 else 0.0

    def add(self, units: int, revenue: float, profit: float) -> None:
        self.units += units
        self.revenue += revenue
        self.profit += profit
        self.days += 1
        self.sum_squares += float(units) ** 2


def coefficient_of_variation(total: float, sum_squares: float, days: int) -> float:
    """stddev / mean of daily units from running sums; 0 when the mean is 0."""
    if days <= 0:
        return 0.0
    mean = total / days
    if mean == 0:
        return 0.0
    mean_square = sum_squares / days
    # E[x^2] - mean^2 cancels to float noise on flat series
    if np.isclose(mean_square, mean**2, rtol=1e-9, atol=0.0):
        return 0.0
    variance = np.clip(mean_square - mean**2, 0.0, None)
    return float(np.sqrt(variance) / mean)


def merge_marketplaces(groups: dict[ProductKey, ProductMetrics]) -> dict[ProductKey, ProductMetrics]:
    """Fold per-marketplace groups into one entry per identity.

    Units, revenue and profit are summed. Volatility is the largest of the
    contributing marketplaces and is not recomputed from the combined series.
    """
    merged: dict[ProductKey, ProductMetrics] = {}
    for key, metrics in groups.items():
        target_key = ProductKey(key.identity, MERGED_MARKETPLACE)
        target = merged.get(target_key)
        if target is None:
            merged[target_key] = ProductMetrics(
                asin=metrics.asin,
                title=metrics.title,
                units=metrics.units,
                revenue=metrics.revenue,
                profit=metrics.profit,
                days=metrics.days,
                sum_squares=metrics.sum_squares,
                volatility=metrics.volatility,
            )
            continue
        target.units += metrics.units
        target.revenue += metrics.revenue
        target.profit += metrics.profit
        target.days += metrics.days
        target.sum_squares += metrics.sum_squares
        target.volatility = max(target.volatility, metrics.volatility)
        target.asin = target.asin or metrics.asin
        target.title = target.title or metrics.title
    return merged


class RangeMetricsAggregator:
    def __init__(self, engine: Engine, *, page_size: int = PAGE_SIZE) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.engine = engine
        self.page_size = page_size

    def aggregate(
        self,
        owner_id: str,
        start: date,
        end: date,
        marketplace: str | None = None,
    ) -> dict[ProductKey, ProductMetrics]:
        if start > end:
            raise ValueError(f"start {start} is after end {end}")
        merge = marketplace is not None and marketplace.lower() == ALL_MARKETS
        only = None if merge or not marketplace else marketplace.upper()

        groups: dict[ProductKey, ProductMetrics] = {}
        for row in self._iter_rows(owner_id, start, end, only):
            key = ProductKey(row.identity, row.marketplace)
            metrics = groups.get(key)
            if metrics is None:
                metrics = groups[key] = ProductMetrics(asin=row.asin, title=row.title)
            metrics.add(row.units_total or 0, row.revenue_total or 0.0, row.net_profit or 0.0)

        for metrics in groups.values():
            metrics.volatility = coefficient_of_variation(metrics.units, metrics.sum_squares, metrics.days)
        if merge:
            groups = merge_marketplaces(groups)
        logger.debug("Aggregated %s products for %s between %s and %s", len(groups), owner_id, start, end)
        return groups

    def _iter_rows(self, owner_id: str, start: date, end: date, marketplace: str | None) -> Iterator:
        table = sellerboard_daily
        query = (
            select(
                table.c[IDENTITY_FIELD].label("identity"),
                table.c.marketplace,
                table.c.asin,
                table.c.title,
                table.c.units_total,
                table.c.revenue_total,
                table.c.net_profit,
            )
            .where(table.c.owner_id == owner_id, table.c.report_date.between(start, end))
            .order_by(table.c.id)
        )
        if marketplace:
            query = query.where(table.c.marketplace == marketplace)
        offset = 0
        with self.engine.connect() as conn:
            while True:
                page = conn.execute(query.limit(self.page_size).offset(offset)).all()
                yield from page
                if len(page) < self.page_size:
                    break
                offset += self.page_size
