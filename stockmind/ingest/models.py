"""Ingestion data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Mapping

from stockmind.db.tables import IDENTITY_FIELD


@dataclass(slots=True)
class MarketplaceSource:
    marketplace: str
    url: str


@dataclass(slots=True)
class DailySalesRecord:
    report_date: date
    marketplace: str
    asin: str
    sku: str
    title: str
    units_total: int = 0
    revenue_total: float = 0.0
    net_profit: float = 0.0
    roi: float = 0.0
    cost_of_goods: float | None = None
    category: str = "other"
    raw: Mapping[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> str:
        return getattr(self, IDENTITY_FIELD)

    @property
    def dedup_key(self) -> tuple[date, str, str]:
        return (self.report_date, self.marketplace, self.identity)

    def to_row(self, owner_id: str) -> dict[str, Any]:
        return {
            "owner_id": owner_id,
            "report_date": self.report_date,
            "marketplace": self.marketplace,
            "asin": self.asin,
            "sku": self.sku,
            "title": self.title,
            "category": self.category,
            "units_total": self.units_total or 0,
            "revenue_total": self.revenue_total or 0.0,
            "net_profit": self.net_profit or 0.0,
            "roi": self.roi or 0.0,
            "cost_of_goods": self.cost_of_goods,
            "raw": dict(self.raw) if self.raw else None,
        }


@dataclass(slots=True)
class ImageCandidate:
    owner_id: str
    asin: str
    marketplace: str | None
