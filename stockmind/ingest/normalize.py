"""Sellerboard row normalization.

Two export shapes reach the pipeline:

* the *daily* export has explicit ``Date`` and ``ASIN`` columns and splits
  units and sales by channel (organic, PPC, sponsored products, sponsored
  display);
* the *summary* export has one row per product covering an arbitrary window
  and no date column. Its totals are spread evenly across the window so that
  both shapes land as one :class:`DailySalesRecord` per product per day.

The shape is detected once per file from its headers. Rows missing an
identity field are dropped and counted by reason rather than raised.
"""

from __future__ import annotations

import enum
import math
import os
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Mapping

from stockmind.ingest import load_reference
from stockmind.ingest.models import DailySalesRecord
from stockmind.utils.dates import days_in_range

ASIN_COLUMNS = ("asin",)
SKU_COLUMNS = ("sku", "sellersku")
MARKETPLACE_COLUMNS = ("marketplace", "market")
DATE_COLUMNS = ("date", "reportdate")
TITLE_COLUMNS = ("name", "product", "title", "productname")
CATEGORY_COLUMNS = ("category", "productgroup")
UNITS_CHANNEL_COLUMNS = ("unitsorganic", "unitsppc", "unitssponsoredproducts", "unitssponsoreddisplay")
SALES_CHANNEL_COLUMNS = ("salesorganic", "salesppc", "salessponsoredproducts", "salessponsoreddisplay")
UNITS_TOTAL_COLUMNS = ("units", "unitstotal", "unitssold")
SALES_TOTAL_COLUMNS = ("sales", "salestotal", "revenue")
NET_PROFIT_COLUMNS = ("netprofit",)
ROI_COLUMNS = ("roi",)
COST_COLUMNS = ("costofgoods", "cogs", "productcost")

SPACE_CHARS = (" ", "\u00a0", "\u202f", "\u2009", "\u2007")
STRIP_CHARS = ("%", "€", "£", "$")

ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
SLASH_DATE_RE = re.compile(r"^(\d{1,2})[./-](\d{1,2})[./-](\d{4})$")
FILENAME_RANGE_RE = re.compile(r"(\d{2})_(\d{2})_(\d{4})-(\d{2})_(\d{2})_(\d{4})")


class CsvSchema(enum.Enum):
    DAILY = "daily"
    SUMMARY = "summary"


@dataclass(slots=True)
class NormalizedBatch:
    schema: CsvSchema | None
    records: list[DailySalesRecord] = field(default_factory=list)
    dropped: Counter = field(default_factory=Counter)

    @property
    def report_dates(self) -> set[date]:
        return {record.report_date for record in self.records}


def parse_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    text = str(value).strip()
    for char in SPACE_CHARS + STRIP_CHARS:
        text = text.replace(char, "")
    if not text:
        return 0.0
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        number = float(text)
    except ValueError:
        return 0.0
    return number if math.isfinite(number) else 0.0


def parse_int(value: Any) -> int:
    return int(round(parse_number(value)))


def parse_report_date(value: Any, *, day_first: bool = False) -> date | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    text = text.split()[0].split("T")[0]
    try:
        iso = ISO_DATE_RE.match(text)
        if iso:
            year, month, day = (int(part) for part in iso.groups())
            return date(year, month, day)
        match = SLASH_DATE_RE.match(text)
        if not match:
            return None
        first, second, year = (int(part) for part in match.groups())
        if first > 12 or (day_first and second <= 12):
            return date(year, second, first)
        return date(year, first, second)
    except ValueError:
        return None


def map_marketplace(value: str | None) -> str:
    reference = load_reference()
    default = reference["default_marketplace"]
    if not value:
        return default
    text = value.strip().lower()
    if text.startswith("www."):
        text = text[4:]
    mapped = reference["marketplaces"].get(text)
    if mapped:
        return mapped
    code = text.upper()
    if code in _known_codes():
        return code
    return default


def map_category(value: str | None) -> str:
    if not value:
        return "other"
    categories: Mapping[str, str] = load_reference()["categories"]
    if value in categories:
        return categories[value]
    for name, code in categories.items():
        if name in value:
            return code
    return "other"


def detect_schema(headers: Iterable[str]) -> CsvSchema:
    keys = {_header_key(header) for header in headers}
    if keys & set(DATE_COLUMNS) and keys & set(ASIN_COLUMNS):
        return CsvSchema.DAILY
    return CsvSchema.SUMMARY


def infer_date_range(filename: str | None) -> tuple[date, date] | None:
    """Read a ``DD_MM_YYYY-DD_MM_YYYY`` window out of an export file name."""
    if not filename:
        return None
    match = FILENAME_RANGE_RE.search(filename)
    if not match:
        return None
    d1, m1, y1, d2, m2, y2 = (int(part) for part in match.groups())
    try:
        start, end = date(y1, m1, d1), date(y2, m2, d2)
    except ValueError:
        return None
    if end < start:
        return None
    return start, end


def distribute_evenly(total: int, parts: int) -> list[int]:
    """Split ``total`` into ``parts`` integers that sum exactly to ``total``.

    The remainder goes one unit at a time to the leading parts, so 100 over
    three days is ``[34, 33, 33]``.
    """
    if parts <= 0:
        return []
    sign = -1 if total < 0 else 1
    base, remainder = divmod(abs(total), parts)
    return [sign * (base + (1 if idx < remainder else 0)) for idx in range(parts)]


def distribute_amount(total: float, parts: int) -> list[float]:
    cents = distribute_evenly(int(round(total * 100)), parts)
    return [value / 100 for value in cents]


def normalize_daily_row(
    row: Mapping[str, str],
    *,
    default_marketplace: str | None = None,
    day_first: bool = False,
) -> tuple[DailySalesRecord | None, str | None]:
    lookup = _keyed(row)
    identity, reason = _identity(lookup, default_marketplace)
    if identity is None:
        return None, reason
    report_date = parse_report_date(_first(lookup, DATE_COLUMNS), day_first=day_first)
    if report_date is None:
        return None, "missing_date"
    asin, sku, marketplace = identity
    units = _units(lookup)
    cost = _cost_per_unit(lookup, units)
    return (
        DailySalesRecord(
            report_date=report_date,
            marketplace=marketplace,
            asin=asin,
            sku=sku,
            title=_first(lookup, TITLE_COLUMNS),
            units_total=units,
            revenue_total=_revenue(lookup),
            net_profit=parse_number(_first(lookup, NET_PROFIT_COLUMNS)),
            roi=parse_number(_first(lookup, ROI_COLUMNS)),
            cost_of_goods=cost,
            category=map_category(_first(lookup, CATEGORY_COLUMNS)),
            raw=dict(row),
        ),
        None,
    )


def normalize_summary_row(
    row: Mapping[str, str],
    date_range: tuple[date, date] | None,
    *,
    default_marketplace: str | None = None,
) -> tuple[list[DailySalesRecord], str | None]:
    lookup = _keyed(row)
    identity, reason = _identity(lookup, default_marketplace)
    if identity is None:
        return [], reason
    days = days_in_range(*date_range) if date_range else []
    if not days:
        return [], "missing_date"
    asin, sku, marketplace = identity
    units = _units(lookup)
    cost = _cost_per_unit(lookup, units)
    roi = parse_number(_first(lookup, ROI_COLUMNS))
    title = _first(lookup, TITLE_COLUMNS)
    category = map_category(_first(lookup, CATEGORY_COLUMNS))
    units_split = distribute_evenly(units, len(days))
    revenue_split = distribute_amount(_revenue(lookup), len(days))
    profit_split = distribute_amount(parse_number(_first(lookup, NET_PROFIT_COLUMNS)), len(days))
    records = [
        DailySalesRecord(
            report_date=day,
            marketplace=marketplace,
            asin=asin,
            sku=sku,
            title=title,
            units_total=units_split[idx],
            revenue_total=revenue_split[idx],
            net_profit=profit_split[idx],
            roi=roi,
            cost_of_goods=cost,
            category=category,
            raw=dict(row),
        )
        for idx, day in enumerate(days)
    ]
    return records, None


def normalize_rows(
    rows: list[Mapping[str, str]],
    *,
    default_marketplace: str | None = None,
    date_range: tuple[date, date] | None = None,
    filename: str | None = None,
    day_first: bool | None = None,
) -> NormalizedBatch:
    """Normalize every row of one parsed file, counting dropped rows by reason."""
    if not rows:
        return NormalizedBatch(schema=None)
    if day_first is None:
        day_first = os.environ.get("SELLERBOARD_DAY_FIRST", "0").lower() in {"1", "true", "yes"}
    schema = detect_schema(rows[0].keys())
    batch = NormalizedBatch(schema=schema)
    if schema is CsvSchema.SUMMARY and date_range is None:
        date_range = infer_date_range(filename)
    for row in rows:
        if schema is CsvSchema.DAILY:
            record, reason = normalize_daily_row(row, default_marketplace=default_marketplace, day_first=day_first)
            records = [record] if record else []
        else:
            records, reason = normalize_summary_row(row, date_range, default_marketplace=default_marketplace)
        if reason:
            batch.dropped[reason] += 1
        batch.records.extend(records)
    return batch


def _header_key(header: str) -> str:
    return "".join(char for char in header.lower() if char.isalnum())


def _keyed(row: Mapping[str, str]) -> dict[str, str]:
    return {_header_key(key): (value or "").strip() for key, value in row.items()}


def _first(lookup: Mapping[str, str], columns: Iterable[str]) -> str:
    for column in columns:
        value = lookup.get(column)
        if value:
            return value
    return ""


def _has_any(lookup: Mapping[str, str], columns: Iterable[str]) -> bool:
    return any(column in lookup for column in columns)


def _identity(
    lookup: Mapping[str, str], default_marketplace: str | None
) -> tuple[tuple[str, str, str] | None, str | None]:
    asin = _first(lookup, ASIN_COLUMNS).upper()
    if not asin:
        return None, "missing_asin"
    sku = _first(lookup, SKU_COLUMNS)
    if not sku:
        return None, "missing_sku"
    raw_marketplace = _first(lookup, MARKETPLACE_COLUMNS) or default_marketplace
    if not raw_marketplace:
        return None, "missing_marketplace"
    return (asin, sku, map_marketplace(raw_marketplace)), None


def _units(lookup: Mapping[str, str]) -> int:
    if _has_any(lookup, UNITS_CHANNEL_COLUMNS):
        return sum(parse_int(lookup.get(column)) for column in UNITS_CHANNEL_COLUMNS)
    return parse_int(_first(lookup, UNITS_TOTAL_COLUMNS))


def _revenue(lookup: Mapping[str, str]) -> float:
    if _has_any(lookup, SALES_CHANNEL_COLUMNS):
        return round(sum(parse_number(lookup.get(column)) for column in SALES_CHANNEL_COLUMNS), 2)
    return parse_number(_first(lookup, SALES_TOTAL_COLUMNS))


def _cost_per_unit(lookup: Mapping[str, str], units: int) -> float | None:
    if units <= 0:
        return None
    return round(abs(parse_number(_first(lookup, COST_COLUMNS))) / units, 4)


def _known_codes() -> set[str]:
    reference = load_reference()
    return set(reference["marketplaces"].values()) | set(reference["keepa_domains"]) | set(reference["sync_order"])
