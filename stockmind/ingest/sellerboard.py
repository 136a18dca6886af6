"""Sellerboard daily CSV synchronization."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date
from typing import Sequence

import httpx
from sqlalchemy.engine import Engine

from stockmind.errors import ConfigurationError, SourceFetchError
from stockmind.ingest.csv_table import parse_csv
from stockmind.ingest.models import DailySalesRecord, MarketplaceSource
from stockmind.ingest.normalize import CsvSchema, normalize_rows
from stockmind.ingest.upsert import DailySalesUpserter
from stockmind.utils.dates import format_date
from stockmind.utils.retry import retry_async

logger = logging.getLogger(__name__)

USER_AGENT = "StockmindDailySync/1.0"
REFRESH_STEP = "refresh"

RefreshHook = Callable[[str, list[str]], Awaitable[object]]


@dataclass(slots=True)
class MarketplaceOutcome:
    marketplace: str
    rows_imported: int
    report_date: date | None
    dropped: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class SyncFailure:
    marketplace: str
    error: str


@dataclass(slots=True)
class SyncReport:
    outcomes: list[MarketplaceOutcome] = field(default_factory=list)
    failures: list[SyncFailure] = field(default_factory=list)
    skus: list[str] = field(default_factory=list)
    refreshed: bool = False

    @property
    def imported(self) -> int:
        return sum(outcome.rows_imported for outcome in self.outcomes)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass(slots=True)
class ImportResult:
    schema: CsvSchema | None
    rows_imported: int
    records: int
    report_dates: list[date]
    dropped: dict[str, int]
    skus: list[str] = field(default_factory=list)


class SellerboardClient:
    def __init__(self, *, session: httpx.AsyncClient | None = None) -> None:
        self._session = session or httpx.AsyncClient(
            timeout=60.0,
            follow_redirects=True,
            headers={"Accept": "text/csv", "User-Agent": USER_AGENT},
        )

    async def close(self) -> None:
        await self._session.aclose()

    async def fetch_csv(self, url: str) -> str:
        response = await retry_async(self._session.get)(url)
        if response.is_error:
            raise SourceFetchError(
                f"Sellerboard CSV fetch failed ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            )
        return response.text


class DailySyncOrchestrator:
    """Pull each configured marketplace feed and persist its latest day.

    Marketplaces run one after another; a failure in one is recorded in the
    report and does not stop the others. The aggregate refresh fires once at
    the end for every SKU written during the run.
    """

    def __init__(
        self,
        engine: Engine,
        owner_id: str,
        sources: Sequence[MarketplaceSource],
        *,
        client: SellerboardClient | None = None,
        upserter: DailySalesUpserter | None = None,
        refresh: RefreshHook | None = None,
    ) -> None:
        self.engine = engine
        self.owner_id = owner_id
        self.sources = list(sources)
        self.client = client or SellerboardClient()
        self.upserter = upserter or DailySalesUpserter(engine)
        self.refresh = refresh

    async def run(self, *, report_date: date | None = None) -> SyncReport:
        if not self.sources:
            raise ConfigurationError("No SELLERBOARD_DAILY_URL_* configured")
        report = SyncReport()
        skus: set[str] = set()
        for source in self.sources:
            try:
                outcome, written = await self._sync_source(source, report_date)
            except Exception as exc:
                logger.warning("Daily sync failed for %s: %s", source.marketplace, exc)
                report.failures.append(SyncFailure(marketplace=source.marketplace, error=str(exc)))
                continue
            report.outcomes.append(outcome)
            if outcome.rows_imported:
                skus.update(record.sku for record in written)

        report.skus = sorted(skus)
        if report.imported > 0 and self.refresh is not None:
            try:
                await self.refresh(self.owner_id, report.skus)
            except Exception as exc:
                logger.error("Aggregate refresh failed for %s SKUs: %s", len(report.skus), exc)
                report.failures.append(SyncFailure(marketplace=REFRESH_STEP, error=f"aggregate refresh failed: {exc}"))
            else:
                report.refreshed = True
        logger.info(
            "Daily sync finished: %s rows across %s marketplaces, %s failures",
            report.imported,
            len(report.outcomes),
            len(report.failures),
        )
        return report

    async def _sync_source(
        self, source: MarketplaceSource, pinned_date: date | None
    ) -> tuple[MarketplaceOutcome, list[DailySalesRecord]]:
        csv_text = await self.client.fetch_csv(source.url)
        rows = parse_csv(csv_text)
        batch = normalize_rows(rows, default_marketplace=source.marketplace)
        dropped = dict(batch.dropped)
        if dropped:
            logger.info("Dropped rows for %s: %s", source.marketplace, dropped)
        if not batch.records:
            return MarketplaceOutcome(source.marketplace, 0, None, dropped), []

        # Feeds lag behind; the newest day present is the last complete one.
        target = pinned_date or max(batch.report_dates)
        selected = [record for record in batch.records if record.report_date == target]
        if not selected:
            return MarketplaceOutcome(source.marketplace, 0, target, dropped), []

        written = await asyncio.get_running_loop().run_in_executor(
            None, self.upserter.upsert, self.owner_id, selected
        )
        logger.info("Imported %s rows for %s on %s", written, source.marketplace, format_date(target))
        return MarketplaceOutcome(source.marketplace, written, target, dropped), selected


async def import_csv_text(
    engine: Engine,
    owner_id: str,
    csv_text: str,
    *,
    filename: str | None = None,
    start: date | None = None,
    end: date | None = None,
    upserter: DailySalesUpserter | None = None,
) -> ImportResult:
    """Import a manually uploaded export of either shape without date filtering."""
    if (start is None) != (end is None):
        raise ValueError("start and end must be given together")
    date_range = (start, end) if start and end else None
    rows = parse_csv(csv_text)
    batch = normalize_rows(rows, date_range=date_range, filename=filename)
    upserter = upserter or DailySalesUpserter(engine)
    written = await asyncio.get_running_loop().run_in_executor(
        None, upserter.upsert, owner_id, batch.records
    )
    logger.info("Imported %s rows from %s (%s)", written, filename or "upload", batch.schema)
    return ImportResult(
        schema=batch.schema,
        rows_imported=written,
        records=len(batch.records),
        report_dates=sorted(batch.report_dates),
        dropped=dict(batch.dropped),
        skus=sorted({record.sku for record in batch.records}),
    )
