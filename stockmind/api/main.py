"""FastAPI triggers for the sync loops, manual imports and range metrics."""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import date, timedelta

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.engine import Engine

from stockmind.db.session import create_engine_from_env
from stockmind.errors import ConfigurationError, PersistenceError
from stockmind.ingest import load_sources, owner_id_from_env
from stockmind.ingest.keepa import ImageStore, KeepaClient, KeepaImageResolver, KeepaSettings
from stockmind.ingest.models import MarketplaceSource
from stockmind.ingest.sellerboard import DailySyncOrchestrator, SellerboardClient, import_csv_text
from stockmind.logic.aggregates import ProductAggregateRefresher
from stockmind.logic.metrics import RangeMetricsAggregator
from stockmind.utils.dates import today_in_tz

logger = logging.getLogger(__name__)

app = FastAPI(title="Stockmind Sync API")

DEFAULT_WINDOW_DAYS = 30


class DailySyncRequest(BaseModel):
    report_date: date | None = None


class MarketplaceResult(BaseModel):
    marketplace: str
    rows_imported: int
    report_date: date | None
    dropped: dict[str, int]


class DailySyncResponse(BaseModel):
    ok: bool
    imported: int
    marketplaces: list[MarketplaceResult]
    failures: list[str]
    refreshed: bool


class ImageSyncRequest(BaseModel):
    owner_id: str | None = None
    batch_size: int | None = None
    max_items: int | None = None


class ImageSyncResponse(BaseModel):
    processed: int
    found: int
    reused_from_cache: int
    not_found: int
    failed: int
    stopped_for_quota: bool
    total_scanned: int
    failures: list[str]


class CsvImportRequest(BaseModel):
    owner_id: str
    csv_text: str
    filename: str | None = None
    start: date | None = None
    end: date | None = None


class CsvImportResponse(BaseModel):
    schema_name: str | None
    rows_imported: int
    records: int
    report_dates: list[date]
    dropped: dict[str, int]


class MetricsRow(BaseModel):
    sku: str
    marketplace: str
    asin: str | None
    title: str | None
    units: int
    revenue: float
    profit: float
    profit_unit: float
    volatility: float


def get_engine() -> Engine:
    return create_engine_from_env()


def get_owner_id() -> str:
    return owner_id_from_env()


def get_sources() -> list[MarketplaceSource]:
    return load_sources()


def get_keepa_settings() -> KeepaSettings:
    return KeepaSettings.from_env()


@app.post("/sync/daily", response_model=DailySyncResponse)
async def sync_daily(
    payload: DailySyncRequest | None = None,
    engine: Engine = Depends(get_engine),
    owner_id: str = Depends(get_owner_id),
    sources: list[MarketplaceSource] = Depends(get_sources),
) -> DailySyncResponse:
    client = SellerboardClient()
    orchestrator = DailySyncOrchestrator(
        engine, owner_id, sources, client=client, refresh=ProductAggregateRefresher(engine)
    )
    try:
        report = await orchestrator.run(report_date=payload.report_date if payload else None)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        await client.close()
    return DailySyncResponse(
        ok=report.ok,
        imported=report.imported,
        marketplaces=[MarketplaceResult(**asdict(outcome)) for outcome in report.outcomes],
        failures=[f"{failure.marketplace}: {failure.error}" for failure in report.failures],
        refreshed=report.refreshed,
    )


@app.post("/sync/images", response_model=ImageSyncResponse)
async def sync_images(
    payload: ImageSyncRequest | None = None,
    engine: Engine = Depends(get_engine),
    settings: KeepaSettings = Depends(get_keepa_settings),
) -> ImageSyncResponse:
    payload = payload or ImageSyncRequest()
    if payload.owner_id:
        settings.owner_id = payload.owner_id
    client = KeepaClient()
    resolver = KeepaImageResolver(ImageStore(engine), client, settings)
    try:
        summary = await resolver.run(batch_size=payload.batch_size, max_items=payload.max_items)
    finally:
        await client.close()
    return ImageSyncResponse(**asdict(summary))


@app.post("/import/csv", response_model=CsvImportResponse)
async def import_csv(payload: CsvImportRequest, engine: Engine = Depends(get_engine)) -> CsvImportResponse:
    try:
        result = await import_csv_text(
            engine,
            payload.owner_id,
            payload.csv_text,
            filename=payload.filename,
            start=payload.start,
            end=payload.end,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    if result.rows_imported:
        await ProductAggregateRefresher(engine)(payload.owner_id, result.skus)
    return CsvImportResponse(
        schema_name=result.schema.value if result.schema else None,
        rows_imported=result.rows_imported,
        records=result.records,
        report_dates=result.report_dates,
        dropped=result.dropped,
    )


@app.get("/metrics", response_model=list[MetricsRow])
def range_metrics(
    owner_id: str,
    start: date | None = None,
    end: date | None = None,
    marketplace: str | None = Query(None, description="Marketplace code, or 'all' to merge marketplaces"),
    engine: Engine = Depends(get_engine),
) -> list[MetricsRow]:
    end = end or today_in_tz()
    start = start or end - timedelta(days=DEFAULT_WINDOW_DAYS - 1)
    try:
        groups = RangeMetricsAggregator(engine).aggregate(owner_id, start, end, marketplace)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [
        MetricsRow(
            sku=key.identity,
            marketplace=key.marketplace,
            asin=metrics.asin,
            title=metrics.title,
            units=metrics.units,
            revenue=round(metrics.revenue, 2),
            profit=round(metrics.profit, 2),
            profit_unit=round(metrics.profit_unit, 4),
            volatility=round(metrics.volatility, 4),
        )
        for key, metrics in sorted(groups.items())
    ]
