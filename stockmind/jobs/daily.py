"""Daily Sellerboard sync job."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from datetime import date

from dotenv import load_dotenv

from stockmind.db.session import create_engine_from_env
from stockmind.ingest import load_sources, owner_id_from_env
from stockmind.ingest.sellerboard import DailySyncOrchestrator, SellerboardClient, SyncReport
from stockmind.logic.aggregates import ProductAggregateRefresher
from stockmind.utils.dates import parse_iso_date

logger = logging.getLogger(__name__)


async def run_daily_sync(report_date: date | None = None) -> SyncReport:
    load_dotenv()
    engine = create_engine_from_env()
    client = SellerboardClient()
    orchestrator = DailySyncOrchestrator(
        engine,
        owner_id_from_env(),
        load_sources(),
        client=client,
        refresh=ProductAggregateRefresher(engine),
    )
    try:
        report = await orchestrator.run(report_date=report_date)
    finally:
        await client.close()
    for failure in report.failures:
        logger.warning("Daily sync failure in %s: %s", failure.marketplace, failure.error)
    return report


if __name__ == "__main__":
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    pinned = parse_iso_date(sys.argv[1]) if len(sys.argv) > 1 else None
    asyncio.run(run_daily_sync(pinned))
