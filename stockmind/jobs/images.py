"""Nightly Keepa image backfill job."""

from __future__ import annotations

import asyncio
import logging
import os

from dotenv import load_dotenv

from stockmind.db.session import create_engine_from_env
from stockmind.ingest.keepa import ImageStore, ImageSyncSummary, KeepaClient, KeepaImageResolver, KeepaSettings

logger = logging.getLogger(__name__)


async def run_image_sync(batch_size: int | None = None, max_items: int | None = None) -> ImageSyncSummary:
    load_dotenv()
    settings = KeepaSettings.from_env()
    if not settings.key_pool:
        logger.info("No shared Keepa keys configured; only owner keys will be used")
    engine = create_engine_from_env()
    client = KeepaClient()
    resolver = KeepaImageResolver(ImageStore(engine), client, settings)
    try:
        return await resolver.run(batch_size=batch_size, max_items=max_items)
    finally:
        await client.close()


if __name__ == "__main__":
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    asyncio.run(run_image_sync())
