"""Celery configuration for scheduled jobs."""

from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab

from stockmind.utils.dates import timezone_name

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")

celery_app = Celery(
    "stockmind",
    broker=broker_url,
    backend=backend_url,
    include=["stockmind.jobs.daily", "stockmind.jobs.images"],
)
celery_app.conf.timezone = timezone_name()
celery_app.conf.beat_schedule = {
    "sellerboard-daily-sync": {
        "task": "stockmind.jobs.daily.run_daily_sync",
        "schedule": crontab(minute=int(os.environ.get("DAILY_SYNC_MINUTE", "15"))),
    },
    "keepa-image-sync": {
        "task": "stockmind.jobs.images.run_image_sync",
        "schedule": crontab(hour=int(os.environ.get("IMAGE_SYNC_HOUR", "3")), minute=0),
    },
}


@celery_app.task(name="stockmind.jobs.daily.run_daily_sync")
def run_daily_sync_task() -> dict:  # pragma: no cover - executed by worker
    import asyncio

    from stockmind.jobs.daily import run_daily_sync

    report = asyncio.run(run_daily_sync())
    return {"imported": report.imported, "failures": [f"{f.marketplace}: {f.error}" for f in report.failures]}


@celery_app.task(name="stockmind.jobs.images.run_image_sync")
def run_image_sync_task() -> dict:  # pragma: no cover - executed by worker
    import asyncio
    from dataclasses import asdict

    from stockmind.jobs.images import run_image_sync

    return asdict(asyncio.run(run_image_sync()))
