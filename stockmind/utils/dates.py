"""Datetime helpers."""

from __future__ import annotations

import os
from datetime import date, timedelta

import pendulum

DEFAULT_TZ = "Europe/Bucharest"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def now_in_tz() -> pendulum.DateTime:
    tz = pendulum.timezone(timezone_name())
    return pendulum.now(tz)


def today_in_tz() -> date:
    return now_in_tz().date()


def parse_iso_date(value: str) -> date:
    return pendulum.parse(value).date()


def format_date(value: date) -> str:
    return value.strftime("%Y-%m-%d")


def days_in_range(start: date, end: date) -> list[date]:
    """Every calendar day from ``start`` to ``end`` inclusive."""
    if end < start:
        return []
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]
