"""Ingestion helpers."""

from __future__ import annotations

import functools
import os
import pathlib
from typing import Any, Mapping

import yaml

from stockmind.errors import ConfigurationError
from stockmind.ingest.models import MarketplaceSource

REFERENCE_PATH = pathlib.Path(__file__).with_name("marketplaces.yml")
SOURCE_ENV_PREFIX = "SELLERBOARD_DAILY_URL_"


@functools.lru_cache(maxsize=1)
def load_reference() -> dict[str, Any]:
    return yaml.safe_load(REFERENCE_PATH.read_text())


def load_sources(env: Mapping[str, str] | None = None) -> list[MarketplaceSource]:
    """Configured per-marketplace daily CSV URLs, in sync order."""
    env = os.environ if env is None else env
    order = load_reference()["sync_order"]
    configured = {
        key[len(SOURCE_ENV_PREFIX):].upper(): value.strip()
        for key, value in env.items()
        if key.startswith(SOURCE_ENV_PREFIX) and value and value.strip()
    }
    ranked = sorted(configured, key=lambda code: (order.index(code) if code in order else len(order), code))
    return [MarketplaceSource(marketplace=code, url=configured[code]) for code in ranked]


def owner_id_from_env(env: Mapping[str, str] | None = None) -> str:
    env = os.environ if env is None else env
    owner_id = (env.get("STOCKMIND_OWNER_ID") or "").strip()
    if not owner_id:
        raise ConfigurationError("Missing STOCKMIND_OWNER_ID")
    return owner_id
