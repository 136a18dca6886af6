"""Keepa product image backfill.

Products synced from Sellerboard arrive without pictures. The resolver walks
that backlog oldest first and asks Keepa for each ASIN's image, reusing the
per-owner ``asin_images`` cache whenever it can. Keepa meters every lookup
against a token budget that refills slowly, so calls are paced and the run
stops at the first sign that the budget is spent. Whatever is left over is
picked up by the next scheduled run.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import httpx
from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine

from stockmind.db.session import dialect_insert
from stockmind.db.tables import asin_images, integrations, products
from stockmind.errors import (
    ConfigurationError,
    CredentialUnavailableError,
    QuotaExhaustedError,
    SourceFetchError,
)
from stockmind.ingest import load_reference
from stockmind.ingest.models import ImageCandidate
from stockmind.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

KEEPA_ENDPOINT = "https://api.keepa.com/product"
IMAGE_CDN = "https://images-na.ssl-images-amazon.com/images/I/"
CACHE_SOURCE = "keepa-sync"

MIN_BATCH_SIZE = 50
MAX_BATCH_SIZE = 2000
KEY_SPLIT_RE = re.compile(r"[,\n]")


def resolve_domain(marketplace: str | None) -> str:
    """Marketplace code Keepa can serve; EU stores without their own domain use DE."""
    reference = load_reference()
    code = (marketplace or "").strip().upper()
    if code in reference["keepa_domains"]:
        return code
    return reference["keepa_fallback"]


def keepa_domain_id(marketplace: str | None) -> int:
    return load_reference()["keepa_domains"][resolve_domain(marketplace)]


def build_image_url(images_csv: str | None) -> str | None:
    if not images_csv:
        return None
    first = images_csv.split(",")[0].strip()
    if not first:
        return None
    if first.startswith("http"):
        return first
    return f"{IMAGE_CDN}{first}"


def normalize_image_url(value: Any) -> str | None:
    """Clean image values stored as JSON arrays or wrapped in stray quotes."""
    if not value:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            first = next((item.strip() for item in parsed if isinstance(item, str) and item.strip()), None)
            if first:
                return first
        inner = re.sub(r'"?\s*\]$', "", re.sub(r'^\[\s*"?', "", text))
        text = inner.split(",")[0]
    return text.strip().strip('"') or None


@dataclass(slots=True)
class KeepaSettings:
    tokens_per_minute: float = 1.0
    safety_remaining: int = 0
    items_per_run: int = 0
    batch_size: int = 500
    key_pool: list[str] = field(default_factory=list)
    owner_id: str | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "KeepaSettings":
        env = os.environ if env is None else env
        pool = [key.strip() for key in KEY_SPLIT_RE.split(env.get("KEEPA_API_KEYS", "")) if key.strip()]
        single = (env.get("KEEPA_API_KEY") or "").strip()
        if single and single not in pool:
            pool.append(single)
        return cls(
            tokens_per_minute=max(1.0, _env_number(env, "KEEPA_TOKENS_PER_MINUTE", 1)),
            safety_remaining=max(0, int(_env_number(env, "KEEPA_TOKEN_SAFETY_REMAINING", 0))),
            items_per_run=max(0, int(_env_number(env, "KEEPA_ITEMS_PER_RUN", 0))),
            batch_size=clamp_batch_size(int(_env_number(env, "KEEPA_BATCH_SIZE", 500))),
            key_pool=pool,
            owner_id=(env.get("STOCKMIND_OWNER_ID") or "").strip() or None,
        )


def clamp_batch_size(value: int) -> int:
    return min(MAX_BATCH_SIZE, max(MIN_BATCH_SIZE, value))


def _env_number(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not str(raw).strip():
        return float(default)
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


class CredentialRotation:
    """Per-run key selection: the owner's own key, else round-robin over the pool."""

    def __init__(self, pool: Sequence[str], owner_keys: Mapping[str, str] | None = None) -> None:
        self.pool = list(pool)
        self.owner_keys = dict(owner_keys or {})
        self._cursor = 0

    def next_pool_key(self) -> str | None:
        if not self.pool:
            return None
        key = self.pool[self._cursor % len(self.pool)]
        self._cursor += 1
        return key

    def key_for(self, owner_id: str) -> str:
        key = self.owner_keys.get(owner_id) or self.next_pool_key()
        if not key:
            raise CredentialUnavailableError(f"No Keepa key available for owner {owner_id}")
        return key


@dataclass(slots=True)
class KeepaLookup:
    image_url: str | None
    tokens_left: int | None


class KeepaClient:
    def __init__(self, *, session: httpx.AsyncClient | None = None) -> None:
        self._session = session or httpx.AsyncClient(timeout=30.0, headers={"Content-Type": "application/json"})

    async def close(self) -> None:
        await self._session.aclose()

    async def lookup(
        self, key: str, asin: str, marketplace: str | None, *, safety_remaining: int = 0
    ) -> KeepaLookup:
        params = {
            "key": key,
            "domain": str(keepa_domain_id(marketplace)),
            "asin": asin,
            "stats": "0",
            "history": "0",
        }
        response = await self._session.get(KEEPA_ENDPOINT, params=params)
        if response.status_code == 429:
            raise QuotaExhaustedError(f"Keepa 429: {response.text[:180]}")
        if response.is_error:
            raise SourceFetchError(f"Keepa {response.status_code}: {response.text[:180]}", status_code=response.status_code)
        data = response.json()
        tokens_left = data.get("tokensLeft")
        if isinstance(tokens_left, (int, float)) and tokens_left <= safety_remaining:
            raise QuotaExhaustedError(f"Keepa tokens safety stop ({tokens_left})", tokens_left=int(tokens_left))
        found = data.get("products") or []
        first = found[0] if found else None
        image_url = build_image_url(first.get("imagesCSV")) if isinstance(first, dict) else None
        return KeepaLookup(image_url=image_url, tokens_left=tokens_left)


class ImageStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def load_candidates(self, limit: int, owner_id: str | None = None) -> list[ImageCandidate]:
        query = (
            select(products.c.owner_id, products.c.asin, products.c.marketplace)
            .where(products.c.asin.is_not(None), products.c.asin != "", products.c.image_url.is_(None))
            .order_by(products.c.created_at.asc(), products.c.id.asc())
            .limit(limit)
        )
        if owner_id:
            query = query.where(products.c.owner_id == owner_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).all()
        seen: dict[tuple[str, str], ImageCandidate] = {}
        for row in rows:
            seen.setdefault((row.owner_id, row.asin), ImageCandidate(row.owner_id, row.asin, row.marketplace))
        return list(seen.values())

    def load_owner_keys(self, owner_ids: Sequence[str]) -> dict[str, str]:
        if not owner_ids:
            return {}
        query = select(integrations.c.owner_id, integrations.c.keepa_api_key).where(
            integrations.c.owner_id.in_(list(owner_ids))
        )
        with self.engine.connect() as conn:
            return {row.owner_id: row.keepa_api_key for row in conn.execute(query) if row.keepa_api_key}

    def cached_image(self, owner_id: str, asin: str) -> str | None:
        query = select(asin_images.c.image_url).where(
            asin_images.c.owner_id == owner_id, asin_images.c.asin == asin
        )
        with self.engine.connect() as conn:
            return normalize_image_url(conn.execute(query).scalar_one_or_none())

    def save_image(self, owner_id: str, asin: str, image_url: str, source: str = CACHE_SOURCE) -> None:
        with self.engine.begin() as conn:
            stmt = dialect_insert(conn, asin_images).values(
                owner_id=owner_id, asin=asin, image_url=image_url, source=source
            )
            conn.execute(
                stmt.on_conflict_do_update(
                    index_elements=["owner_id", "asin"],
                    set_={
                        "image_url": stmt.excluded.image_url,
                        "source": stmt.excluded.source,
                        "updated_at": func.current_timestamp(),
                    },
                )
            )

    def apply_image(self, owner_id: str, asin: str, image_url: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(products)
                .where(products.c.owner_id == owner_id, products.c.asin == asin)
                .values(image_url=image_url, updated_at=func.current_timestamp())
            )
            return result.rowcount


@dataclass(slots=True)
class ImageSyncSummary:
    processed: int = 0
    found: int = 0
    reused_from_cache: int = 0
    not_found: int = 0
    failed: int = 0
    stopped_for_quota: bool = False
    total_scanned: int = 0
    failures: list[str] = field(default_factory=list)


class KeepaImageResolver:
    def __init__(
        self,
        store: ImageStore,
        client: KeepaClient,
        settings: KeepaSettings,
        *,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.settings = settings
        self.rate_limiter = rate_limiter or RateLimiter(per_minute=settings.tokens_per_minute)

    async def run(self, batch_size: int | None = None, max_items: int | None = None) -> ImageSyncSummary:
        limit = clamp_batch_size(batch_size) if batch_size else self.settings.batch_size
        cap = self.settings.items_per_run if max_items is None else max(0, max_items)
        candidates = await self._db(self.store.load_candidates, limit, self.settings.owner_id)
        summary = ImageSyncSummary(total_scanned=len(candidates))
        if not candidates:
            logger.info("No products with missing images")
            return summary

        owner_keys = await self._db(self.store.load_owner_keys, sorted({c.owner_id for c in candidates}))
        rotation = CredentialRotation(self.settings.key_pool, owner_keys)

        for candidate in candidates:
            if cap and summary.processed >= cap:
                break
            summary.processed += 1

            cached = await self._db(self.store.cached_image, candidate.owner_id, candidate.asin)
            if cached:
                await self._db(self.store.apply_image, candidate.owner_id, candidate.asin, cached)
                summary.reused_from_cache += 1
                continue

            try:
                key = rotation.key_for(candidate.owner_id)
            except CredentialUnavailableError as exc:
                self._record_failure(summary, candidate, exc)
                continue

            await self.rate_limiter.wait()
            try:
                lookup = await self.client.lookup(
                    key, candidate.asin, candidate.marketplace, safety_remaining=self.settings.safety_remaining
                )
            except QuotaExhaustedError as exc:
                self._record_failure(summary, candidate, exc)
                summary.stopped_for_quota = True
                logger.warning("Keepa quota exhausted after %s items; stopping run", summary.processed)
                break
            except (SourceFetchError, httpx.HTTPError, ValueError) as exc:
                self._record_failure(summary, candidate, exc)
                continue

            if not lookup.image_url:
                summary.not_found += 1
                continue
            await self._db(self.store.save_image, candidate.owner_id, candidate.asin, lookup.image_url)
            await self._db(self.store.apply_image, candidate.owner_id, candidate.asin, lookup.image_url)
            summary.found += 1

        logger.info(
            "Keepa image sync: processed=%s found=%s reused=%s not_found=%s failed=%s stopped_for_quota=%s scanned=%s",
            summary.processed,
            summary.found,
            summary.reused_from_cache,
            summary.not_found,
            summary.failed,
            summary.stopped_for_quota,
            summary.total_scanned,
        )
        return summary

    @staticmethod
    def _record_failure(summary: ImageSyncSummary, candidate: ImageCandidate, exc: Exception) -> None:
        summary.failed += 1
        summary.failures.append(f"{candidate.asin}: {exc}")
        logger.warning("Failed owner=%s asin=%s: %s", candidate.owner_id, candidate.asin, exc)

    async def _db(self, func, *args):
        return await asyncio.get_running_loop().run_in_executor(None, func, *args)
