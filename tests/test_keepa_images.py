import json

import httpx
import pytest
import respx
from conftest import OWNER, load_fixture
from sqlalchemy import select

from stockmind.db.tables import asin_images, products
from stockmind.errors import CredentialUnavailableError, QuotaExhaustedError
from stockmind.ingest.keepa import (
    CACHE_SOURCE,
    CredentialRotation,
    ImageStore,
    KeepaClient,
    KeepaImageResolver,
    KeepaSettings,
    build_image_url,
    keepa_domain_id,
    normalize_image_url,
    resolve_domain,
)
from stockmind.utils.rate_limit import RateLimiter

CDN = "https://images-na.ssl-images-amazon.com/images/I/"


def keepa_payload(tokens_left: int, images: str | None = "71abc.jpg") -> dict:
    payload = json.loads(load_fixture("keepa/product.json"))
    payload["tokensLeft"] = tokens_left
    if images is None:
        payload["products"] = []
    else:
        payload["products"][0]["imagesCSV"] = images
    return payload


def make_resolver(engine, *, pool=("pool-1", "pool-2"), safety=5, items=0, batch=500) -> KeepaImageResolver:
    settings = KeepaSettings(safety_remaining=safety, items_per_run=items, batch_size=batch, key_pool=list(pool))
    client = KeepaClient()
    return KeepaImageResolver(ImageStore(engine), client, settings, rate_limiter=RateLimiter(per_minute=600_000))


def image_urls(engine) -> dict[str, str | None]:
    with engine.connect() as conn:
        return {row.asin: row.image_url for row in conn.execute(select(products.c.asin, products.c.image_url))}


def test_domain_resolution():
    assert resolve_domain("UK") == "UK"
    assert resolve_domain("nl") == "DE"
    assert resolve_domain(None) == "DE"
    assert keepa_domain_id("IT") == 8
    assert keepa_domain_id("SE") == 3


def test_image_url_helpers():
    assert build_image_url("71abc.jpg,61def.jpg") == f"{CDN}71abc.jpg"
    assert build_image_url("https://m.media-amazon.com/x.jpg") == "https://m.media-amazon.com/x.jpg"
    assert build_image_url("") is None
    assert normalize_image_url('["https://a/1.jpg", "https://a/2.jpg"]') == "https://a/1.jpg"
    assert normalize_image_url('"https://a/1.jpg"') == "https://a/1.jpg"
    assert normalize_image_url("  ") is None


def test_settings_from_env_clamps_values():
    settings = KeepaSettings.from_env(
        {
            "KEEPA_API_KEYS": "a, b\nc,,",
            "KEEPA_API_KEY": "d",
            "KEEPA_TOKENS_PER_MINUTE": "0",
            "KEEPA_BATCH_SIZE": "9000",
            "KEEPA_TOKEN_SAFETY_REMAINING": "-3",
        }
    )
    assert settings.key_pool == ["a", "b", "c", "d"]
    assert settings.tokens_per_minute == 1.0
    assert settings.batch_size == 2000
    assert settings.safety_remaining == 0
    assert KeepaSettings.from_env({"KEEPA_BATCH_SIZE": "10"}).batch_size == 50


def test_rotation_prefers_owner_key_then_round_robin():
    rotation = CredentialRotation(["p1", "p2"], {"owner-2": "own"})
    assert rotation.key_for("owner-2") == "own"
    assert [rotation.key_for(OWNER) for _ in range(3)] == ["p1", "p2", "p1"]
    with pytest.raises(CredentialUnavailableError):
        CredentialRotation([]).key_for(OWNER)


@pytest.mark.asyncio
async def test_client_raises_on_safety_floor_and_429():
    async with respx.mock() as router:
        route = router.route(host="api.keepa.com", path="/product")
        route.mock(side_effect=[httpx.Response(200, json=keepa_payload(3)), httpx.Response(429, text="slow down")])
        client = KeepaClient()
        with pytest.raises(QuotaExhaustedError) as excinfo:
            await client.lookup("k", "B01", "FR", safety_remaining=5)
        assert excinfo.value.tokens_left == 3
        with pytest.raises(QuotaExhaustedError):
            await client.lookup("k", "B01", "FR", safety_remaining=5)
        await client.close()
    params = route.calls[0].request.url.params
    assert params["domain"] == "4"
    assert params["asin"] == "B01"
    assert params["key"] == "k"


@pytest.mark.asyncio
async def test_quota_stop_halts_run(image_backlog):
    async with respx.mock() as router:
        route = router.route(host="api.keepa.com", path="/product")
        route.mock(
            side_effect=[
                httpx.Response(200, json=keepa_payload(40)),
                httpx.Response(200, json=keepa_payload(20)),
                httpx.Response(200, json=keepa_payload(2)),
            ]
        )
        resolver = make_resolver(image_backlog)
        summary = await resolver.run()
        await resolver.client.close()

    assert route.call_count == 3
    assert summary.total_scanned == 10
    assert summary.processed == 3
    assert summary.found == 2
    assert summary.failed == 1
    assert summary.stopped_for_quota
    assert [call.request.url.params["key"] for call in route.calls] == ["pool-1", "pool-2", "pool-1"]
    urls = image_urls(image_backlog)
    assert sum(1 for url in urls.values() if url) == 2
    with image_backlog.connect() as conn:
        sources = conn.execute(select(asin_images.c.source)).scalars().all()
    assert sources == [CACHE_SOURCE, CACHE_SOURCE]


@pytest.mark.asyncio
async def test_cached_image_skips_external_call(image_backlog):
    with image_backlog.begin() as conn:
        conn.execute(
            asin_images.insert(),
            [{"owner_id": OWNER, "asin": "B000000000", "image_url": '["https://cached/0.jpg"]', "source": "manual"}],
        )
    async with respx.mock() as router:
        route = router.route(host="api.keepa.com", path="/product")
        route.mock(return_value=httpx.Response(200, json=keepa_payload(100, images=None)))
        resolver = make_resolver(image_backlog, items=2)
        summary = await resolver.run()
        await resolver.client.close()

    assert route.call_count == 1
    assert summary.processed == 2
    assert summary.reused_from_cache == 1
    assert summary.not_found == 1
    assert summary.found == 0
    assert image_urls(image_backlog)["B000000000"] == "https://cached/0.jpg"


@pytest.mark.asyncio
async def test_missing_credentials_count_as_failures(image_backlog):
    with image_backlog.begin() as conn:
        conn.execute(
            products.insert(),
            [{"owner_id": "owner-2", "sku": "OWN-1", "marketplace": "UK", "asin": "B0OWNED001"}],
        )
    async with respx.mock() as router:
        route = router.route(host="api.keepa.com", path="/product")
        route.mock(return_value=httpx.Response(200, json=keepa_payload(500, images="https://m.media-amazon.com/own.jpg")))
        resolver = make_resolver(image_backlog, pool=())
        summary = await resolver.run()
        await resolver.client.close()

    assert summary.total_scanned == 11
    assert summary.processed == 11
    assert summary.failed == 10
    assert summary.found == 1
    assert not summary.stopped_for_quota
    assert route.calls[0].request.url.params["key"] == "owner-2-key"
    assert route.calls[0].request.url.params["domain"] == "2"
    assert image_urls(image_backlog)["B0OWNED001"] == "https://m.media-amazon.com/own.jpg"


@pytest.mark.asyncio
async def test_upstream_errors_do_not_stop_the_run(image_backlog):
    async with respx.mock() as router:
        route = router.route(host="api.keepa.com", path="/product")
        route.mock(
            side_effect=[httpx.Response(500, text="boom")]
            + [httpx.Response(200, json=keepa_payload(100)) for _ in range(2)]
        )
        resolver = make_resolver(image_backlog, items=3)
        summary = await resolver.run()
        await resolver.client.close()

    assert summary.processed == 3
    assert summary.failed == 1
    assert summary.found == 2
    assert summary.failures[0].startswith("B000000000: Keepa 500")


@pytest.mark.asyncio
async def test_owner_filter_and_empty_backlog(image_backlog):
    resolver = make_resolver(image_backlog)
    resolver.settings.owner_id = "nobody"
    summary = await resolver.run()
    await resolver.client.close()
    assert summary.total_scanned == 0
    assert summary.processed == 0


@pytest.mark.asyncio
async def test_null_product_entry_counts_as_not_found(image_backlog):
    async with respx.mock() as router:
        route = router.route(host="api.keepa.com", path="/product")
        route.mock(
            side_effect=[
                httpx.Response(200, json={"tokensLeft": 100, "products": [None]}),
                httpx.Response(200, json=keepa_payload(100)),
            ]
        )
        resolver = make_resolver(image_backlog, items=2)
        summary = await resolver.run()
        await resolver.client.close()

    assert summary.processed == 2
    assert summary.not_found == 1
    assert summary.found == 1
    assert summary.failed == 0


@pytest.mark.asyncio
async def test_resolver_applies_configured_token_floor(image_backlog):
    settings = KeepaSettings(safety_remaining=50, key_pool=["pool-1"])
    resolver = KeepaImageResolver(
        ImageStore(image_backlog), KeepaClient(), settings, rate_limiter=RateLimiter(per_minute=600_000)
    )
    async with respx.mock() as router:
        route = router.route(host="api.keepa.com", path="/product")
        route.mock(return_value=httpx.Response(200, json=keepa_payload(40)))
        summary = await resolver.run()
        await resolver.client.close()

    assert route.call_count == 1
    assert summary.stopped_for_quota
    assert summary.found == 0
