from datetime import date, timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from stockmind.db.migrate import run_migrations
from stockmind.db.tables import integrations, products, sellerboard_daily

FIXTURES = Path(__file__).parent / "fixtures"

OWNER = "owner-1"


def load_fixture(path: str) -> str:
    return (FIXTURES / path).read_text()


@pytest.fixture()
def engine():
    # One shared connection so executor threads see the same in-memory database.
    engine = create_engine(
        "sqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    run_migrations(engine)
    yield engine
    engine.dispose()


def daily_row(report_date: date, sku: str, units: int, *, marketplace: str = "DE", asin: str | None = None, **extra):
    row = {
        "owner_id": OWNER,
        "report_date": report_date,
        "marketplace": marketplace,
        "asin": asin or f"B0{sku}",
        "sku": sku,
        "title": f"Product {sku}",
        "category": "home",
        "units_total": units,
        "revenue_total": units * 10.0,
        "net_profit": units * 2.5,
        "roi": 25.0,
        "cost_of_goods": 4.0,
        "raw": None,
    }
    row.update(extra)
    return row


@pytest.fixture()
def seeded_engine(engine):
    start = date(2024, 3, 1)
    with engine.begin() as conn:
        conn.execute(
            sellerboard_daily.insert(),
            [daily_row(start + timedelta(days=idx), "STEADY", 4) for idx in range(5)]
            + [daily_row(start + timedelta(days=idx), "SPIKE", 10 if idx == 2 else 0) for idx in range(5)]
            + [daily_row(start + timedelta(days=idx), "SPIKE", 3, marketplace="FR") for idx in range(5)],
        )
    return engine


@pytest.fixture()
def image_backlog(engine):
    with engine.begin() as conn:
        conn.execute(
            products.insert(),
            [
                {"owner_id": OWNER, "sku": f"SKU-{idx}", "marketplace": "DE", "asin": f"B00000000{idx}"}
                for idx in range(10)
            ],
        )
        conn.execute(integrations.insert(), [{"owner_id": "owner-2", "keepa_api_key": "owner-2-key"}])
    return engine
