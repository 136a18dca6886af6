from datetime import date, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.pool import StaticPool

from stockmind.db.tables import sellerboard_daily
from stockmind.errors import PersistenceError
from stockmind.ingest.models import DailySalesRecord
from stockmind.ingest.upsert import DailySalesUpserter, dedupe_records

OWNER = "owner-1"


def make_record(sku: str, units: int, *, day: date = date(2024, 3, 15), marketplace: str = "DE") -> DailySalesRecord:
    return DailySalesRecord(
        report_date=day,
        marketplace=marketplace,
        asin=f"B0{sku}",
        sku=sku,
        title=f"Product {sku}",
        units_total=units,
        revenue_total=units * 9.99,
        net_profit=units * 2.0,
        roi=20.0,
        raw={"SKU": sku},
    )


def stored_units(engine) -> dict[tuple[str, str], int]:
    with engine.connect() as conn:
        rows = conn.execute(select(sellerboard_daily.c.sku, sellerboard_daily.c.marketplace, sellerboard_daily.c.units_total))
        return {(row.sku, row.marketplace): row.units_total for row in rows}


def test_dedupe_keeps_first_occurrence():
    unique = dedupe_records([make_record("A", 1), make_record("A", 9), make_record("A", 5, marketplace="FR")])
    assert [(record.marketplace, record.units_total) for record in unique] == [("DE", 1), ("FR", 5)]


def test_upsert_writes_first_duplicate(engine):
    written = DailySalesUpserter(engine).upsert(OWNER, [make_record("A", 2), make_record("A", 7)])
    assert written == 1
    assert stored_units(engine) == {("A", "DE"): 2}


def test_upsert_spans_batches(engine):
    records = [make_record(f"S{idx}", idx + 1) for idx in range(7)]
    written = DailySalesUpserter(engine, batch_size=3).upsert(OWNER, records)
    assert written == 7
    assert len(stored_units(engine)) == 7


def test_rewriting_identical_rows_is_a_noop(engine):
    upserter = DailySalesUpserter(engine)
    records = [make_record("A", 2), make_record("B", 3)]
    assert upserter.upsert(OWNER, records) == 2
    assert upserter.upsert(OWNER, records) == 0
    assert upserter.upsert(OWNER, [make_record("A", 4), make_record("B", 3)]) == 1
    assert stored_units(engine) == {("A", "DE"): 4, ("B", "DE"): 3}


def test_same_sku_on_other_days_and_markets_are_distinct(engine):
    day = date(2024, 3, 15)
    records = [
        make_record("A", 1, day=day),
        make_record("A", 1, day=day - timedelta(days=1)),
        make_record("A", 1, day=day, marketplace="FR"),
    ]
    assert DailySalesUpserter(engine).upsert(OWNER, records) == 3


def test_empty_input_writes_nothing(engine):
    assert DailySalesUpserter(engine).upsert(OWNER, []) == 0


def test_store_failure_raises_persistence_error():
    engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    with pytest.raises(PersistenceError):
        DailySalesUpserter(engine).upsert(OWNER, [make_record("A", 1)])


def test_failed_slice_keeps_earlier_slices_committed(engine):
    records = [make_record(sku, 1) for sku in "ABCDE"]
    records[4].asin = None
    with pytest.raises(PersistenceError):
        DailySalesUpserter(engine, batch_size=2).upsert(OWNER, records)
    assert set(stored_units(engine)) == {("A", "DE"), ("B", "DE"), ("C", "DE"), ("D", "DE")}
