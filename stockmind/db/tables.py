"""SQLAlchemy table definitions."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)

metadata = MetaData()

# Daily records are keyed on sku; asin is carried along but is not part of the key.
IDENTITY_FIELD = "sku"

sellerboard_daily = Table(
    "sellerboard_daily",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Text, nullable=False),
    Column("report_date", Date, nullable=False),
    Column("marketplace", String(2), nullable=False),
    Column("asin", Text, nullable=False),
    Column("sku", Text, nullable=False),
    Column("title", Text),
    Column("category", Text),
    Column("units_total", Integer, nullable=False, default=0),
    Column("revenue_total", Float, nullable=False, default=0.0),
    Column("net_profit", Float, nullable=False, default=0.0),
    Column("roi", Float, nullable=False, default=0.0),
    Column("cost_of_goods", Float),
    Column("raw", JSON),
    Column("synced_at", DateTime, server_default=func.current_timestamp()),
    UniqueConstraint("owner_id", "sku", "marketplace", "report_date", name="uq_sellerboard_daily_identity"),
)

Index("ix_sellerboard_daily_owner_date", sellerboard_daily.c.owner_id, sellerboard_daily.c.report_date)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Text, nullable=False),
    Column("sku", Text, nullable=False),
    Column("marketplace", String(2), nullable=False),
    Column("asin", Text),
    Column("title", Text),
    Column("category", Text),
    Column("image_url", Text),
    Column("units_30d", Integer, default=0),
    Column("revenue_30d", Float, default=0.0),
    Column("profit_30d", Float, default=0.0),
    Column("profit_unit", Float, default=0.0),
    Column("cogs", Float),
    Column("roi", Float, default=0.0),
    Column("volatility_30d", Float, default=0.0),
    Column("bb_current", Float),
    Column("bb_avg_7d", Float),
    Column("bb_avg_30d", Float),
    Column("stock_qty", Integer),
    Column("days_since_last_sale", Integer),
    Column("peak_months", JSON),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
    UniqueConstraint("owner_id", "sku", "marketplace", name="uq_products_identity"),
)

asin_images = Table(
    "asin_images",
    metadata,
    Column("owner_id", Text, nullable=False),
    Column("asin", Text, nullable=False),
    Column("image_url", Text, nullable=False),
    Column("source", Text),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
    PrimaryKeyConstraint("owner_id", "asin"),
)

integrations = Table(
    "integrations",
    metadata,
    Column("owner_id", Text, primary_key=True),
    Column("keepa_api_key", Text),
)
