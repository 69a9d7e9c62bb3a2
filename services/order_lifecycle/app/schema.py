"""
Order Lifecycle Service — テーブル定義

orders / order_items / product_variants / coupons はチェックアウト側が作成する。
processed_events と audit_logs はこのサービス専用の追記専用テーブルで、
起動時にこのサービス自身が作成する。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

CHECKOUT_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        total NUMERIC(12, 2) NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'pending',
        payment_status TEXT NOT NULL DEFAULT 'pending',
        payment_gateway TEXT,
        payment_method TEXT,
        external_payment_reference TEXT,
        coupon_code TEXT,
        customer_email TEXT,
        received_at TIMESTAMP WITH TIME ZONE,
        created_at TIMESTAMP WITH TIME ZONE,
        updated_at TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL REFERENCES orders (id),
        product_id TEXT,
        variant_id TEXT,
        quantity INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_variants (
        id TEXT PRIMARY KEY,
        product_id TEXT NOT NULL,
        stock_quantity INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS coupons (
        code TEXT PRIMARY KEY,
        used_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_order_items_order_id ON order_items (order_id)",
]

SERVICE_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS processed_events (
        provider TEXT NOT NULL,
        event_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        state TEXT NOT NULL,
        claim_token TEXT NOT NULL,
        claimed_at TIMESTAMP WITH TIME ZONE NOT NULL,
        processed_at TIMESTAMP WITH TIME ZONE,
        outcome_summary TEXT,
        PRIMARY KEY (provider, event_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT,
        metadata TEXT,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_entity ON audit_logs (entity_type, entity_id)",
]


async def create_schema(engine: AsyncEngine, include_checkout_tables: bool = False) -> None:
    """サービス専用テーブルを作成する。既にあれば何もしない。"""
    ddls = SERVICE_TABLES
    if include_checkout_tables:
        ddls = CHECKOUT_TABLES + SERVICE_TABLES
    async with engine.begin() as conn:
        for ddl in ddls:
            await conn.execute(text(ddl))
