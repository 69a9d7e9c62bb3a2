"""
Order Lifecycle Service — クエリハンドラ (Read 側)

注文・監査ログ・処理済みイベントの読み取り。
"""

import json
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderAggregate


def _iso(value) -> str | None:
    # SQLite は文字列、PostgreSQL は datetime を返す
    if isinstance(value, datetime):
        return value.isoformat()
    return value


async def load_order(session: AsyncSession, order_id: str) -> OrderAggregate | None:
    """注文と明細から集約を組み立てる。"""
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    row = result.first()
    if not row:
        return None
    items = await session.execute(
        text("SELECT * FROM order_items WHERE order_id = :id ORDER BY id"),
        {"id": order_id},
    )
    return OrderAggregate.from_rows(row, items.fetchall())


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    row = result.first()
    if not row:
        return None
    items = await session.execute(
        text("SELECT * FROM order_items WHERE order_id = :id ORDER BY id"),
        {"id": order_id},
    )
    return {
        "id": str(row.id),
        "total": float(row.total) if row.total is not None else 0.0,
        "status": row.status,
        "payment_status": row.payment_status,
        "payment_gateway": row.payment_gateway,
        "payment_method": row.payment_method,
        "external_payment_reference": row.external_payment_reference,
        "coupon_code": row.coupon_code,
        "received_at": _iso(row.received_at),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
        "items": [
            {
                "id": str(item.id),
                "product_id": item.product_id,
                "variant_id": item.variant_id,
                "quantity": item.quantity,
            }
            for item in items.fetchall()
        ],
    }


async def list_audit_entries(session: AsyncSession, order_id: str) -> list[dict]:
    """注文に関する監査ログを古い順に返す。"""
    result = await session.execute(
        text("""
            SELECT id, action, entity_type, entity_id, metadata, created_at
            FROM audit_logs
            WHERE entity_type IN ('order', 'order_confirmation') AND entity_id = :id
            ORDER BY created_at ASC
        """),
        {"id": order_id},
    )
    return [
        {
            "id": row.id,
            "action": row.action,
            "entity_type": row.entity_type,
            "entity_id": row.entity_id,
            "metadata": json.loads(row.metadata) if row.metadata else {},
            "created_at": _iso(row.created_at),
        }
        for row in result.fetchall()
    ]


async def list_processed_events(
    session: AsyncSession,
    provider: str | None = None,
    limit: int = 100,
) -> list[dict]:
    """処理済み (および処理中) のイベントを新しい順に返す。"""
    sql = "SELECT * FROM processed_events"
    params: dict = {"limit": limit}
    if provider:
        sql += " WHERE provider = :provider"
        params["provider"] = provider
    sql += " ORDER BY claimed_at DESC LIMIT :limit"

    result = await session.execute(text(sql), params)
    return [
        {
            "provider": row.provider,
            "event_id": row.event_id,
            "event_type": row.event_type,
            "state": row.state,
            "claimed_at": _iso(row.claimed_at),
            "processed_at": _iso(row.processed_at),
            "outcome": json.loads(row.outcome_summary) if row.outcome_summary else None,
        }
        for row in result.fetchall()
    ]
