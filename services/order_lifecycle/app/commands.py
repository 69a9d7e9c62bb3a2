"""
Order Lifecycle Service — コマンドハンドラ (Write 側)

ストレージに対する書き込み操作。呼び出し側がトランザクション境界
(commit / rollback) を決める。

注文ステータスの更新は条件付き UPDATE:
    WHERE status = 期待値 AND payment_status = 期待値
同じ注文への並行した遷移が混ざらないよう、0 行なら競合として扱う。
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderItem, OrderStatus, PaymentStatus


@dataclass(frozen=True)
class StockLevel:
    product_id: str | None
    variant_id: str
    quantity: int


async def update_order_status(
    session: AsyncSession,
    order_id: str,
    *,
    expected_status: OrderStatus,
    expected_payment_status: PaymentStatus,
    new_status: OrderStatus,
    new_payment_status: PaymentStatus,
    payment_reference: str | None = None,
    payment_method: str | None = None,
    received_at: datetime | None = None,
) -> bool:
    """
    現在の状態が期待値と一致する場合だけ注文ステータスを更新する。

    external_payment_reference は一度だけ設定する。別の値で上書きはしない。
    更新できたら True。
    """
    assignments = [
        "status = :new_status",
        "payment_status = :new_payment_status",
        "updated_at = :now",
    ]
    conditions = [
        "id = :id",
        "status = :expected_status",
        "payment_status = :expected_payment_status",
    ]
    params = {
        "id": order_id,
        "new_status": new_status.value,
        "new_payment_status": new_payment_status.value,
        "expected_status": expected_status.value,
        "expected_payment_status": expected_payment_status.value,
        "now": datetime.now(timezone.utc),
    }

    if payment_reference is not None:
        assignments.append("external_payment_reference = :payment_reference")
        conditions.append(
            "(external_payment_reference IS NULL OR external_payment_reference = :payment_reference)"
        )
        params["payment_reference"] = payment_reference
    if payment_method is not None:
        assignments.append("payment_method = :payment_method")
        params["payment_method"] = payment_method
    if received_at is not None:
        assignments.append("received_at = :received_at")
        conditions.append("received_at IS NULL")
        params["received_at"] = received_at

    result = await session.execute(
        text(f"UPDATE orders SET {', '.join(assignments)} WHERE {' AND '.join(conditions)}"),
        params,
    )
    return result.rowcount == 1


async def decrement_stock(session: AsyncSession, item: OrderItem) -> StockLevel | None:
    """
    明細の数量だけ在庫を減らす。0 未満にはしない。
    在庫レコードが見つからなければ None。
    """
    variant_id = item.variant_id
    if variant_id is None and item.product_id:
        # バリアント指定のない明細は商品の最初のバリアントを使う
        result = await session.execute(
            text("""
                SELECT id FROM product_variants
                WHERE product_id = :product_id
                ORDER BY id
                LIMIT 1
            """),
            {"product_id": item.product_id},
        )
        row = result.first()
        variant_id = row.id if row else None
    if variant_id is None:
        return None

    result = await session.execute(
        text("""
            UPDATE product_variants
            SET stock_quantity = CASE
                    WHEN stock_quantity > :qty THEN stock_quantity - :qty
                    ELSE 0
                END,
                updated_at = :now
            WHERE id = :id
        """),
        {"qty": item.quantity, "now": datetime.now(timezone.utc), "id": variant_id},
    )
    if result.rowcount == 0:
        return None

    result = await session.execute(
        text("SELECT product_id, stock_quantity FROM product_variants WHERE id = :id"),
        {"id": variant_id},
    )
    row = result.first()
    return StockLevel(
        product_id=row.product_id,
        variant_id=str(variant_id),
        quantity=row.stock_quantity,
    )


async def increment_coupon_usage(session: AsyncSession, code: str) -> bool:
    result = await session.execute(
        text("UPDATE coupons SET used_count = used_count + 1 WHERE code = :code"),
        {"code": code},
    )
    return result.rowcount == 1
