"""
Order Lifecycle Service — 注文集約 (Order Aggregate)

注文行と明細行から現在の状態を復元する。
ステータス列を書き換えるのはこのサービスの状態遷移だけ。

状態:
    order_status  : pending → awaiting_payment → processing → shipped → delivered
                    (delivered 以前ならどこからでも cancelled)
    payment_status: pending → awaiting_payment → {paid | failed} → {refunded | disputed}
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    AWAITING_PAYMENT = "awaiting_payment"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


@dataclass(frozen=True)
class OrderItem:
    """注文明細（読み取り専用）"""
    id: str
    product_id: str | None
    variant_id: str | None
    quantity: int


class OrderAggregate:
    """
    注文集約。DB の行から現在の状態を再構築する。
    """

    def __init__(self) -> None:
        self.id: str = ""
        self.total: Decimal = Decimal("0")
        self.status: OrderStatus = OrderStatus.PENDING
        self.payment_status: PaymentStatus = PaymentStatus.PENDING
        self.payment_gateway: str | None = None
        self.external_payment_reference: str | None = None
        self.coupon_code: str | None = None
        self.customer_email: str | None = None
        self.user_id: str | None = None
        self.received_at: datetime | str | None = None
        self.items: list[OrderItem] = []

    @property
    def is_delivered(self) -> bool:
        return self.status == OrderStatus.DELIVERED

    @classmethod
    def from_rows(cls, row, item_rows=()) -> "OrderAggregate":
        """orders の 1 行と order_items の行から集約を組み立てる。"""
        agg = cls()
        agg.id = str(row.id)
        agg.total = Decimal(str(row.total)) if row.total is not None else Decimal("0")
        agg.status = OrderStatus(row.status)
        agg.payment_status = PaymentStatus(row.payment_status)
        agg.payment_gateway = row.payment_gateway
        agg.external_payment_reference = row.external_payment_reference
        agg.coupon_code = row.coupon_code
        agg.customer_email = row.customer_email
        agg.user_id = row.user_id
        agg.received_at = row.received_at
        agg.items = [
            OrderItem(
                id=str(item.id),
                product_id=item.product_id,
                variant_id=item.variant_id,
                quantity=item.quantity,
            )
            for item in item_rows
        ]
        return agg
