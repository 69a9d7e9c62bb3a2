"""
Order Lifecycle Service — 注文ステートマシン

(現在の order_status, 現在の payment_status, 検証済みイベント)
    → (新しい order_status, 新しい payment_status, 実行すべき副作用のリスト)

純粋関数のみ。ストレージには一切触れない。

  プロバイダステータス          payment_status     order_status
  ───────────────────────────────────────────────────────────────
  approved                     paid               processing
  pending / in_process /
  authorized                   awaiting_payment   awaiting_payment
  rejected / cancelled         failed             cancelled
  refunded / charged_back      refunded           cancelled
  in_mediation                 disputed           (変更なし)

paid への遷移でだけ「支払い完了バンドル」の副作用を発火する。
すでに paid の注文に approved が再送されても何も起きない。
"""

from dataclasses import dataclass
from enum import Enum

from .aggregate import OrderStatus, PaymentStatus
from .errors import IllegalTransition
from .events import EventType, ExternalEvent, ProviderStatus


class SideEffect(str, Enum):
    DECREMENT_STOCK = "decrement_stock"
    INCREMENT_COUPON_USAGE = "increment_coupon_usage"
    SEND_CONFIRMATION_EMAIL = "send_confirmation_email"
    CHECK_LOW_STOCK = "check_low_stock"


PAID_BUNDLE: tuple[SideEffect, ...] = (
    SideEffect.DECREMENT_STOCK,
    SideEffect.INCREMENT_COUPON_USAGE,
    SideEffect.SEND_CONFIRMATION_EMAIL,
    SideEffect.CHECK_LOW_STOCK,
)


@dataclass(frozen=True)
class Transition:
    order_status: OrderStatus
    payment_status: PaymentStatus
    side_effects: tuple[SideEffect, ...] = ()
    changed: bool = False
    mark_received: bool = False
    # applied: 状態が変わった / noop: すでにその状態 / ignored: 許可されない辺
    outcome: str = "applied"


PAYMENT_STATUS_MAP: dict[ProviderStatus, tuple[PaymentStatus, OrderStatus | None]] = {
    ProviderStatus.APPROVED: (PaymentStatus.PAID, OrderStatus.PROCESSING),
    ProviderStatus.PENDING: (PaymentStatus.AWAITING_PAYMENT, OrderStatus.AWAITING_PAYMENT),
    ProviderStatus.IN_PROCESS: (PaymentStatus.AWAITING_PAYMENT, OrderStatus.AWAITING_PAYMENT),
    ProviderStatus.AUTHORIZED: (PaymentStatus.AWAITING_PAYMENT, OrderStatus.AWAITING_PAYMENT),
    ProviderStatus.REJECTED: (PaymentStatus.FAILED, OrderStatus.CANCELLED),
    ProviderStatus.CANCELLED: (PaymentStatus.FAILED, OrderStatus.CANCELLED),
    ProviderStatus.REFUNDED: (PaymentStatus.REFUNDED, OrderStatus.CANCELLED),
    ProviderStatus.CHARGED_BACK: (PaymentStatus.REFUNDED, OrderStatus.CANCELLED),
    ProviderStatus.IN_MEDIATION: (PaymentStatus.DISPUTED, None),
}

# pending → paid / failed は awaiting_payment の通知が届かなかった場合
PAYMENT_EDGES: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.AWAITING_PAYMENT, PaymentStatus.PAID, PaymentStatus.FAILED}
    ),
    PaymentStatus.AWAITING_PAYMENT: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED, PaymentStatus.DISPUTED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.REFUNDED, PaymentStatus.DISPUTED}),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.DISPUTED: frozenset(),
}

ORDER_EDGES: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.AWAITING_PAYMENT, OrderStatus.PROCESSING, OrderStatus.CANCELLED}
    ),
    OrderStatus.AWAITING_PAYMENT: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset(
        {OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED}
    ),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

CONFIRMABLE_STATUSES = frozenset({OrderStatus.PROCESSING, OrderStatus.SHIPPED})


def payment_status_for(status: ProviderStatus) -> PaymentStatus:
    """プロバイダステータスに対応する payment_status"""
    return PAYMENT_STATUS_MAP[status][0]


def transition(
    order_status: OrderStatus,
    payment_status: PaymentStatus,
    event: ExternalEvent,
) -> Transition:
    """イベントを現在の状態に適用した結果を返す。"""
    if event.event_type == EventType.DELIVERY_CONFIRMED:
        return _confirm_delivery(order_status, payment_status)
    if event.verified_status is None:
        raise IllegalTransition(f"Payment event {event.event_id} has no verified status")
    return _apply_payment(order_status, payment_status, event.verified_status)


def _apply_payment(
    order_status: OrderStatus,
    payment_status: PaymentStatus,
    provider_status: ProviderStatus,
) -> Transition:
    target_payment, target_order = PAYMENT_STATUS_MAP[provider_status]

    if target_payment == payment_status:
        return Transition(order_status, payment_status, outcome="noop")

    # 順序が入れ替わって届いた通知 (例: refunded の後の approved) は捨てる
    if target_payment not in PAYMENT_EDGES[payment_status]:
        return Transition(order_status, payment_status, outcome="ignored")

    new_order_status = order_status
    if target_order is not None and target_order in ORDER_EDGES[order_status]:
        new_order_status = target_order

    side_effects = PAID_BUNDLE if target_payment == PaymentStatus.PAID else ()
    return Transition(
        new_order_status,
        target_payment,
        side_effects=side_effects,
        changed=True,
    )


def _confirm_delivery(order_status: OrderStatus, payment_status: PaymentStatus) -> Transition:
    if order_status == OrderStatus.DELIVERED:
        return Transition(order_status, payment_status, outcome="noop")
    if order_status not in CONFIRMABLE_STATUSES:
        raise IllegalTransition(f"Cannot confirm receipt of an order in status {order_status.value}")
    return Transition(
        OrderStatus.DELIVERED,
        payment_status,
        changed=True,
        mark_received=True,
    )
