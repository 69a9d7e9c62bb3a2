"""
Side-Effect Orchestrator — 注文遷移の副作用

ステートマシンが決めた副作用を、固定の順序で 1 つずつ実行する。
各ステップは独立してコミットする。後のステップが失敗しても前のステップは戻さない。

  フロー:
  ┌─────────────────────────────────────────────────────────┐
  │  1. 注文ステータスを永続化 (条件付き UPDATE)              │
  │     └─ 失敗 → 致命的: 中断し、台帳を done にしない       │
  │  2. 明細ごとに在庫を減算 (0 で下げ止め)                   │
  │  3. クーポン使用回数を加算 (クーポン適用時のみ)           │
  │  4. 注文確認メールを送信 (宛先がなければアカウントから)   │
  │  5. 減算後の在庫を評価し、閾値以下なら在庫僅少アラート     │
  │     └─ 2〜5 の失敗 → ログと監査に残して次へ進む          │
  └─────────────────────────────────────────────────────────┘
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import commands
from .aggregate import OrderAggregate
from .audit import AuditLog
from .commands import StockLevel
from .dispatchers import EmailDispatcher, LowStockAlertDispatcher, RecipientResolver
from .errors import PrimaryUpdateFailure, SideEffectFailure, StaleOrderState
from .events import ExternalEvent
from .state_machine import SideEffect, Transition

logger = logging.getLogger(__name__)

STEP_ORDER: tuple[SideEffect, ...] = (
    SideEffect.DECREMENT_STOCK,
    SideEffect.INCREMENT_COUPON_USAGE,
    SideEffect.SEND_CONFIRMATION_EMAIL,
    SideEffect.CHECK_LOW_STOCK,
)


@dataclass
class OrchestrationResult:
    steps: list[dict] = field(default_factory=list)
    low_stock: list[StockLevel] = field(default_factory=list)

    @property
    def failed_steps(self) -> list[str]:
        return [s["action"] for s in self.steps if s["status"] == "FAILED"]


class SideEffectOrchestrator:
    """注文遷移 1 回分の副作用を実行する。"""

    def __init__(
        self,
        session_factory: sessionmaker,
        email_dispatcher: EmailDispatcher,
        alert_dispatcher: LowStockAlertDispatcher,
        audit: AuditLog,
        low_stock_threshold: int = 5,
        recipient_resolver: RecipientResolver | None = None,
    ):
        self.session_factory = session_factory
        self.email_dispatcher = email_dispatcher
        self.alert_dispatcher = alert_dispatcher
        self.audit = audit
        self.low_stock_threshold = low_stock_threshold
        self.recipient_resolver = recipient_resolver

    async def execute(
        self,
        order: OrderAggregate,
        event: ExternalEvent,
        transition: Transition,
    ) -> OrchestrationResult:
        """
        遷移を適用する。

        ステップ 1 の失敗だけは PrimaryUpdateFailure として送出する。
        それ以外の失敗は結果のステップログに FAILED として残る。
        """
        result = OrchestrationResult()

        # ── Step 1: 注文ステータスを永続化 ──────────
        result.steps.append(self._step(1, "persist_status"))
        try:
            await self._persist_status(order, event, transition)
        except PrimaryUpdateFailure as e:
            result.steps[-1]["status"] = "FAILED"
            result.steps[-1]["error"] = str(e)
            logger.error("Primary update failed for order %s: %s", order.id, e)
            raise
        result.steps[-1]["status"] = "COMPLETED"

        # ── Step 2〜5: 副作用 (非致命的) ─────────────
        handlers = {
            SideEffect.DECREMENT_STOCK: self._decrement_stock,
            SideEffect.INCREMENT_COUPON_USAGE: self._increment_coupon_usage,
            SideEffect.SEND_CONFIRMATION_EMAIL: self._send_confirmation_email,
            SideEffect.CHECK_LOW_STOCK: self._check_low_stock,
        }
        for number, effect in enumerate(STEP_ORDER, start=2):
            if effect not in transition.side_effects:
                continue
            result.steps.append(self._step(number, effect.value))
            try:
                ran = await handlers[effect](order, result)
                result.steps[-1]["status"] = "COMPLETED" if ran else "SKIPPED"
            except Exception as e:
                result.steps[-1]["status"] = "FAILED"
                result.steps[-1]["error"] = str(e)
                logger.exception(
                    "Side effect %s failed for order %s (event %s)",
                    effect.value, order.id, event.event_id,
                )
                await self.audit.record(
                    "side_effect_failed",
                    "order",
                    order.id,
                    {
                        "step": effect.value,
                        "provider": event.provider.value,
                        "event_id": event.event_id,
                        "error": str(e),
                        "detail": e.detail if isinstance(e, SideEffectFailure) else {},
                        "items": [
                            {"id": i.id, "variant_id": i.variant_id, "quantity": i.quantity}
                            for i in order.items
                        ],
                    },
                )

        return result

    @staticmethod
    def _step(number: int, action: str) -> dict:
        return {
            "step": number,
            "action": action,
            "status": "EXECUTING",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # ── 各ステップ ───────────────────────────────

    async def _persist_status(
        self,
        order: OrderAggregate,
        event: ExternalEvent,
        transition: Transition,
    ) -> None:
        try:
            async with self.session_factory() as session:
                updated = await commands.update_order_status(
                    session,
                    order.id,
                    expected_status=order.status,
                    expected_payment_status=order.payment_status,
                    new_status=transition.order_status,
                    new_payment_status=transition.payment_status,
                    payment_reference=event.external_payment_reference,
                    payment_method=event.payment_method,
                    received_at=datetime.now(timezone.utc) if transition.mark_received else None,
                )
                if not updated:
                    await session.rollback()
                    raise StaleOrderState(
                        f"Order {order.id} is no longer "
                        f"{order.status.value}/{order.payment_status.value}"
                    )
                await session.commit()
        except SQLAlchemyError as e:
            raise PrimaryUpdateFailure(f"Failed to update order {order.id}: {e}") from e

    async def _decrement_stock(self, order: OrderAggregate, result: OrchestrationResult) -> bool:
        missing: list[str] = []
        async with self.session_factory() as session:
            for item in order.items:
                level = await commands.decrement_stock(session, item)
                if level is None:
                    missing.append(item.id)
                    continue
                if level.quantity <= self.low_stock_threshold:
                    result.low_stock.append(level)
            await session.commit()

        if missing:
            raise SideEffectFailure(
                SideEffect.DECREMENT_STOCK.value,
                f"No stock record for items {', '.join(missing)}",
                {"missing_items": missing},
            )
        return True

    async def _increment_coupon_usage(
        self, order: OrderAggregate, result: OrchestrationResult
    ) -> bool:
        if not order.coupon_code:
            return False
        async with self.session_factory() as session:
            updated = await commands.increment_coupon_usage(session, order.coupon_code)
            await session.commit()
        if not updated:
            raise SideEffectFailure(
                SideEffect.INCREMENT_COUPON_USAGE.value,
                f"Coupon {order.coupon_code} not found",
                {"coupon_code": order.coupon_code},
            )
        return True

    async def _send_confirmation_email(
        self, order: OrderAggregate, result: OrchestrationResult
    ) -> bool:
        recipient = order.customer_email
        if not recipient and order.user_id and self.recipient_resolver is not None:
            recipient = await self.recipient_resolver.resolve(order.user_id)
        if not recipient:
            raise SideEffectFailure(
                SideEffect.SEND_CONFIRMATION_EMAIL.value,
                f"Order {order.id} has no customer email",
                {"user_id": order.user_id},
            )
        await self.email_dispatcher.send(order.id, recipient)
        return True

    async def _check_low_stock(self, order: OrderAggregate, result: OrchestrationResult) -> bool:
        failed: list[str] = []
        for level in result.low_stock:
            try:
                await self.alert_dispatcher.send(level.product_id, level.variant_id, level.quantity)
            except Exception:
                logger.exception("Low stock alert failed for variant %s", level.variant_id)
                failed.append(level.variant_id)
        if failed:
            raise SideEffectFailure(
                SideEffect.CHECK_LOW_STOCK.value,
                f"Low stock alert failed for variants {', '.join(failed)}",
                {"variants": failed},
            )
        return bool(result.low_stock)
