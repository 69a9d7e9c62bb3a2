"""
Order Lifecycle Service — 照合パイプライン

外部からの 1 回の呼び出しを、次の順で処理する。

  受信 → 検証 → 台帳で claim → 状態遷移 → 副作用 → 台帳に done → 応答
           │         │                       │
           │         └─ 重複: 前回と同じ応答    └─ 永続化失敗: claim を取り消して 500
           └─ 一時的失敗: 何も記録せず 503

すべてリクエスト内で同期的に完了する。バックグラウンド処理はない。
同じ注文への並行した遷移は条件付き UPDATE で検出し、最新の状態から評価し直す。
"""

import logging
from urllib.parse import urlencode

from sqlalchemy.orm import sessionmaker

from . import queries
from .aggregate import OrderAggregate
from .audit import AuditLog
from .errors import (
    IllegalTransition,
    MissingEventId,
    OrderMismatch,
    PaymentReferenceConflict,
    PrimaryUpdateFailure,
    StaleOrderState,
    TokenExpired,
    TokenInvalid,
    UnknownProviderStatus,
    VerificationError,
)
from .events import ExternalEvent, RawNotification
from .ledger import AlreadyProcessed, IdempotencyLedger
from .orchestrator import SideEffectOrchestrator
from .state_machine import Transition, transition
from .tokens import ConfirmationTokenSigner
from .verifier import EventVerifier

logger = logging.getLogger(__name__)

# 条件付き UPDATE が競合したときに評価し直す回数
MAX_ATTEMPTS = 3

CONFIRMATION_MESSAGES = {
    "confirmed": "Receipt confirmed. Thank you for your purchase!",
    "already": "This order was already confirmed as received.",
    "invalid": "This confirmation link is invalid. Please request a new link.",
    "expired": "This confirmation link has expired. Please request a new link.",
    "error": "We could not confirm receipt right now. Please try again later.",
}


class ReconciliationPipeline:
    def __init__(
        self,
        session_factory: sessionmaker,
        verifier: EventVerifier,
        ledger: IdempotencyLedger,
        orchestrator: SideEffectOrchestrator,
        audit: AuditLog,
        token_signer: ConfirmationTokenSigner,
        frontend_url: str = "http://localhost:5173",
        duplicate_wait: float = 5.0,
    ):
        self.session_factory = session_factory
        self.verifier = verifier
        self.ledger = ledger
        self.orchestrator = orchestrator
        self.audit = audit
        self.token_signer = token_signer
        self.frontend_url = frontend_url.rstrip("/")
        self.duplicate_wait = duplicate_wait

    # ── 決済通知 ─────────────────────────────────

    async def handle_payment_notification(self, notification: RawNotification) -> dict:
        """
        決済通知を 1 件処理し、webhook の応答本文を返す。

        VerificationError と PrimaryUpdateFailure だけは送出する (呼び出し側で非 200)。
        それ以外の拒否は {"received": False} として返す。
        """
        provider = notification.provider.value
        await self.audit.record(
            "webhook_received",
            "webhook",
            None,
            {"provider": provider, "query": notification.query, "body": notification.body},
        )

        try:
            event = await self.verifier.verify_payment(notification)
        except VerificationError as e:
            logger.error("Verification failed for %s notification: %s", provider, e)
            await self.audit.record(
                "webhook_verification_failed", "webhook", None,
                {"provider": provider, "error": str(e)},
            )
            raise
        except UnknownProviderStatus as e:
            return await self._reject(provider, e.order_reference, e)
        except (MissingEventId, OrderMismatch) as e:
            return await self._reject(provider, None, e)

        if event is None:
            logger.info("Ignoring non-payment %s notification", provider)
            return {"received": True}

        try:
            await self._check_order(event)
        except OrderMismatch as e:
            return await self._reject(provider, event.order_reference, e, event)

        claim = await self.ledger.claim(provider, event.event_id, event.event_type.value)
        if isinstance(claim, AlreadyProcessed):
            return await self._duplicate_response(claim, event)

        try:
            order, result, steps = await self._apply_payment(event)
        except OrderMismatch as e:
            outcome = {"received": False}
            await self.ledger.complete(claim, outcome)
            await self._reject(provider, event.order_reference, e, event)
            return outcome
        except Exception:
            await self.ledger.release(claim)
            raise

        outcome = self._payment_outcome(order, result)
        await self.ledger.complete(claim, outcome)

        logger.info(
            "Processed %s event %s for order %s: %s/%s -> %s/%s (%s)",
            provider, event.event_id, order.id,
            order.status.value, order.payment_status.value,
            result.order_status.value, result.payment_status.value, result.outcome,
        )
        await self.audit.record(
            "payment_event_processed",
            "order",
            order.id,
            {
                "provider": provider,
                "event_id": event.event_id,
                "verified_status": event.verified_status.value,
                "outcome": result.outcome,
                "from": {"status": order.status.value, "payment_status": order.payment_status.value},
                "to": {"status": result.order_status.value, "payment_status": result.payment_status.value},
                "side_effects": [s.value for s in result.side_effects],
                "steps": steps,
            },
        )
        return outcome

    async def _apply_payment(
        self, event: ExternalEvent
    ) -> tuple[OrderAggregate, Transition, list[dict]]:
        """最新の注文に遷移を適用する。他のリクエストに先を越されたら読み直す。"""
        for attempt in range(1, MAX_ATTEMPTS + 1):
            order = await self._check_order(event)
            self._check_reference(order, event)
            result = transition(order.status, order.payment_status, event)

            if not result.changed:
                if result.outcome == "ignored":
                    logger.warning(
                        "Ignoring out-of-order %s for order %s (payment_status=%s)",
                        event.verified_status.value, order.id, order.payment_status.value,
                    )
                return order, result, []

            try:
                run = await self.orchestrator.execute(order, event, result)
            except StaleOrderState:
                if attempt == MAX_ATTEMPTS:
                    raise
                logger.warning(
                    "Order %s changed while applying %s, re-evaluating",
                    order.id, event.event_id,
                )
                continue
            return order, result, run.steps
        raise AssertionError("unreachable")

    async def _duplicate_response(self, claim: AlreadyProcessed, event: ExternalEvent) -> dict:
        """重複イベントには最初の配信と同じ応答を返す。"""
        logger.warning(
            "Duplicate %s event %s (in progress: %s)",
            claim.provider, event.event_id, claim.in_progress,
        )
        outcome = claim.outcome
        if claim.in_progress:
            outcome = await self.ledger.wait_for_outcome(
                claim.provider, event.event_id, self.duplicate_wait
            )
        if outcome is not None:
            return outcome

        # 最初の配信がまだ終わらない: 現在の注文から結果を導く (適用はしない)
        try:
            order = await self._check_order(event)
            self._check_reference(order, event)
        except OrderMismatch:
            return {"received": False}
        return self._payment_outcome(order, transition(order.status, order.payment_status, event))

    @staticmethod
    def _payment_outcome(order: OrderAggregate, result: Transition) -> dict:
        return {
            "received": True,
            "orderId": order.id,
            "status": result.payment_status.value,
        }

    async def _check_order(self, event: ExternalEvent) -> OrderAggregate:
        order = await self._load_order(event.order_reference)
        if order is None:
            raise OrderMismatch(f"Order {event.order_reference} not found")
        if order.payment_gateway != event.provider.value:
            raise OrderMismatch(
                f"Order {order.id} belongs to {order.payment_gateway or 'no gateway'}, "
                f"not {event.provider.value}"
            )
        return order

    @staticmethod
    def _check_reference(order: OrderAggregate, event: ExternalEvent) -> None:
        if (
            order.external_payment_reference
            and event.external_payment_reference
            and order.external_payment_reference != event.external_payment_reference
        ):
            raise PaymentReferenceConflict(
                f"Order {order.id} is already linked to payment "
                f"{order.external_payment_reference}, got {event.external_payment_reference}"
            )

    async def _reject(
        self,
        provider: str,
        order_reference: str | None,
        error: Exception,
        event: ExternalEvent | None = None,
    ) -> dict:
        level = logging.ERROR if isinstance(error, PaymentReferenceConflict) else logging.WARNING
        logger.log(level, "Rejected %s notification: %s", provider, error)
        await self.audit.record(
            "webhook_rejected",
            "order" if order_reference else "webhook",
            order_reference,
            {
                "provider": provider,
                "event_id": event.event_id if event else None,
                "reason": type(error).__name__,
                "error": str(error),
            },
        )
        return {"received": False}

    # ── 受取確認 ─────────────────────────────────

    async def handle_confirmation(
        self,
        order_id: str | None,
        token: str | None,
        user_agent: str | None = None,
    ) -> dict:
        """
        受取確認リンクを処理し {status, message} を返す。

        status: confirmed / already / invalid / expired / error
        """
        try:
            event = self.verifier.verify_confirmation(order_id, token)
        except TokenExpired as e:
            order = await self._load_order(e.order_reference)
            if order is not None and order.is_delivered:
                return await self._confirmation_result("already", e.order_reference, user_agent)
            return await self._confirmation_result(
                "expired", e.order_reference, user_agent, str(e)
            )
        except TokenInvalid as e:
            return await self._confirmation_result("invalid", order_id, user_agent, str(e))

        order = await self._load_order(event.order_reference)
        if order is None:
            return await self._confirmation_result(
                "invalid", event.order_reference, user_agent, "Order not found"
            )
        if order.is_delivered:
            return await self._confirmation_result("already", order.id, user_agent)

        try:
            result = transition(order.status, order.payment_status, event)
        except IllegalTransition as e:
            return await self._confirmation_result("invalid", order.id, user_agent, str(e))

        claim = await self.ledger.claim(
            event.provider.value, event.event_id, event.event_type.value
        )
        if isinstance(claim, AlreadyProcessed):
            logger.warning("Confirmation for order %s already handled", order.id)
            return await self._confirmation_result("already", order.id, user_agent)

        try:
            status, error = await self._apply_confirmation(order, event, result)
        except Exception:
            await self.ledger.release(claim)
            raise

        if status != "confirmed":
            await self.ledger.release(claim)
            return await self._confirmation_result(status, order.id, user_agent, error)

        await self.ledger.complete(claim, {"status": "confirmed", "orderId": order.id})
        logger.info("Order %s confirmed as received", order.id)
        return await self._confirmation_result("confirmed", order.id, user_agent)

    async def _apply_confirmation(
        self,
        order: OrderAggregate,
        event: ExternalEvent,
        result: Transition,
    ) -> tuple[str, str | None]:
        """受取確認を適用し (status, エラー内容) を返す。"""
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                await self.orchestrator.execute(order, event, result)
                return "confirmed", None
            except StaleOrderState as e:
                # 決済通知などが先に注文を変えた: 最新の状態で判定し直す
                current = await self._load_order(order.id)
                if current is None:
                    return "invalid", "Order not found"
                if current.is_delivered:
                    return "already", None
                try:
                    result = transition(current.status, current.payment_status, event)
                except IllegalTransition as illegal:
                    return "invalid", str(illegal)
                if attempt == MAX_ATTEMPTS:
                    return "error", str(e)
                order = current
            except PrimaryUpdateFailure as e:
                return "error", str(e)
        return "error", "Order kept changing during confirmation"

    async def _confirmation_result(
        self,
        status: str,
        order_id: str | None,
        user_agent: str | None = None,
        error: str | None = None,
    ) -> dict:
        if status == "confirmed":
            action = "confirm_success"
        elif status == "already":
            action = "confirm_already"
        else:
            action = "confirm_attempt_failed"
            logger.warning("Confirmation for order %s failed (%s): %s", order_id, status, error)

        metadata = {"status": status, "user_agent": user_agent}
        if error:
            metadata["error"] = error
        await self.audit.record(action, "order_confirmation", order_id, metadata)
        return {"status": status, "message": CONFIRMATION_MESSAGES[status]}

    # ── 確認リンクの発行 ─────────────────────────

    async def issue_confirmation_link(self, order_id: str) -> dict:
        """メール送信側が使う受取確認リンクを発行する。"""
        order = await self._load_order(order_id)
        if order is None:
            raise OrderMismatch(f"Order {order_id} not found")

        token, expires_at = self.token_signer.issue(order.id)
        query = urlencode({"orderId": order.id, "token": token})
        return {
            "orderId": order.id,
            "token": token,
            "url": f"{self.frontend_url}/confirmar-recebimento?{query}",
            "expiresAt": expires_at.isoformat(),
        }

    async def _load_order(self, order_id: str) -> OrderAggregate | None:
        async with self.session_factory() as session:
            return await queries.load_order(session, order_id)
