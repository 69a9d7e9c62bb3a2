"""
Order Lifecycle Service — イベント検証 (Event Verifier)

通知に含まれるステータスは信用しない。
通知からリソース ID だけを取り出し、プロバイダの API に照会して
正本のステータスを取得する。

  ┌──────────┐  通知 (id のみ信用)  ┌──────────┐  GET /payments/{id}  ┌────────────┐
  │ Provider │ ──────────────────▶ │ Verifier │ ───────────────────▶ │ Provider API│
  └──────────┘                     └────┬─────┘                      └────────────┘
                                        │ ExternalEvent (正規化済み)
                                        ▼

対応プロバイダ: Mercado Pago、PagSeguro (JSON API と旧 IPN)、Stripe。

照会の失敗 (非 2xx・ネットワークエラー・タイムアウト・不正な本文) は
VerificationError として扱い、何も記録しない。再送はプロバイダに任せる。
"""

import logging
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from collections.abc import Mapping

import httpx

from .errors import MissingEventId, OrderMismatch, TokenInvalid, UnknownProviderStatus, VerificationError
from .events import EventType, ExternalEvent, Provider, ProviderStatus, RawNotification
from .tokens import ConfirmationTokenSigner

logger = logging.getLogger(__name__)


class ProviderAdapter(ABC):
    """決済プロバイダごとの差分を吸収するアダプタ"""

    provider: Provider
    status_map: dict[str, ProviderStatus]
    method_map: dict[str, str] = {}

    def __init__(self, api_url: str, access_token: str) -> None:
        self.api_url = api_url.rstrip("/")
        self.access_token = access_token

    def for_notification(self, notification: RawNotification) -> "ProviderAdapter":
        """通知の形式に応じて照会に使うアダプタを選ぶ。"""
        return self

    def is_payment_notification(self, notification: RawNotification) -> bool:
        return True

    @abstractmethod
    def extract_resource_id(self, notification: RawNotification) -> str | None:
        """通知から照会に使うリソース ID を取り出す。"""
        ...

    @abstractmethod
    def resource_url(self, resource_id: str) -> str:
        ...

    @abstractmethod
    def read_resource(self, data: dict) -> tuple[str | None, str | None, str | None, str | None]:
        """照会結果から (status, 注文 ID, 決済 ID, 支払い方法) を取り出す。"""
        ...

    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    def params(self) -> dict[str, str]:
        return {}

    def decode(self, resp: httpx.Response) -> dict:
        """照会結果の本文を辞書にする。不正な本文は ValueError。"""
        return resp.json()

    def event_key(self, resource_id: str, payment_reference: str | None) -> str:
        """台帳のイベント ID の元になるキー"""
        return resource_id

    def map_status(self, raw_status: str, order_reference: str | None = None) -> ProviderStatus:
        try:
            return self.status_map[raw_status]
        except KeyError:
            raise UnknownProviderStatus(self.provider.value, raw_status, order_reference) from None

    def map_method(self, raw_method: str | None) -> str | None:
        if not raw_method:
            return None
        return self.method_map.get(raw_method, raw_method.lower())


class MercadoPagoAdapter(ProviderAdapter):
    provider = Provider.MERCADOPAGO
    status_map = {s.value: s for s in ProviderStatus}
    method_map = {
        "credit_card": "card",
        "debit_card": "card",
        "pix": "pix",
        "bank_transfer": "pix",
        "ticket": "boleto",
        "atm": "boleto",
    }
    PAYMENT_TOPICS = frozenset({"payment", "payment.created", "payment.updated"})

    def is_payment_notification(self, notification: RawNotification) -> bool:
        query, body = notification.query, notification.body
        topic = query.get("topic") or query.get("type") or body.get("type") or body.get("action")
        return topic in self.PAYMENT_TOPICS

    def extract_resource_id(self, notification: RawNotification) -> str | None:
        resource_id = notification.query.get("id") or notification.query.get("data.id")
        if not resource_id:
            data = notification.body.get("data")
            if isinstance(data, dict) and data.get("id") is not None:
                resource_id = str(data["id"])
        return resource_id or None

    def resource_url(self, resource_id: str) -> str:
        return f"{self.api_url}/v1/payments/{resource_id}"

    def read_resource(self, data: dict) -> tuple[str | None, str | None, str | None, str | None]:
        payment_id = data.get("id")
        return (
            data.get("status"),
            data.get("external_reference") or None,
            str(payment_id) if payment_id is not None else None,
            data.get("payment_type_id"),
        )


class PagSeguroAdapter(ProviderAdapter):
    provider = Provider.PAGSEGURO
    status_map = {
        "PAID": ProviderStatus.APPROVED,
        "AVAILABLE": ProviderStatus.APPROVED,
        "WAITING": ProviderStatus.PENDING,
        "IN_ANALYSIS": ProviderStatus.IN_PROCESS,
        "AUTHORIZED": ProviderStatus.AUTHORIZED,
        "DECLINED": ProviderStatus.REJECTED,
        "CANCELED": ProviderStatus.CANCELLED,
        "REFUNDED": ProviderStatus.REFUNDED,
        "CHARGEBACK": ProviderStatus.CHARGED_BACK,
        "IN_DISPUTE": ProviderStatus.IN_MEDIATION,
    }
    method_map = {
        "CREDIT_CARD": "card",
        "DEBIT_CARD": "card",
        "PIX": "pix",
        "BOLETO": "boleto",
    }

    def __init__(
        self,
        api_url: str,
        access_token: str,
        legacy: "PagSeguroLegacyAdapter | None" = None,
    ) -> None:
        super().__init__(api_url, access_token)
        self.legacy = legacy

    def for_notification(self, notification: RawNotification) -> ProviderAdapter:
        if self.legacy is not None and "notificationCode" in notification.body:
            return self.legacy
        return self

    def extract_resource_id(self, notification: RawNotification) -> str | None:
        body = notification.body
        charges = body.get("charges")
        if isinstance(charges, list) and charges and isinstance(charges[0], dict):
            charge_id = charges[0].get("id")
        else:
            charge_id = body.get("id")
        return str(charge_id) if charge_id else None

    def resource_url(self, resource_id: str) -> str:
        return f"{self.api_url}/charges/{resource_id}"

    def headers(self) -> dict[str, str]:
        return {**super().headers(), "x-api-version": "4.0"}

    def read_resource(self, data: dict) -> tuple[str | None, str | None, str | None, str | None]:
        method = data.get("payment_method")
        charge_id = data.get("id")
        return (
            data.get("status"),
            data.get("reference_id") or None,
            str(charge_id) if charge_id is not None else None,
            method.get("type") if isinstance(method, dict) else None,
        )


class PagSeguroLegacyAdapter(ProviderAdapter):
    """
    PagSeguro の旧 IPN。

    通知はフォーム形式の notificationCode だけを運ぶ。
    照会 API は email / token をクエリで受け取り、XML で取引を返す。
    """

    provider = Provider.PAGSEGURO
    status_map = {
        "1": ProviderStatus.PENDING,
        "2": ProviderStatus.IN_PROCESS,
        "3": ProviderStatus.APPROVED,
        "4": ProviderStatus.APPROVED,
        "5": ProviderStatus.IN_MEDIATION,
        "6": ProviderStatus.REFUNDED,
        "7": ProviderStatus.CANCELLED,
        "8": ProviderStatus.CHARGED_BACK,
        "9": ProviderStatus.IN_MEDIATION,
    }
    method_map = {
        "1": "card",
        "2": "boleto",
    }

    def __init__(self, api_url: str, access_token: str, email: str) -> None:
        super().__init__(api_url, access_token)
        self.email = email

    def extract_resource_id(self, notification: RawNotification) -> str | None:
        return notification.body.get("notificationCode") or None

    def resource_url(self, resource_id: str) -> str:
        return f"{self.api_url}/v3/transactions/notifications/{resource_id}"

    def headers(self) -> dict[str, str]:
        return {"Accept": "application/xml"}

    def params(self) -> dict[str, str]:
        return {"email": self.email, "token": self.access_token}

    def decode(self, resp: httpx.Response) -> dict:
        try:
            root = ET.fromstring(resp.content)
        except ET.ParseError as e:
            raise ValueError(f"malformed XML: {e}") from e
        return {
            "status": root.findtext("status"),
            "reference": root.findtext("reference"),
            "code": root.findtext("code"),
            "paymentMethod": root.findtext("paymentMethod/type"),
        }

    def event_key(self, resource_id: str, payment_reference: str | None) -> str:
        # 通知コードは配信ごとに変わるので取引コードで重複を判定する
        return payment_reference or resource_id

    def read_resource(self, data: dict) -> tuple[str | None, str | None, str | None, str | None]:
        return (
            data.get("status"),
            data.get("reference") or None,
            data.get("code") or None,
            data.get("paymentMethod"),
        )


class StripeAdapter(ProviderAdapter):
    """
    Stripe の webhook。

    本文の id (evt_...) だけを信用し、GET /v1/events/{id} で正本のイベントを取得する。
    イベント種別をステータスとして扱う。
    """

    provider = Provider.STRIPE
    status_map = {
        "checkout.session.completed": ProviderStatus.APPROVED,
        "checkout.session.async_payment_succeeded": ProviderStatus.APPROVED,
        "checkout.session.async_payment_failed": ProviderStatus.REJECTED,
        "checkout.session.expired": ProviderStatus.CANCELLED,
        "payment_intent.payment_failed": ProviderStatus.REJECTED,
        "charge.refunded": ProviderStatus.REFUNDED,
        "charge.dispute.created": ProviderStatus.IN_MEDIATION,
    }

    def is_payment_notification(self, notification: RawNotification) -> bool:
        return notification.body.get("type") in self.status_map

    def extract_resource_id(self, notification: RawNotification) -> str | None:
        event_id = notification.body.get("id")
        return str(event_id) if event_id else None

    def resource_url(self, resource_id: str) -> str:
        return f"{self.api_url}/v1/events/{resource_id}"

    def read_resource(self, data: dict) -> tuple[str | None, str | None, str | None, str | None]:
        payload = data.get("data")
        obj = payload.get("object") if isinstance(payload, dict) else None
        if not isinstance(obj, dict):
            obj = {}
        metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
        payment_intent = obj.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        methods = obj.get("payment_method_types") or []
        return (
            data.get("type"),
            metadata.get("order_id") or obj.get("client_reference_id") or None,
            payment_intent or obj.get("id"),
            methods[0] if methods else None,
        )


class EventVerifier:
    """
    生の通知を ExternalEvent に変換する。

    - 決済通知: プロバイダ API へ認証付きで照会 (タイムアウトあり)
    - 受取確認: 署名付きトークンを検証
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        adapters: Mapping[Provider, ProviderAdapter],
        token_signer: ConfirmationTokenSigner,
        timeout: float = 10.0,
    ):
        self.client = client
        self.adapters = dict(adapters)
        self.token_signer = token_signer
        self.timeout = timeout

    def supports(self, provider: Provider) -> bool:
        return provider in self.adapters

    async def verify_payment(self, notification: RawNotification) -> ExternalEvent | None:
        """
        決済通知を検証する。決済以外の通知は None (無視してよい)。
        """
        adapter = self.adapters.get(notification.provider)
        if adapter is None:
            raise VerificationError(f"No adapter configured for {notification.provider.value}")

        adapter = adapter.for_notification(notification)
        if not adapter.is_payment_notification(notification):
            return None

        resource_id = adapter.extract_resource_id(notification)
        if not resource_id:
            raise MissingEventId(f"{adapter.provider.value} notification carries no resource id")

        data = await self._fetch(adapter, resource_id)
        raw_status, order_reference, payment_reference, raw_method = adapter.read_resource(data)
        if not raw_status:
            raise VerificationError(
                f"{adapter.provider.value} resource {resource_id} has no status"
            )
        if not order_reference:
            raise OrderMismatch(
                f"{adapter.provider.value} resource {resource_id} has no order reference"
            )

        status = adapter.map_status(raw_status, order_reference)
        logger.info(
            "Verified %s resource %s: status=%s order=%s",
            adapter.provider.value, resource_id, raw_status, order_reference,
        )
        return ExternalEvent(
            event_id=f"{adapter.event_key(resource_id, payment_reference)}:{raw_status}",
            provider=adapter.provider,
            event_type=EventType.PAYMENT,
            verified_status=status,
            order_reference=order_reference,
            external_payment_reference=payment_reference or resource_id,
            payment_method=adapter.map_method(raw_method),
        )

    async def _fetch(self, adapter: ProviderAdapter, resource_id: str) -> dict:
        url = adapter.resource_url(resource_id)
        try:
            resp = await self.client.get(
                url,
                headers=adapter.headers(),
                params=adapter.params(),
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise VerificationError(
                f"{adapter.provider.value} lookup of {resource_id} failed: {e!r}"
            ) from e

        if not resp.is_success:
            raise VerificationError(
                f"{adapter.provider.value} lookup of {resource_id} returned {resp.status_code}"
            )

        try:
            data = adapter.decode(resp)
        except ValueError as e:
            raise VerificationError(
                f"{adapter.provider.value} lookup of {resource_id} returned a malformed body"
            ) from e
        if not isinstance(data, dict):
            raise VerificationError(
                f"{adapter.provider.value} lookup of {resource_id} returned unexpected body"
            )
        return data

    def verify_confirmation(self, order_id: str | None, token: str | None) -> ExternalEvent:
        """受取確認トークンを検証する。TokenInvalid / TokenExpired を送出しうる。"""
        if not token:
            raise TokenInvalid("Missing token")
        order_reference = self.token_signer.verify(token, order_id)
        return ExternalEvent(
            event_id=f"confirm:{order_reference}",
            provider=Provider.CONFIRMATION_LINK,
            event_type=EventType.DELIVERY_CONFIRMED,
            order_reference=order_reference,
        )
