"""
Order Lifecycle Service — イベント定義

外部から届いた通知を、検証済み・正規化済みの ExternalEvent に変換して扱う。
ExternalEvent は永続化しない。コンポーネント間を受け渡す一時的な値。
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Provider(str, Enum):
    MERCADOPAGO = "mercadopago"
    PAGSEGURO = "pagseguro"
    STRIPE = "stripe"
    CONFIRMATION_LINK = "confirmation_link"


class EventType(str, Enum):
    PAYMENT = "payment"
    DELIVERY_CONFIRMED = "delivery_confirmed"


class ProviderStatus(str, Enum):
    """プロバイダのステータスを正規化した語彙（網羅的）"""
    APPROVED = "approved"
    PENDING = "pending"
    IN_PROCESS = "in_process"
    AUTHORIZED = "authorized"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    CHARGED_BACK = "charged_back"
    IN_MEDIATION = "in_mediation"


class RawNotification(BaseModel):
    """受信したままの通知。ステータス類は参考情報にすぎない。"""
    provider: Provider
    query: dict[str, str] = Field(default_factory=dict)
    body: dict = Field(default_factory=dict)


class ExternalEvent(BaseModel):
    """検証済みの外部イベント"""
    model_config = ConfigDict(frozen=True)

    event_id: str
    provider: Provider
    event_type: EventType
    verified_status: ProviderStatus | None = None
    order_reference: str
    external_payment_reference: str | None = None
    payment_method: str | None = None
