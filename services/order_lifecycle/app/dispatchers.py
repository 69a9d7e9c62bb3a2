"""
Order Lifecycle Service — 外部コラボレータ

オーケストレーターはメール送信や在庫アラートがどう届くかを知らない。
インターフェースだけに依存し、実装は起動時に差し込む。

  EmailDispatcher         → HttpEmailDispatcher (メール送信関数を HTTP で呼ぶ)
  LowStockAlertDispatcher → RedisLowStockAlertDispatcher (inventory_events に発行)
  RecipientResolver       → HttpRecipientResolver (注文にメールがないときユーザーから引く)
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone

import httpx
import redis.asyncio as aioredis


class EmailDispatcher(ABC):
    @abstractmethod
    async def send(self, order_id: str, recipient: str) -> None:
        """注文確認メールを送る。失敗時は例外を送出する。"""
        ...


class LowStockAlertDispatcher(ABC):
    @abstractmethod
    async def send(self, product_id: str | None, variant_id: str, quantity: int) -> None:
        """在庫僅少アラートを送る。失敗時は例外を送出する。"""
        ...


class RecipientResolver(ABC):
    @abstractmethod
    async def resolve(self, user_id: str) -> str | None:
        """ユーザーアカウントのメールアドレスを返す。見つからなければ None。"""
        ...


class HttpEmailDispatcher(EmailDispatcher):
    def __init__(self, client: httpx.AsyncClient, url: str, internal_secret: str):
        self.client = client
        self.url = url
        self.internal_secret = internal_secret

    async def send(self, order_id: str, recipient: str) -> None:
        resp = await self.client.post(
            self.url,
            json={"orderId": order_id, "customerEmail": recipient},
            headers={"x-internal-secret": self.internal_secret},
        )
        resp.raise_for_status()


class RedisLowStockAlertDispatcher(LowStockAlertDispatcher):
    """在庫僅少を inventory_events チャネルに発行する。通知サービスが購読する。"""

    CHANNEL = "inventory_events"

    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def send(self, product_id: str | None, variant_id: str, quantity: int) -> None:
        await self.redis.publish(
            self.CHANNEL,
            json.dumps(
                {
                    "event_type": "LowStockDetected",
                    "data": {
                        "product_id": product_id,
                        "variant_id": variant_id,
                        "current_stock": quantity,
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    },
                },
                default=str,
            ),
        )


class HttpRecipientResolver(RecipientResolver):
    """ユーザー管理側の内部 API からアカウントのメールアドレスを取得する。"""

    def __init__(self, client: httpx.AsyncClient, url: str, internal_secret: str):
        self.client = client
        self.url = url
        self.internal_secret = internal_secret

    async def resolve(self, user_id: str) -> str | None:
        resp = await self.client.post(
            self.url,
            json={"userId": user_id},
            headers={"x-internal-secret": self.internal_secret},
        )
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json().get("email") or None
