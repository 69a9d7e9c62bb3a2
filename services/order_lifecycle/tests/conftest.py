import os
import sqlite3
from collections.abc import AsyncGenerator
from datetime import datetime

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

# app.main はインポート時に設定を読むので、先に環境変数を用意する
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CONFIRMATION_TOKEN_SECRET", "test-confirmation-secret")

# SQLite にはタイムゾーン付きの ISO 文字列で保存する (比較は文字列順)
sqlite3.register_adapter(datetime, lambda value: value.isoformat(" "))

from app.config import Settings  # noqa: E402
from app.dispatchers import EmailDispatcher, LowStockAlertDispatcher, RecipientResolver  # noqa: E402
from app.main import build_pipeline, create_app  # noqa: E402
from app.schema import create_schema  # noqa: E402

MERCADOPAGO_API = "https://api.mercadopago.test"
PAGSEGURO_API = "https://api.pagseguro.test"
PAGSEGURO_LEGACY_API = "https://ws.pagseguro.test"
STRIPE_API = "https://api.stripe.test"


# ── 外部コラボレータの偽物 ───────────────────────

class FakeProviderApi:
    """決済プロバイダの照会 API。MockTransport のハンドラとして使う。"""

    def __init__(self):
        self.payments: dict[str, dict] = {}
        self.charges: dict[str, dict] = {}
        self.events: dict[str, dict] = {}
        self.legacy_transactions: dict[str, str] = {}
        self.requests: list[httpx.Request] = []
        self.error: Exception | None = None
        self.status_code: int | None = None
        self.raw_body: bytes | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.status_code is not None:
            return httpx.Response(self.status_code, json={"message": "provider error"})
        if self.raw_body is not None:
            return httpx.Response(200, content=self.raw_body)

        path = request.url.path
        resource = None
        if request.url.host == "api.mercadopago.test" and path.startswith("/v1/payments/"):
            resource = self.payments.get(path.rsplit("/", 1)[1])
        elif request.url.host == "api.pagseguro.test" and path.startswith("/charges/"):
            resource = self.charges.get(path.rsplit("/", 1)[1])
        elif request.url.host == "api.stripe.test" and path.startswith("/v1/events/"):
            resource = self.events.get(path.rsplit("/", 1)[1])
        elif request.url.host == "ws.pagseguro.test" and path.startswith(
            "/v3/transactions/notifications/"
        ):
            xml = self.legacy_transactions.get(path.rsplit("/", 1)[1])
            if xml is not None:
                return httpx.Response(
                    200, content=xml.encode(), headers={"content-type": "application/xml"}
                )
        if resource is None:
            return httpx.Response(404, json={"message": "not found"})
        return httpx.Response(200, json=resource)


class RecordingEmailDispatcher(EmailDispatcher):
    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    async def send(self, order_id: str, recipient: str) -> None:
        if self.fail:
            raise RuntimeError("email service unavailable")
        self.sent.append((order_id, recipient))


class RecordingRecipientResolver(RecipientResolver):
    def __init__(self):
        self.emails: dict[str, str] = {}
        self.lookups: list[str] = []

    async def resolve(self, user_id: str) -> str | None:
        self.lookups.append(user_id)
        return self.emails.get(user_id)


class RecordingAlertDispatcher(LowStockAlertDispatcher):
    def __init__(self):
        self.sent: list[tuple[str | None, str, int]] = []
        self.fail = False

    async def send(self, product_id: str | None, variant_id: str, quantity: int) -> None:
        if self.fail:
            raise RuntimeError("redis unavailable")
        self.sent.append((product_id, variant_id, quantity))


# ── 設定・DB ─────────────────────────────────────

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        mercadopago_access_token="mp-token",
        mercadopago_api_url=MERCADOPAGO_API,
        pagseguro_token="ps-token",
        pagseguro_api_url=PAGSEGURO_API,
        pagseguro_email="loja@example.com",
        pagseguro_legacy_api_url=PAGSEGURO_LEGACY_API,
        stripe_secret_key="sk_test_123",
        stripe_api_url=STRIPE_API,
        provider_timeout_seconds=2.0,
        confirmation_token_secret="test-confirmation-secret",
        frontend_url="https://loja.test",
        email_dispatch_url="https://functions.test/send-order-emails",
        internal_api_secret="internal-secret",
        low_stock_threshold=5,
    )


@pytest_asyncio.fixture
async def engine(settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        settings.database_url,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    await create_schema(engine, include_checkout_tables=True)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def seed_order(session_factory):
    """注文・明細・在庫・クーポンを投入する。"""

    async def _seed(
        order_id: str = "order-1",
        *,
        status: str = "awaiting_payment",
        payment_status: str = "pending",
        payment_gateway: str | None = "mercadopago",
        external_payment_reference: str | None = None,
        coupon_code: str | None = None,
        customer_email: str | None = "cliente@example.com",
        user_id: str | None = None,
        items: list[tuple[str | None, str | None, int]] = (("var-1", "prod-1", 2),),
        stock: dict[str, tuple[str, int]] | None = None,
    ) -> str:
        async with session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO orders
                        (id, user_id, total, status, payment_status, payment_gateway,
                         external_payment_reference, coupon_code, customer_email)
                    VALUES
                        (:id, :user_id, 199.90, :status, :payment_status, :gateway,
                         :reference, :coupon, :email)
                """),
                {
                    "id": order_id,
                    "user_id": user_id,
                    "status": status,
                    "payment_status": payment_status,
                    "gateway": payment_gateway,
                    "reference": external_payment_reference,
                    "coupon": coupon_code,
                    "email": customer_email,
                },
            )
            for n, (variant_id, product_id, quantity) in enumerate(items, start=1):
                await session.execute(
                    text("""
                        INSERT INTO order_items (id, order_id, product_id, variant_id, quantity)
                        VALUES (:id, :order_id, :product_id, :variant_id, :quantity)
                    """),
                    {
                        "id": f"{order_id}-item-{n}",
                        "order_id": order_id,
                        "product_id": product_id,
                        "variant_id": variant_id,
                        "quantity": quantity,
                    },
                )
            for variant_id, (product_id, quantity) in (stock or {}).items():
                await session.execute(
                    text("""
                        INSERT INTO product_variants (id, product_id, stock_quantity)
                        VALUES (:id, :product_id, :quantity)
                        ON CONFLICT (id) DO NOTHING
                    """),
                    {"id": variant_id, "product_id": product_id, "quantity": quantity},
                )
            if coupon_code:
                await session.execute(
                    text("INSERT INTO coupons (code, used_count) VALUES (:code, 0) ON CONFLICT (code) DO NOTHING"),
                    {"code": coupon_code},
                )
            await session.commit()
        return order_id

    return _seed


@pytest.fixture
def db(session_factory):
    """テストからストレージの状態を読むためのヘルパー"""

    class _Reader:
        async def scalar(self, sql: str, **params):
            async with session_factory() as session:
                return (await session.execute(text(sql), params)).scalar()

        async def order(self, order_id: str):
            async with session_factory() as session:
                result = await session.execute(
                    text("SELECT * FROM orders WHERE id = :id"), {"id": order_id}
                )
                return result.first()

        async def stock(self, variant_id: str) -> int | None:
            return await self.scalar(
                "SELECT stock_quantity FROM product_variants WHERE id = :id", id=variant_id
            )

        async def coupon_uses(self, code: str) -> int | None:
            return await self.scalar("SELECT used_count FROM coupons WHERE code = :code", code=code)

        async def ledger_count(self) -> int:
            return await self.scalar("SELECT COUNT(*) FROM processed_events")

        async def audit_actions(self, entity_id: str | None = None) -> list[str]:
            async with session_factory() as session:
                if entity_id is None:
                    result = await session.execute(
                        text("SELECT action FROM audit_logs ORDER BY created_at")
                    )
                else:
                    result = await session.execute(
                        text("SELECT action FROM audit_logs WHERE entity_id = :id ORDER BY created_at"),
                        {"id": entity_id},
                    )
                return [row.action for row in result.fetchall()]

    return _Reader()


# ── パイプライン・HTTP ───────────────────────────

@pytest.fixture
def provider_api() -> FakeProviderApi:
    return FakeProviderApi()


@pytest_asyncio.fixture
async def http_client(provider_api) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(provider_api.handler)) as client:
        yield client


@pytest.fixture
def email_dispatcher() -> RecordingEmailDispatcher:
    return RecordingEmailDispatcher()


@pytest.fixture
def alert_dispatcher() -> RecordingAlertDispatcher:
    return RecordingAlertDispatcher()


@pytest.fixture
def recipient_resolver() -> RecordingRecipientResolver:
    return RecordingRecipientResolver()


@pytest.fixture
def pipeline(
    settings, session_factory, http_client, email_dispatcher, alert_dispatcher, recipient_resolver
):
    return build_pipeline(
        settings,
        session_factory,
        http_client,
        email_dispatcher,
        alert_dispatcher,
        recipient_resolver,
    )


@pytest_asyncio.fixture
async def client(settings, pipeline) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app(settings, pipeline)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
