"""
Order Lifecycle Service — FastAPI エントリーポイント

決済プロバイダの webhook と、顧客の受取確認リンクを受け付ける。
どちらも ReconciliationPipeline を通り、注文の状態遷移と副作用に変換される。

  POST /webhooks/{provider}                    決済通知 (mercadopago / pagseguro / stripe)
  GET|POST /orders/confirm-receipt             受取確認 (JSON または HTML)
  POST /internal/orders/{id}/confirmation-link 確認リンクの発行 (内部用)
  GET /queries/...                             注文・監査ログ・台帳の参照
"""

import hmac
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from html import escape
from urllib.parse import parse_qsl

import httpx
import redis.asyncio as aioredis
from fastapi import APIRouter, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import queries
from .audit import AuditLog
from .config import Settings
from .dispatchers import (
    EmailDispatcher,
    HttpEmailDispatcher,
    HttpRecipientResolver,
    LowStockAlertDispatcher,
    RecipientResolver,
    RedisLowStockAlertDispatcher,
)
from .errors import OrderMismatch, PrimaryUpdateFailure, VerificationError
from .events import Provider, RawNotification
from .ledger import IdempotencyLedger
from .orchestrator import SideEffectOrchestrator
from .pipeline import ReconciliationPipeline
from .schema import create_schema
from .tokens import ConfirmationTokenSigner
from .verifier import (
    EventVerifier,
    MercadoPagoAdapter,
    PagSeguroAdapter,
    PagSeguroLegacyAdapter,
    ProviderAdapter,
    StripeAdapter,
)

logger = logging.getLogger(__name__)

CONFIRMATION_STATUS_CODES = {
    "confirmed": 200,
    "already": 200,
    "invalid": 400,
    "expired": 400,
    "error": 500,
}


def build_adapters(settings: Settings) -> dict[Provider, ProviderAdapter]:
    """認証情報が設定されているプロバイダだけを受け付ける。"""
    legacy = None
    if settings.pagseguro_email:
        legacy = PagSeguroLegacyAdapter(
            settings.pagseguro_legacy_api_url, settings.pagseguro_token, settings.pagseguro_email
        )
    adapters: dict[Provider, ProviderAdapter] = {
        Provider.MERCADOPAGO: MercadoPagoAdapter(
            settings.mercadopago_api_url, settings.mercadopago_access_token
        ),
        Provider.PAGSEGURO: PagSeguroAdapter(
            settings.pagseguro_api_url, settings.pagseguro_token, legacy=legacy
        ),
    }
    if settings.stripe_secret_key:
        adapters[Provider.STRIPE] = StripeAdapter(
            settings.stripe_api_url, settings.stripe_secret_key
        )
    return adapters


def build_pipeline(
    settings: Settings,
    session_factory: sessionmaker,
    client: httpx.AsyncClient,
    email_dispatcher: EmailDispatcher,
    alert_dispatcher: LowStockAlertDispatcher,
    recipient_resolver: RecipientResolver | None = None,
) -> ReconciliationPipeline:
    """設定からパイプラインの全コンポーネントを組み立てる。"""
    token_signer = ConfirmationTokenSigner(
        settings.confirmation_token_secret,
        ttl=timedelta(days=settings.confirmation_token_ttl_days),
    )
    audit = AuditLog(session_factory)
    return ReconciliationPipeline(
        session_factory,
        EventVerifier(
            client,
            build_adapters(settings),
            token_signer,
            timeout=settings.provider_timeout_seconds,
        ),
        IdempotencyLedger(
            session_factory,
            stale_after=timedelta(seconds=settings.claim_stale_after_seconds),
        ),
        SideEffectOrchestrator(
            session_factory,
            email_dispatcher,
            alert_dispatcher,
            audit,
            low_stock_threshold=settings.low_stock_threshold,
            recipient_resolver=recipient_resolver,
        ),
        audit,
        token_signer,
        frontend_url=settings.frontend_url,
        duplicate_wait=settings.duplicate_wait_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.pipeline is not None:
        yield
        return

    settings: Settings = app.state.settings
    engine = create_async_engine(settings.database_url, echo=False)
    await create_schema(engine)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
    client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
    recipient_resolver = None
    if settings.user_email_lookup_url:
        recipient_resolver = HttpRecipientResolver(
            client, settings.user_email_lookup_url, settings.internal_api_secret
        )

    app.state.pipeline = build_pipeline(
        settings,
        async_session,
        client,
        HttpEmailDispatcher(client, settings.email_dispatch_url, settings.internal_api_secret),
        RedisLowStockAlertDispatcher(redis_pool),
        recipient_resolver,
    )
    logger.info("Order lifecycle service started")
    yield
    await client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


router = APIRouter()


# ── Request Models ───────────────────────────────

class ConfirmReceiptRequest(BaseModel):
    orderId: str | None = None
    token: str | None = None


# ── Webhook Endpoints ────────────────────────────

@router.post("/webhooks/{provider}")
async def receive_webhook(provider: str, request: Request):
    """決済通知。通知の中身は信用せず、プロバイダに照会してから処理する。"""
    pipeline: ReconciliationPipeline = request.app.state.pipeline
    try:
        source = Provider(provider)
    except ValueError:
        raise HTTPException(404, "Unknown provider") from None
    if not pipeline.verifier.supports(source):
        raise HTTPException(404, "Unknown provider")

    body = await _read_body(request)
    notification = RawNotification(
        provider=source,
        query=dict(request.query_params),
        body=body,
    )
    return await pipeline.handle_payment_notification(notification)


async def _read_body(request: Request) -> dict:
    """JSON 本文、または旧 IPN のフォーム本文 (notificationCode=...) を読む。"""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/x-www-form-urlencoded"):
        raw = (await request.body()).decode("utf-8", errors="replace")
        return dict(parse_qsl(raw))
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


# ── Confirmation Endpoints ───────────────────────

@router.get("/orders/confirm-receipt")
async def confirm_receipt_link(
    request: Request,
    order_id: str | None = Query(None, alias="orderId"),
    token: str | None = Query(None),
):
    """メールのリンクから直接開かれる。ブラウザには HTML を返す。"""
    result = await request.app.state.pipeline.handle_confirmation(
        order_id, token, request.headers.get("user-agent")
    )
    return _confirmation_response(request, result)


@router.post("/orders/confirm-receipt")
async def confirm_receipt(req: ConfirmReceiptRequest, request: Request):
    result = await request.app.state.pipeline.handle_confirmation(
        req.orderId, req.token, request.headers.get("user-agent")
    )
    return _confirmation_response(request, result)


def _confirmation_response(request: Request, result: dict):
    status_code = CONFIRMATION_STATUS_CODES[result["status"]]
    if "text/html" in request.headers.get("accept", ""):
        return HTMLResponse(_render_confirmation_page(result), status_code=status_code)
    return JSONResponse(status_code=status_code, content=result)


def _render_confirmation_page(result: dict) -> str:
    ok = result["status"] in ("confirmed", "already")
    color = "#16a34a" if ok else "#dc2626"
    return f"""<!DOCTYPE html>
<html lang="pt-BR">
<head><meta charset="utf-8"><title>Confirmação de recebimento</title></head>
<body style="font-family: Arial, sans-serif; text-align: center; padding: 40px;">
  <h1 style="color: {color};">{escape(result["message"])}</h1>
</body>
</html>"""


# ── Internal Endpoints ───────────────────────────

@router.post("/internal/orders/{order_id}/confirmation-link")
async def issue_confirmation_link(
    order_id: str,
    request: Request,
    x_internal_secret: str | None = Header(None),
):
    """メール送信関数が呼ぶ。受取確認リンクを発行する。"""
    expected = request.app.state.settings.internal_api_secret
    if not expected or not hmac.compare_digest(x_internal_secret or "", expected):
        raise HTTPException(401, "Unauthorized")
    try:
        return await request.app.state.pipeline.issue_confirmation_link(order_id)
    except OrderMismatch:
        raise HTTPException(404, "Order not found") from None


# ── Query Endpoints (Read 側) ────────────────────

@router.get("/queries/orders/{order_id}")
async def query_get_order(order_id: str, request: Request):
    async with request.app.state.pipeline.session_factory() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order


@router.get("/queries/orders/{order_id}/audit")
async def query_order_audit(order_id: str, request: Request):
    """注文の監査ログ (古い順)"""
    async with request.app.state.pipeline.session_factory() as session:
        return await queries.list_audit_entries(session, order_id)


@router.get("/queries/webhook-events")
async def query_webhook_events(
    request: Request,
    provider: str | None = None,
    limit: int = Query(100, ge=1, le=1000),
):
    async with request.app.state.pipeline.session_factory() as session:
        return await queries.list_processed_events(session, provider, limit)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "order-lifecycle-service"}


# ── Error Responses ──────────────────────────────

async def _verification_failed(request: Request, exc: VerificationError):
    # 非 200 を返してプロバイダに再送させる
    return JSONResponse(status_code=503, content={"received": False, "error": "verification_failed"})


async def _primary_update_failed(request: Request, exc: PrimaryUpdateFailure):
    return JSONResponse(status_code=500, content={"received": False, "error": "update_failed"})


def create_app(
    settings: Settings | None = None,
    pipeline: ReconciliationPipeline | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.getLogger("app").setLevel(settings.log_level.upper())

    app = FastAPI(title="Order Lifecycle Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.pipeline = pipeline
    app.include_router(router)
    app.add_exception_handler(VerificationError, _verification_failed)
    app.add_exception_handler(PrimaryUpdateFailure, _primary_update_failed)
    return app


app = create_app()
