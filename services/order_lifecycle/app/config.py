"""
Order Lifecycle Service — 設定

環境変数は起動時に一度だけ読み、Settings として各コンポーネントへ渡す。
ビジネスロジックの中で os.environ を直接参照しない。
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = "redis://localhost:6379"

    # 決済プロバイダ
    mercadopago_access_token: str = ""
    mercadopago_api_url: str = "https://api.mercadopago.com"
    pagseguro_token: str = ""
    pagseguro_api_url: str = "https://api.pagseguro.com"
    pagseguro_email: str = ""
    pagseguro_legacy_api_url: str = "https://ws.pagseguro.uol.com.br"
    stripe_secret_key: str = ""
    stripe_api_url: str = "https://api.stripe.com"
    provider_timeout_seconds: float = 10.0

    # 受取確認リンク
    confirmation_token_secret: str = ""
    confirmation_token_ttl_days: int = 30
    frontend_url: str = "http://localhost:5173"

    # 外部コラボレータ
    email_dispatch_url: str = ""
    internal_api_secret: str = ""
    user_email_lookup_url: str = ""

    low_stock_threshold: int = 5
    claim_stale_after_seconds: int = 300
    duplicate_wait_seconds: float = 5.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "Settings":
        return cls(
            database_url=environ["DATABASE_URL"],
            redis_url=environ.get("REDIS_URL", "redis://localhost:6379"),
            mercadopago_access_token=environ.get("MERCADOPAGO_ACCESS_TOKEN", ""),
            mercadopago_api_url=environ.get(
                "MERCADOPAGO_API_URL", "https://api.mercadopago.com"
            ),
            pagseguro_token=environ.get("PAGSEGURO_TOKEN", ""),
            pagseguro_api_url=environ.get("PAGSEGURO_API_URL", "https://api.pagseguro.com"),
            pagseguro_email=environ.get("PAGSEGURO_EMAIL", ""),
            pagseguro_legacy_api_url=environ.get(
                "PAGSEGURO_LEGACY_API_URL", "https://ws.pagseguro.uol.com.br"
            ),
            stripe_secret_key=environ.get("STRIPE_SECRET_KEY", ""),
            stripe_api_url=environ.get("STRIPE_API_URL", "https://api.stripe.com"),
            provider_timeout_seconds=float(environ.get("PROVIDER_TIMEOUT_SECONDS", "10")),
            confirmation_token_secret=environ.get("CONFIRMATION_TOKEN_SECRET", ""),
            confirmation_token_ttl_days=int(environ.get("CONFIRMATION_TOKEN_TTL_DAYS", "30")),
            frontend_url=environ.get("FRONTEND_URL", "http://localhost:5173"),
            email_dispatch_url=environ.get("EMAIL_DISPATCH_URL", ""),
            internal_api_secret=environ.get("INTERNAL_API_SECRET", ""),
            user_email_lookup_url=environ.get("USER_EMAIL_LOOKUP_URL", ""),
            low_stock_threshold=int(environ.get("LOW_STOCK_THRESHOLD", "5")),
            claim_stale_after_seconds=int(environ.get("CLAIM_STALE_AFTER_SECONDS", "300")),
            duplicate_wait_seconds=float(environ.get("DUPLICATE_WAIT_SECONDS", "5")),
            log_level=environ.get("LOG_LEVEL", "INFO"),
        )
