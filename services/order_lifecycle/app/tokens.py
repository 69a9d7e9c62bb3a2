"""
Order Lifecycle Service — 受取確認トークン

メールのリンクに埋め込む、署名付き・有効期限付きのトークン。
サーバー側には保存しない。正当性は署名と有効期限から導く。
使用済みかどうかは「注文がすでに delivered か」で判定する。
"""

from datetime import datetime, timedelta, timezone

import jwt

from .errors import TokenExpired, TokenInvalid

CONFIRM_RECEIPT_PURPOSE = "confirm_receipt"
ALGORITHM = "HS256"


class ConfirmationTokenSigner:
    def __init__(self, secret: str, ttl: timedelta = timedelta(days=30)):
        if not secret:
            raise ValueError("Confirmation token secret must not be empty")
        self._secret = secret
        self.ttl = ttl

    def issue(self, order_id: str, now: datetime | None = None) -> tuple[str, datetime]:
        """注文 ID に紐づくトークンと有効期限を返す。"""
        now = now or datetime.now(timezone.utc)
        expires_at = now + self.ttl
        token = jwt.encode(
            {
                "sub": order_id,
                "purpose": CONFIRM_RECEIPT_PURPOSE,
                "iat": now,
                "exp": expires_at,
            },
            self._secret,
            algorithm=ALGORITHM,
        )
        return token, expires_at

    def verify(self, token: str, order_id: str | None = None) -> str:
        """
        トークンを検証し、対象の注文 ID を返す。

        - 署名不正 / 用途違い / 注文 ID 不一致 → TokenInvalid
        - 有効期限切れ → TokenExpired (署名が正しい場合のみ)
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": ["exp", "sub", "purpose"]},
            )
        except jwt.ExpiredSignatureError:
            claims = self._decode_ignoring_expiry(token)
            self._check_claims(claims, order_id)
            raise TokenExpired(claims["sub"]) from None
        except jwt.InvalidTokenError as e:
            raise TokenInvalid(str(e)) from e

        self._check_claims(claims, order_id)
        return claims["sub"]

    def _decode_ignoring_expiry(self, token: str) -> dict:
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "require": ["sub", "purpose"]},
            )
        except jwt.InvalidTokenError as e:
            raise TokenInvalid(str(e)) from e

    @staticmethod
    def _check_claims(claims: dict, order_id: str | None) -> None:
        if claims.get("purpose") != CONFIRM_RECEIPT_PURPOSE:
            raise TokenInvalid("Token purpose mismatch")
        if order_id is not None and claims.get("sub") != order_id:
            raise TokenInvalid("Token does not belong to this order")
