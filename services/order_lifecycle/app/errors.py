"""
Order Lifecycle Service — エラー分類

外部通知の処理中に起こりうる失敗を種類ごとに定義する。

  一時的 (transient): 送信元の再送に任せる → HTTP 非 200
  終端的 (terminal) : 再試行しない → 記録して 200 で受理
  致命的 (fatal)    : 注文ステータスの書き込み失敗 → 再送で全体をやり直す
"""


class ReconciliationError(Exception):
    """すべての照合エラーの基底クラス"""


# ── 検証 (Event Verifier) ────────────────────────


class VerificationError(ReconciliationError):
    """決済プロバイダへの照会に失敗した（一時的）"""


class UnknownProviderStatus(ReconciliationError):
    """プロバイダが未知のステータス文字列を返した（終端的）"""

    def __init__(self, provider: str, status: str, order_reference: str | None = None):
        super().__init__(f"Unknown {provider} status: {status!r}")
        self.provider = provider
        self.status = status
        self.order_reference = order_reference


class MissingEventId(ReconciliationError):
    """通知から一意なイベント ID を導出できない（終端的）"""


class TokenInvalid(ReconciliationError):
    """確認トークンの署名・用途・注文が一致しない（終端的）"""


class TokenExpired(ReconciliationError):
    """確認トークンの有効期限切れ（終端的）

    署名自体は正しいので、対象の注文 ID を保持する。
    """

    def __init__(self, order_reference: str):
        super().__init__(f"Confirmation token expired for order {order_reference}")
        self.order_reference = order_reference


# ── 注文の照合 ───────────────────────────────────


class OrderMismatch(ReconciliationError):
    """注文が存在しない、または別プロバイダの注文（終端的）"""


class PaymentReferenceConflict(OrderMismatch):
    """記録済みの決済 ID と異なる決済 ID が届いた"""


class IllegalTransition(ReconciliationError):
    """現在の状態からは受け付けられない遷移"""


# ── 副作用の実行 (Orchestrator) ──────────────────


class PrimaryUpdateFailure(ReconciliationError):
    """注文ステータスの永続化に失敗した（致命的）"""


class StaleOrderState(PrimaryUpdateFailure):
    """条件付き UPDATE が 0 行 = 他のリクエストが先に状態を変えた"""


class SideEffectFailure(ReconciliationError):
    """副作用ステップ単体の失敗（非致命的）"""

    def __init__(self, step: str, message: str, detail: dict | None = None):
        super().__init__(f"{step}: {message}")
        self.step = step
        self.detail = detail or {}
