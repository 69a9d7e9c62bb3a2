"""
Order Lifecycle Service — 冪等性台帳 (Idempotency Ledger)

(provider, event_id) ごとに 1 行。重複した副作用を防ぐ唯一のゲート。

  claim()    : INSERT ... ON CONFLICT DO NOTHING
               → 1 行挿入できた呼び出し元だけが処理を進める
  complete() : 副作用の実行が終わったら state = 'done' を書く (終端マーカー)
  release()  : 致命的な失敗の後、仮の claim を取り消す → 再送で再処理できる

claim は 'done' になるまで仮のもの。処理中にプロセスが落ちた場合、
claimed_at が古くなった claim は再送時に引き継げる。
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .errors import MissingEventId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Claimed:
    provider: str
    event_id: str
    claim_token: str


@dataclass(frozen=True)
class AlreadyProcessed:
    provider: str
    event_id: str
    outcome: dict | None = None
    in_progress: bool = False


class IdempotencyLedger:
    def __init__(
        self,
        session_factory: sessionmaker,
        stale_after: timedelta = timedelta(minutes=5),
    ):
        self.session_factory = session_factory
        self.stale_after = stale_after

    async def claim(
        self,
        provider: str,
        event_id: str,
        event_type: str = "payment",
    ) -> Claimed | AlreadyProcessed:
        if not event_id:
            raise MissingEventId(f"{provider} event has no id")

        async with self.session_factory() as session:
            # 行が release で消えた直後に当たった場合に備えて 2 回まで試す
            for _ in range(2):
                token = uuid4().hex
                if await self._insert_claim(session, provider, event_id, event_type, token):
                    return Claimed(provider, event_id, token)

                row = await self._get_row(session, provider, event_id)
                if row is None:
                    continue
                if row.state == "done":
                    outcome = json.loads(row.outcome_summary) if row.outcome_summary else None
                    return AlreadyProcessed(provider, event_id, outcome=outcome)
                if await self._take_over_stale(session, provider, event_id, token):
                    logger.warning("Took over stale claim for %s/%s", provider, event_id)
                    return Claimed(provider, event_id, token)
                return AlreadyProcessed(provider, event_id, in_progress=True)

        return AlreadyProcessed(provider, event_id, in_progress=True)

    async def wait_for_outcome(
        self,
        provider: str,
        event_id: str,
        timeout: float,
        interval: float = 0.05,
    ) -> dict | None:
        """
        処理中の claim が done になるまで待ち、記録された応答を返す。
        待ちきれない、または claim が取り消された場合は None。
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            async with self.session_factory() as session:
                row = await self._get_row(session, provider, event_id)
            if row is None:
                return None
            if row.state == "done":
                return json.loads(row.outcome_summary) if row.outcome_summary else None
            if loop.time() >= deadline:
                return None
            await asyncio.sleep(interval)

    async def complete(self, claim: Claimed, outcome: dict) -> None:
        """終端マーカーを書く。以降の同じイベントは AlreadyProcessed になる。"""
        async with self.session_factory() as session:
            await session.execute(
                text("""
                    UPDATE processed_events
                    SET state = 'done', processed_at = :now, outcome_summary = :outcome
                    WHERE provider = :provider AND event_id = :event_id
                      AND claim_token = :token
                """),
                {
                    "now": datetime.now(timezone.utc),
                    "outcome": json.dumps(outcome, default=str),
                    "provider": claim.provider,
                    "event_id": claim.event_id,
                    "token": claim.claim_token,
                },
            )
            await session.commit()

    async def release(self, claim: Claimed) -> None:
        async with self.session_factory() as session:
            await session.execute(
                text("""
                    DELETE FROM processed_events
                    WHERE provider = :provider AND event_id = :event_id
                      AND state = 'claimed' AND claim_token = :token
                """),
                {
                    "provider": claim.provider,
                    "event_id": claim.event_id,
                    "token": claim.claim_token,
                },
            )
            await session.commit()

    # ── 内部処理 ─────────────────────────────────

    async def _insert_claim(
        self,
        session: AsyncSession,
        provider: str,
        event_id: str,
        event_type: str,
        token: str,
    ) -> bool:
        result = await session.execute(
            text("""
                INSERT INTO processed_events
                    (provider, event_id, event_type, state, claim_token, claimed_at)
                VALUES
                    (:provider, :event_id, :event_type, 'claimed', :token, :now)
                ON CONFLICT (provider, event_id) DO NOTHING
            """),
            {
                "provider": provider,
                "event_id": event_id,
                "event_type": event_type,
                "token": token,
                "now": datetime.now(timezone.utc),
            },
        )
        await session.commit()
        return result.rowcount == 1

    async def _get_row(self, session: AsyncSession, provider: str, event_id: str):
        result = await session.execute(
            text("""
                SELECT state, outcome_summary, claimed_at
                FROM processed_events
                WHERE provider = :provider AND event_id = :event_id
            """),
            {"provider": provider, "event_id": event_id},
        )
        return result.first()

    async def _take_over_stale(
        self,
        session: AsyncSession,
        provider: str,
        event_id: str,
        token: str,
    ) -> bool:
        now = datetime.now(timezone.utc)
        result = await session.execute(
            text("""
                UPDATE processed_events
                SET claim_token = :token, claimed_at = :now
                WHERE provider = :provider AND event_id = :event_id
                  AND state = 'claimed' AND claimed_at < :cutoff
            """),
            {
                "token": token,
                "now": now,
                "provider": provider,
                "event_id": event_id,
                "cutoff": now - self.stale_after,
            },
        )
        await session.commit()
        return result.rowcount == 1
