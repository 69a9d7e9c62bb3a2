"""
Order Lifecycle Service — 監査ログ (Audit Log)

受信したイベント・検証結果・適用した遷移を追記専用で記録する。
監査ログは診断用。書き込みに失敗しても本処理は止めない。
"""

import json
import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def record(
        self,
        action: str,
        entity_type: str,
        entity_id: str | None,
        metadata: dict | None = None,
    ) -> None:
        """監査エントリを 1 件追記する。例外は送出しない。"""
        try:
            async with self.session_factory() as session:
                await session.execute(
                    text("""
                        INSERT INTO audit_logs
                            (id, action, entity_type, entity_id, metadata, created_at)
                        VALUES
                            (:id, :action, :entity_type, :entity_id, :metadata, :now)
                    """),
                    {
                        "id": str(uuid4()),
                        "action": action,
                        "entity_type": entity_type,
                        "entity_id": entity_id,
                        "metadata": json.dumps(metadata or {}, default=str),
                        "now": datetime.now(timezone.utc),
                    },
                )
                await session.commit()
        except Exception:
            logger.exception("Failed to write audit entry %s for %s %s", action, entity_type, entity_id)
