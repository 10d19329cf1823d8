"""Репозиторий очереди ручной сверки платежей"""
import json
import asyncpg
from datetime import datetime
from typing import Optional

from billing.db.pool import affected_rows
from billing.models.payment import ReconciliationGapRecord


class ReconciliationRepository:
    """Успешные платежи, для которых не нашлись метаданные покупки"""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def record(self, gap: ReconciliationGapRecord) -> bool:
        """
        Добавить платёж в очередь сверки

        Returns:
            False если платёж уже есть в очереди
        """
        async with self.pool.acquire() as conn:
            inserted = await conn.fetchval(
                """
                INSERT INTO reconciliation_gaps (
                    payment_intent_id, gateway_status, amount, currency,
                    merchant_order_id, payload, detected_at
                )
                VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
                ON CONFLICT (payment_intent_id) DO NOTHING
                RETURNING id
                """,
                gap["payment_intent_id"], gap["gateway_status"], gap["amount"],
                gap["currency"], gap["merchant_order_id"],
                json.dumps(gap["payload"], default=str), gap["detected_at"]
            )
            return inserted is not None

    async def list_open(self, limit: int = 20) -> list[dict]:
        """Неразобранные записи, старые первыми"""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT payment_intent_id, gateway_status, amount, currency,
                       merchant_order_id, detected_at
                FROM reconciliation_gaps
                WHERE resolved_at IS NULL
                ORDER BY detected_at
                LIMIT $1
                """,
                limit
            )
            return [dict(row) for row in rows]

    async def resolve(self, payment_intent_id: str, note: Optional[str], now: datetime) -> bool:
        """Отметить запись как разобранную оператором"""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE reconciliation_gaps
                SET resolved_at = $2, resolution_note = $3
                WHERE payment_intent_id = $1
                  AND resolved_at IS NULL
                """,
                payment_intent_id, now, note
            )
            return affected_rows(result) > 0
