"""Репозиторий для метаданных платежей (payment_metadata)"""
import json
import asyncpg
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from billing.db.pool import affected_rows
from billing.db.repositories.orders import insert_order
from billing.models.payment import MetadataStatus, OrderRecord, PaymentMetadataRecord

METADATA_COLUMNS = """
    payment_intent_id, uid, plan, total_price, order_id, payment_method,
    request_id, status, metadata, error_message, error_code,
    created_at, updated_at, expires_at
"""


def _record(row: Any) -> PaymentMetadataRecord:
    record = dict(row)
    # asyncpg по умолчанию отдаёт jsonb строкой
    if isinstance(record.get("metadata"), str):
        record["metadata"] = json.loads(record["metadata"])
    record["metadata"] = record.get("metadata") or {}
    return record  # type: ignore


class PaymentMetadataRepository:
    """Репозиторий для работы с метаданными платежей"""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def insert(
        self,
        payment_intent_id: str,
        uid: str,
        plan: str,
        total_price: Decimal,
        order_id: Optional[str],
        payment_method: str,
        request_id: Optional[str],
        metadata: dict[str, Any],
        created_at: datetime,
        expires_at: datetime,
    ) -> bool:
        """
        Создать запись метаданных со статусом pending

        Returns:
            False если запись для этого payment_intent_id уже существует
        """
        async with self.pool.acquire() as conn:
            inserted = await conn.fetchval(
                """
                INSERT INTO payment_metadata (
                    payment_intent_id, uid, plan, total_price, order_id,
                    payment_method, request_id, status, metadata, created_at, expires_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11)
                ON CONFLICT (payment_intent_id) DO NOTHING
                RETURNING payment_intent_id
                """,
                payment_intent_id, uid, plan, total_price, order_id,
                payment_method, request_id, MetadataStatus.PENDING.value,
                json.dumps(metadata, default=str), created_at, expires_at
            )
            return inserted is not None

    async def get(self, payment_intent_id: str) -> Optional[PaymentMetadataRecord]:
        """Получить метаданные по ID платёжного намерения"""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {METADATA_COLUMNS} FROM payment_metadata WHERE payment_intent_id = $1",
                payment_intent_id
            )
            return _record(row) if row else None

    async def transition(
        self,
        payment_intent_id: str,
        to_status: MetadataStatus,
        from_statuses: Sequence[MetadataStatus],
        now: datetime,
        error_message: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> bool:
        """
        Условно переводит запись в новый статус

        Returns:
            True если запись была в одном из from_statuses и перешла в to_status
        """
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE payment_metadata
                SET status = $2,
                    updated_at = $3,
                    error_message = COALESCE($4, error_message),
                    error_code = COALESCE($5, error_code)
                WHERE payment_intent_id = $1
                  AND status = ANY($6::text[])
                """,
                payment_intent_id, to_status.value, now, error_message, error_code,
                [status.value for status in from_statuses]
            )
            return affected_rows(result) > 0

    async def close_with_order(
        self,
        payment_intent_id: str,
        to_status: MetadataStatus,
        order: OrderRecord,
        now: datetime,
    ) -> bool:
        """
        Переход pending → to_status и запись журнала заказа в одной транзакции

        Returns:
            False если запись уже не pending (журнал не пишется)
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE payment_metadata
                    SET status = $2,
                        updated_at = $3,
                        error_message = COALESCE($4, error_message),
                        error_code = COALESCE($5, error_code)
                    WHERE payment_intent_id = $1
                      AND status = $6
                    """,
                    payment_intent_id, to_status.value, now,
                    order["error_message"], order["error_code"],
                    MetadataStatus.PENDING.value
                )
                if affected_rows(result) == 0:
                    return False
                await insert_order(conn, order)
                return True

    async def expire_stale(self, now: datetime) -> int:
        """Переводит просроченные записи pending в expired"""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE payment_metadata
                SET status = $1, updated_at = $2
                WHERE status = $3
                  AND expires_at < $2
                """,
                MetadataStatus.EXPIRED.value, now, MetadataStatus.PENDING.value
            )
            return affected_rows(result)

    async def list_for_user(self, uid: str, limit: int = 10) -> list[PaymentMetadataRecord]:
        """Последние записи пользователя (для администрирования)"""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {METADATA_COLUMNS}
                FROM payment_metadata
                WHERE uid = $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                uid, limit
            )
            return [_record(row) for row in rows]
