"""Репозиторий журнала заказов user_order (только вставка)"""
import asyncpg

from billing.models.payment import OrderRecord


async def insert_order(conn: asyncpg.Connection, order: OrderRecord) -> int:
    """Вставляет запись журнала заказов в рамках переданного соединения"""
    return await conn.fetchval(
        """
        INSERT INTO user_order (
            uid, plan_name, total_price, coins_added, plan_valid_till,
            status, payment_intent_id, payment_status, order_id, payment_method,
            payment_created_at, payment_updated_at, error_message, error_code
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
        RETURNING id
        """,
        order["uid"],
        order["plan_name"],
        order["total_price"],
        order["coins_added"],
        order["plan_valid_till"],
        order["status"],
        order["payment_intent_id"],
        order["payment_status"],
        order["order_id"],
        order["payment_method"],
        order["payment_created_at"],
        order["payment_updated_at"],
        order["error_message"],
        order["error_code"],
    )


class OrderRepository:
    """Репозиторий для журнала заказов"""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def insert(self, order: OrderRecord) -> int:
        """Добавляет запись о попытке покупки, возвращает её id"""
        async with self.pool.acquire() as conn:
            return await insert_order(conn, order)
