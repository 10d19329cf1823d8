from datetime import datetime
from typing import Optional
import asyncpg
import logging

from billing.constants import PLAN_YEARLY, SHORT_PLANS
from billing.db.pool import affected_rows
from billing.db.repositories.orders import insert_order
from billing.models.payment import OrderRecord
from billing.models.subscription import SubscriptionState

logger = logging.getLogger(__name__)

STATE_COLUMNS = """
    uid, subscription_active, user_plan, user_coins, plan_expiry_date,
    coins_expiry, next_coin_refresh, plan_purchase_date, last_coin_addition
"""

# Полная очистка подписки после истечения тарифа
CLEAR_SUBSCRIPTION = """
    user_coins = 0,
    subscription_active = FALSE,
    user_plan = NULL,
    coins_expiry = NULL,
    plan_expiry_date = NULL,
    next_coin_refresh = NULL,
    plan_purchase_date = NULL,
    last_coin_addition = NULL
"""


class SubscriptionRepository:
    """
    Репозиторий состояния подписок (таблица users).

    Все изменения выполняются условными UPDATE: строка меняется только если
    она всё ещё удовлетворяет условию, поэтому параллельные запуски сходятся
    к одному результату без блокировок.
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get_state(self, uid: str) -> Optional[SubscriptionState]:
        """Получает состояние подписки пользователя"""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {STATE_COLUMNS} FROM users WHERE uid = $1",
                uid
            )
            return SubscriptionState.from_row(row) if row else None

    async def save_purchase(
        self,
        expected: SubscriptionState,
        new_state: SubscriptionState,
        order: OrderRecord,
    ) -> bool:
        """
        Сохраняет новое состояние и запись журнала в одной транзакции

        Состояние пишется только если строка всё ещё равна expected.

        Returns:
            False если строка изменилась с момента чтения (ничего не записано)
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE users
                    SET subscription_active = $2,
                        user_plan = $3,
                        user_coins = $4,
                        plan_expiry_date = $5,
                        coins_expiry = $6,
                        next_coin_refresh = $7,
                        plan_purchase_date = $8,
                        last_coin_addition = $9
                    WHERE uid = $1
                      AND subscription_active = $10
                      AND user_plan IS NOT DISTINCT FROM $11
                      AND user_coins = $12
                      AND plan_expiry_date IS NOT DISTINCT FROM $13
                      AND coins_expiry IS NOT DISTINCT FROM $14
                      AND next_coin_refresh IS NOT DISTINCT FROM $15
                    """,
                    new_state.uid,
                    new_state.active,
                    new_state.plan,
                    new_state.coin_balance,
                    new_state.plan_expiry_at,
                    new_state.coins_expiry_at,
                    new_state.next_coin_refresh_at,
                    new_state.purchased_at,
                    new_state.last_coin_addition_at,
                    expected.active,
                    expected.plan,
                    expected.coin_balance,
                    expected.plan_expiry_at,
                    expected.coins_expiry_at,
                    expected.next_coin_refresh_at,
                )
                if affected_rows(result) == 0:
                    return False

                await insert_order(conn, order)
                return True

    async def expire_short_plans(self, now: datetime) -> int:
        """Monthly/Tester: очищает подписки с истёкшим сроком"""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"""
                UPDATE users
                SET {CLEAR_SUBSCRIPTION}
                WHERE user_plan = ANY($1::text[])
                  AND subscription_active = TRUE
                  AND plan_expiry_date <= $2
                """,
                list(SHORT_PLANS), now
            )
            return affected_rows(result)

    async def refresh_yearly_coins(self, now: datetime, coins: int, next_refresh: datetime) -> int:
        """Yearly: обновляет монеты у подписок, которым пора пополнение"""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE users
                SET user_coins = $1,
                    coins_expiry = $2,
                    next_coin_refresh = $2,
                    last_coin_addition = $3
                WHERE user_plan = $4
                  AND subscription_active = TRUE
                  AND next_coin_refresh <= $3
                  AND plan_expiry_date > $3
                """,
                coins, next_refresh, now, PLAN_YEARLY
            )
            return affected_rows(result)

    async def expire_yearly_plans(self, now: datetime) -> int:
        """Yearly: очищает подписки после окончания года"""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"""
                UPDATE users
                SET {CLEAR_SUBSCRIPTION}
                WHERE user_plan = $1
                  AND subscription_active = TRUE
                  AND plan_expiry_date <= $2
                """,
                PLAN_YEARLY, now
            )
            return affected_rows(result)

    async def clear_expired_addon_coins(self, now: datetime) -> int:
        """Обнуляет монеты Addon у неактивных подписок с истёкшими монетами"""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE users
                SET user_coins = 0
                WHERE subscription_active = FALSE
                  AND coins_expiry <= $1
                  AND user_coins <> 0
                """,
                now
            )
            return affected_rows(result)

    async def get_monitored(self) -> list[SubscriptionState]:
        """Подписки, которые активны или ещё имеют дату окончания"""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {STATE_COLUMNS}
                FROM users
                WHERE subscription_active = TRUE OR plan_expiry_date IS NOT NULL
                ORDER BY plan_expiry_date ASC NULLS LAST
                """
            )
            return [SubscriptionState.from_row(row) for row in rows]
