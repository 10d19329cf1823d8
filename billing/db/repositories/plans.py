"""Репозиторий каталога тарифов (только чтение)"""
import asyncpg
from typing import Optional

from billing.models.subscription import PlanDefinition


class PlanRepository:
    """Репозиторий для таблицы subscription_plans"""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get(self, plan_name: str) -> Optional[PlanDefinition]:
        """Получить тариф по имени (без учёта регистра)"""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT plan_name, coins, plan_period, price
                FROM subscription_plans
                WHERE lower(plan_name) = lower($1)
                """,
                plan_name
            )
            return PlanDefinition.from_row(row) if row else None
