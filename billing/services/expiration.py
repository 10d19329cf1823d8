from datetime import datetime
from typing import Awaitable, Callable, Optional
import logging
import time

from billing.constants import COIN_PERIOD, PLAN_YEARLY
from billing.db.repositories.plans import PlanRepository
from billing.db.repositories.subscriptions import SubscriptionRepository
from billing.errors import NotFoundError
from billing.models.subscription import ExpirationReport, PassResult, SubscriptionSummary
from billing.services.entitlements import summarize
from billing.utils.dates import utcnow

logger = logging.getLogger(__name__)


class ExpirationService:
    """
    Пересчёт подписок по таймеру.

    Четыре независимых прохода, каждый одним условным UPDATE. Условие WHERE
    и есть предусловие перехода, поэтому повторный или параллельный запуск
    не находит подходящих строк. Ошибка одного прохода не останавливает
    следующие и не откатывает уже выполненные.
    """

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        plans: PlanRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.subscriptions = subscriptions
        self.plans = plans
        self.clock = clock

    async def run_expiration_pass(self, now: Optional[datetime] = None) -> ExpirationReport:
        """Запускает все проходы и возвращает отчёт"""
        now = now or self.clock()
        started = time.monotonic()
        report = ExpirationReport(started_at=now)

        logger.info("🔄 Запуск пересчёта подписок")

        passes: list[tuple[str, Callable[[datetime], Awaitable[int]]]] = [
            ("monthly_tester_expiry", self.subscriptions.expire_short_plans),
            ("yearly_coin_refresh", self._refresh_yearly_coins),
            ("yearly_expiry", self.subscriptions.expire_yearly_plans),
            ("addon_cleanup", self.subscriptions.clear_expired_addon_coins),
        ]
        for name, run in passes:
            report.passes[name] = await self._run_pass(name, run, now)

        report.duration_ms = int((time.monotonic() - started) * 1000)

        if report.success:
            logger.info(
                f"✅ Пересчёт подписок завершён: изменено {report.total_affected}, "
                f"{report.duration_ms} мс"
            )
        else:
            logger.error(f"❌ Пересчёт подписок завершён с ошибками: {', '.join(report.failed_passes)}")

        return report

    async def _run_pass(
        self,
        name: str,
        run: Callable[[datetime], Awaitable[int]],
        now: datetime,
    ) -> PassResult:
        try:
            affected = await run(now)
        except Exception as e:
            logger.error(f"Ошибка прохода {name}: {e}")
            return PassResult(success=False, error=str(e))

        if affected:
            logger.info(f"📊 {name}: изменено записей {affected}")
        return PassResult(success=True, affected=affected)

    async def _refresh_yearly_coins(self, now: datetime) -> int:
        definition = await self.plans.get(PLAN_YEARLY)
        if definition is None:
            raise NotFoundError(f"Тариф {PLAN_YEARLY} не найден", code="PLAN_NOT_FOUND")
        return await self.subscriptions.refresh_yearly_coins(now, definition.coins, now + COIN_PERIOD)

    async def get_monitoring(self, now: Optional[datetime] = None) -> list[SubscriptionSummary]:
        """Сводки по всем подпискам, которые активны или ещё имеют срок"""
        now = now or self.clock()
        states = await self.subscriptions.get_monitored()
        return [summarize(state, now) for state in states]
