from datetime import datetime
from typing import Callable, Optional
import logging

from billing.db.pool import storage_guard
from billing.db.repositories.subscriptions import SubscriptionRepository
from billing.models.subscription import SubscriptionSummary
from billing.services.entitlements import summarize
from billing.utils.dates import utcnow

logger = logging.getLogger(__name__)


class SubscriptionService:
    """
    Кешированные сводки подписок для команды /sub

    Сводка обновляется после каждой покупки (действие после покупки) и
    сбрасывается целиком после каждого пересчёта подписок.
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.clock = clock
        self._summaries: dict[str, SubscriptionSummary] = {}

    async def refresh_summary(self, uid: str) -> Optional[SubscriptionSummary]:
        """Перечитывает подписку из базы и обновляет кеш"""
        with storage_guard("чтение подписки"):
            state = await self.repository.get_state(uid)

        if state is None:
            self._summaries.pop(uid, None)
            return None

        summary = summarize(state, self.clock())
        self._summaries[uid] = summary
        logger.debug(f"Сводка подписки {uid} обновлена: {summary['status']}")
        return summary

    async def get_summary(self, uid: str) -> Optional[SubscriptionSummary]:
        """Сводка из кеша, при отсутствии читается из базы"""
        summary = self._summaries.get(uid)
        if summary is not None:
            return summary
        return await self.refresh_summary(uid)

    def invalidate(self, uid: Optional[str] = None) -> None:
        """Сбрасывает кеш (весь, если uid не указан)"""
        if uid is None:
            self._summaries.clear()
        else:
            self._summaries.pop(uid, None)
