import asyncio
import logging
from typing import Optional

from billing.services.expiration import ExpirationService
from billing.services.notifications import NotificationService
from billing.services.payment_metadata import PaymentMetadataService
from billing.services.subscriptions import SubscriptionService
from billing.constants import EXPIRATION_INTERVAL_SECONDS

logger = logging.getLogger(__name__)


async def run_scheduled_pass(
    expiration: ExpirationService,
    metadata: PaymentMetadataService,
    notifications: Optional[NotificationService] = None,
    subscriptions: Optional[SubscriptionService] = None,
) -> None:
    """Один плановый запуск: пересчёт подписок и очистка просроченных метаданных"""
    report = await expiration.run_expiration_pass()

    # Сводки в кеше могли устареть после массовых изменений
    if subscriptions is not None:
        subscriptions.invalidate()

    if not report.success and notifications is not None:
        await notifications.notify_admins_expiration_failure(report)

    await metadata.expire_stale()


async def subscription_expiration_task(
    expiration: ExpirationService,
    metadata: PaymentMetadataService,
    notifications: Optional[NotificationService] = None,
    subscriptions: Optional[SubscriptionService] = None,
    interval: int = EXPIRATION_INTERVAL_SECONDS,
):
    """Фоновая задача для пересчёта подписок по таймеру"""
    logger.info("🔄 Запущена фоновая задача пересчёта подписок")

    try:
        while True:
            try:
                await asyncio.sleep(interval)
                await run_scheduled_pass(expiration, metadata, notifications, subscriptions)

            except asyncio.CancelledError:
                # Позволяем задаче корректно завершиться при отмене
                logger.info("🛑 Задача пересчёта подписок остановлена")
                raise

            except Exception as e:
                logger.error(f"Ошибка в задаче пересчёта подписок: {e}")
                # Продолжаем работу даже после ошибки

    except asyncio.CancelledError:
        logger.info("✅ Задача пересчёта завершена")
        raise
