import asyncio
import logging
from typing import Optional
from aiohttp import web
from aiogram import Bot, Dispatcher

from billing.config import Config, setup_logging
from billing.db.pool import init_pool, close_pool
from billing.db.repositories.orders import OrderRepository
from billing.db.repositories.payment_metadata import PaymentMetadataRepository
from billing.db.repositories.plans import PlanRepository
from billing.db.repositories.reconciliation import ReconciliationRepository
from billing.db.repositories.subscriptions import SubscriptionRepository
from billing.clients.payment_gateway import PaymentGatewayClient
from billing.services.expiration import ExpirationService
from billing.services.notifications import NotificationService
from billing.services.payment_metadata import PaymentMetadataService
from billing.services.payments import PaymentService
from billing.services.purchases import PurchaseService
from billing.services.subscriptions import SubscriptionService
from billing.handlers.admin import admin_router
from billing.background.expiration import subscription_expiration_task
from billing.web.payment_api import create_payment_app

logger = logging.getLogger(__name__)


async def main():
    """Главная функция запуска сервиса биллинга"""
    config = Config.from_env()
    setup_logging(config.log_level)
    logger.info("🚀 Запуск сервиса биллинга...")

    # Инициализация базы данных
    pool = await init_pool(config.database_url)

    plans = PlanRepository(pool)
    subscriptions = SubscriptionRepository(pool)
    orders = OrderRepository(pool)
    reconciliation = ReconciliationRepository(pool)

    gateway = PaymentGatewayClient(
        client_id=config.gateway_client_id,
        api_key=config.gateway_api_key,
        base_url=config.gateway_base_url,
        merchant_account_id=config.gateway_merchant_account_id,
        timeout=config.gateway_timeout_seconds,
        token_ttl=config.gateway_token_ttl_seconds,
    )

    # Бот нужен только для уведомлений и команд администраторов
    bot: Optional[Bot] = None
    notifications: Optional[NotificationService] = None
    if config.telegram_bot_token:
        bot = Bot(token=config.telegram_bot_token)
        notifications = NotificationService(bot, config.admin_chat_ids)

    metadata_service = PaymentMetadataService(PaymentMetadataRepository(pool))
    subscription_service = SubscriptionService(subscriptions)
    purchase_service = PurchaseService(
        metadata=metadata_service,
        plans=plans,
        subscriptions=subscriptions,
        orders=orders,
        reconciliation=reconciliation,
        notifications=notifications,
    )
    purchase_service.add_post_action("refresh_summary", subscription_service.refresh_summary)
    expiration_service = ExpirationService(subscriptions, plans)
    payment_service = PaymentService(gateway, metadata_service, purchase_service, plans, subscriptions)

    # HTTP API
    app = create_payment_app(payment_service, debug=config.is_development)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, config.web_host, config.web_port)
    await site.start()
    logger.info(f"🌐 HTTP API запущен на {config.web_host}:{config.web_port}")

    # Запуск фоновой задачи пересчёта подписок
    expiration_task = asyncio.create_task(subscription_expiration_task(
        expiration_service,
        metadata_service,
        notifications,
        subscription_service,
        interval=config.expiration_interval_seconds,
    ))

    try:
        if bot is not None:
            dp = Dispatcher()
            dp["admin_ids"] = config.admin_chat_ids
            dp["expiration_service"] = expiration_service
            dp["subscription_service"] = subscription_service
            dp["metadata_service"] = metadata_service
            dp["reconciliation_repository"] = reconciliation
            dp.include_router(admin_router)

            logger.info(f"👤 Admin IDs: {', '.join(map(str, config.admin_chat_ids))}")
            # Запуск long polling
            await dp.start_polling(bot, skip_updates=True)
        else:
            logger.info("TELEGRAM_BOT_TOKEN не задан, команды администратора отключены")
            await asyncio.Event().wait()
    finally:
        # Очистка ресурсов
        expiration_task.cancel()
        try:
            await expiration_task
        except asyncio.CancelledError:
            pass
        await runner.cleanup()
        await gateway.close()
        await close_pool()
        if bot is not None:
            await bot.session.close()
        logger.info("👋 Сервис биллинга остановлен")


if __name__ == "__main__":
    asyncio.run(main())
