import logging
from html import escape
from collections import Counter
from aiogram import Router
from aiogram.filters import Command
from aiogram.types import Message

from billing.db.repositories.reconciliation import ReconciliationRepository
from billing.services.expiration import ExpirationService
from billing.services.payment_metadata import PaymentMetadataService
from billing.services.subscriptions import SubscriptionService
from billing.utils.dates import format_datetime, utcnow
from billing.utils.text import split_message

logger = logging.getLogger(__name__)

admin_router = Router()


def is_admin(user_id: int, admin_ids: list[int]) -> bool:
    """Проверяет, является ли пользователь администратором"""
    return user_id in admin_ids


async def _deny_if_not_admin(message: Message, admin_ids: list[int]) -> bool:
    if not message.from_user:
        return True
    if not is_admin(message.from_user.id, admin_ids):
        await message.answer("❌ У вас нет прав для выполнения этой команды.")
        return True
    return False


@admin_router.message(Command("expire"))
async def cmd_expire(
    message: Message,
    admin_ids: list[int],
    expiration_service: ExpirationService,
    subscription_service: SubscriptionService,
):
    """Ручной запуск пересчёта подписок (только для админов)"""
    if await _deny_if_not_admin(message, admin_ids):
        return

    try:
        report = await expiration_service.run_expiration_pass()
        subscription_service.invalidate()

        text = "🔄 <b>Пересчёт подписок выполнен</b>\n\n"
        for name, result in report.passes.items():
            if result.success:
                text += f"✅ {name}: {result.affected}\n"
            else:
                text += f"❌ {name}: {escape(str(result.error))}\n"
        text += f"\nВсего изменено: {report.total_affected}\n"
        text += f"Время: {report.duration_ms} мс"

        await message.answer(text, parse_mode="HTML")

    except Exception as e:
        logger.error(f"Ошибка в /expire: {e}")
        await message.answer(f"❌ Ошибка: {str(e)}")


@admin_router.message(Command("sub"))
async def cmd_sub(
    message: Message,
    admin_ids: list[int],
    subscription_service: SubscriptionService,
    metadata_service: PaymentMetadataService,
):
    """Команда просмотра подписки пользователя (только для админов)"""
    if await _deny_if_not_admin(message, admin_ids):
        return

    parts = (message.text or "").split()
    if len(parts) != 2:
        await message.answer(
            "📝 Использование: /sub <uid>\n\n"
            "Пример: /sub 6f1c2a"
        )
        return

    uid = parts[1]
    try:
        summary = await subscription_service.get_summary(uid)
        if summary is None:
            await message.answer("❌ Пользователь не найден")
            return

        text = f"👤 <b>{escape(uid)}</b>\n\n"
        text += f"Тариф: {escape(summary['plan'] or '—')}\n"
        text += f"Статус: {summary['status']}\n"
        text += f"Монеты: {summary['coin_balance']}\n"
        text += f"Истекает: {format_datetime(summary['plan_expiry_at'])}\n"
        if summary["days_until_expiry"] is not None:
            text += f"Дней до окончания: {summary['days_until_expiry']}\n"
        if summary["next_coin_refresh_at"]:
            text += f"Пополнение монет: {format_datetime(summary['next_coin_refresh_at'])}\n"

        payments = await metadata_service.list_for_user(uid, limit=5)
        if payments:
            text += "\n💳 <b>Последние платежи:</b>\n"
            for record in payments:
                text += (
                    f"<code>{escape(record['payment_intent_id'])}</code> "
                    f"{escape(record['plan'])} {record['total_price']} — {record['status']}\n"
                )

        for chunk in split_message(text):
            await message.answer(chunk, parse_mode="HTML")

    except Exception as e:
        logger.error(f"Ошибка в /sub: {e}")
        await message.answer(f"❌ Ошибка: {str(e)}")


@admin_router.message(Command("monitoring"))
async def cmd_monitoring(message: Message, admin_ids: list[int], expiration_service: ExpirationService):
    """Сводка по статусам подписок (только для админов)"""
    if await _deny_if_not_admin(message, admin_ids):
        return

    try:
        summaries = await expiration_service.get_monitoring()
        if not summaries:
            await message.answer("📋 Нет подписок для мониторинга")
            return

        counts = Counter(summary["status"] for summary in summaries)
        text = f"📊 <b>Мониторинг подписок</b> ({format_datetime(utcnow())})\n\n"
        for status, count in sorted(counts.items()):
            text += f"{status}: {count}\n"

        attention = [s for s in summaries if s["status"] in ("EXPIRED", "NEEDS_COIN_REFRESH")]
        if attention:
            text += "\n⚠️ <b>Требуют пересчёта:</b>\n"
            for summary in attention:
                text += f"<code>{escape(summary['uid'])}</code> {escape(summary['plan'] or '—')} — {summary['status']}\n"

        for chunk in split_message(text):
            await message.answer(chunk, parse_mode="HTML")

    except Exception as e:
        logger.error(f"Ошибка в /monitoring: {e}")
        await message.answer(f"❌ Ошибка: {str(e)}")


@admin_router.message(Command("gaps"))
async def cmd_gaps(message: Message, admin_ids: list[int], reconciliation_repository: ReconciliationRepository):
    """Платежи, ожидающие ручной сверки (только для админов)"""
    if await _deny_if_not_admin(message, admin_ids):
        return

    try:
        gaps = await reconciliation_repository.list_open()
        if not gaps:
            await message.answer("✅ Нет платежей, ожидающих сверки")
            return

        text = "🚨 <b>Платежи без метаданных:</b>\n\n"
        for gap in gaps:
            text += f"<code>{escape(gap['payment_intent_id'])}</code>\n"
            text += f"   Сумма: {gap['amount'] or '—'} {escape(gap['currency'] or '')}\n"
            text += f"   Обнаружен: {format_datetime(gap['detected_at'])}\n\n"

        for chunk in split_message(text):
            await message.answer(chunk, parse_mode="HTML")

    except Exception as e:
        logger.error(f"Ошибка в /gaps: {e}")
        await message.answer(f"❌ Ошибка: {str(e)}")


@admin_router.message(Command("resolve"))
async def cmd_resolve(message: Message, admin_ids: list[int], reconciliation_repository: ReconciliationRepository):
    """Отметить платёж из очереди сверки как разобранный (только для админов)"""
    if await _deny_if_not_admin(message, admin_ids):
        return

    parts = (message.text or "").split(maxsplit=2)
    if len(parts) < 2:
        await message.answer(
            "📝 Использование: /resolve <payment_intent_id> [комментарий]\n\n"
            "Пример: /resolve int_abc123 начислено вручную"
        )
        return

    payment_intent_id = parts[1]
    note = parts[2] if len(parts) > 2 else None

    try:
        resolved = await reconciliation_repository.resolve(payment_intent_id, note, utcnow())
        if resolved:
            logger.info(f"✅ Платёж {payment_intent_id} отмечен как сверенный (admin={message.from_user.id})")
            await message.answer(f"✅ Платёж {payment_intent_id} отмечен как сверенный")
        else:
            await message.answer("❌ Платёж не найден в очереди сверки")

    except Exception as e:
        logger.error(f"Ошибка в /resolve: {e}")
        await message.answer(f"❌ Ошибка: {str(e)}")
