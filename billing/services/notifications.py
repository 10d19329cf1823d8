import logging
from html import escape
from aiogram import Bot

from billing.models.payment import ReconciliationGapRecord
from billing.models.subscription import ExpirationReport
from billing.utils.dates import format_datetime

logger = logging.getLogger(__name__)


class NotificationService:
    """Сервис для отправки уведомлений администраторам"""

    def __init__(self, bot: Bot, admin_ids: list[int]):
        self.bot = bot
        self.admin_ids = admin_ids

    async def _send_to_admins(self, text: str) -> int:
        """Отправляет сообщение всем админам, возвращает число доставленных"""
        delivered = 0
        for admin_id in self.admin_ids:
            try:
                await self.bot.send_message(admin_id, text, parse_mode="HTML")
                delivered += 1
            except Exception as e:
                logger.error(f"Не удалось уведомить админа {admin_id}: {e}")
        return delivered

    async def notify_admins_reconciliation_gap(self, gap: ReconciliationGapRecord) -> int:
        """Успешный платёж без метаданных: нужна ручная сверка"""
        amount = f"{gap['amount']} {gap['currency'] or ''}".strip() if gap["amount"] is not None else "—"
        payment_intent_id = escape(gap['payment_intent_id'])
        return await self._send_to_admins(
            f"🚨 Платёж без метаданных покупки!\n\n"
            f"Payment intent: <code>{payment_intent_id}</code>\n"
            f"Статус шлюза: {escape(gap['gateway_status'])}\n"
            f"Сумма: {escape(amount)}\n"
            f"Заказ: {escape(gap['merchant_order_id'] or '—')}\n"
            f"Обнаружен: {format_datetime(gap['detected_at'])} (UTC+8)\n\n"
            f"Подписка не начислена. После сверки используйте:\n"
            f"<code>/resolve {payment_intent_id} комментарий</code>"
        )

    async def notify_admins_expiration_failure(self, report: ExpirationReport) -> int:
        """Один или несколько проходов пересчёта подписок завершились ошибкой"""
        lines = [
            f"• {name}: {escape(str(report.passes[name].error))}"
            for name in report.failed_passes
        ]
        return await self._send_to_admins(
            f"⚠️ Ошибка пересчёта подписок ({format_datetime(report.started_at)} UTC+8)\n\n"
            + "\n".join(lines)
        )
