from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Optional
import logging

from billing.constants import DEFAULT_PAYMENT_METHOD, STATE_WRITE_ATTEMPTS
from billing.db.pool import storage_guard
from billing.db.repositories.orders import OrderRepository
from billing.db.repositories.plans import PlanRepository
from billing.db.repositories.reconciliation import ReconciliationRepository
from billing.db.repositories.subscriptions import SubscriptionRepository
from billing.errors import BillingError, ConflictError, NotFoundError, ReconciliationGap
from billing.models.payment import (
    MetadataStatus,
    OrderRecord,
    OrderStatus,
    PaymentIntentStatus,
    PaymentMetadataRecord,
    PurchaseOutcome,
    ReconciliationGapRecord,
)
from billing.services.entitlements import apply_purchase
from billing.services.payment_metadata import PaymentMetadataService
from billing.utils.dates import utcnow

logger = logging.getLogger(__name__)

PostAction = Callable[[str], Awaitable[Any]]


class PurchaseService:
    """
    Реакция на конечные статусы платежа.

    Каждое конечное событие обрабатывается ровно один раз: право на обработку
    получает тот, кто первым перевёл метаданные из pending. Повторные и
    параллельные вызовы возвращают already_processed и ничего не пишут.
    """

    def __init__(
        self,
        metadata: PaymentMetadataService,
        plans: PlanRepository,
        subscriptions: SubscriptionRepository,
        orders: OrderRepository,
        reconciliation: ReconciliationRepository,
        notifications=None,
        post_actions: Optional[dict[str, PostAction]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.metadata = metadata
        self.plans = plans
        self.subscriptions = subscriptions
        self.orders = orders
        self.reconciliation = reconciliation
        self.notifications = notifications
        self.post_actions: dict[str, PostAction] = dict(post_actions or {})
        self.clock = clock

    def add_post_action(self, name: str, action: PostAction) -> None:
        """Регистрирует действие, выполняемое после успешной покупки"""
        self.post_actions[name] = action

    async def handle_payment_status(
        self,
        payment_intent_id: str,
        gateway_status: str,
        intent: Optional[dict[str, Any]] = None,
    ) -> PurchaseOutcome:
        """
        Обрабатывает статус платёжного намерения, полученный от шлюза

        Args:
            payment_intent_id: ID намерения в шлюзе
            gateway_status: Статус из ответа шлюза
            intent: Полный ответ шлюза (для очереди сверки)

        Returns:
            PurchaseOutcome с результатом обработки
        """
        try:
            status = PaymentIntentStatus(str(gateway_status).upper())
        except ValueError:
            logger.warning(f"Неизвестный статус платежа {payment_intent_id}: {gateway_status}")
            return PurchaseOutcome(
                payment_intent_id=payment_intent_id,
                gateway_status=str(gateway_status),
                result="ignored",
            )

        if not status.is_terminal:
            return PurchaseOutcome(
                payment_intent_id=payment_intent_id,
                gateway_status=status.value,
                result="pending",
            )

        if status == PaymentIntentStatus.SUCCEEDED:
            return await self._handle_succeeded(payment_intent_id, intent or {})
        return await self._handle_closed(payment_intent_id, status)

    async def _handle_succeeded(self, payment_intent_id: str, intent: dict[str, Any]) -> PurchaseOutcome:
        status = PaymentIntentStatus.SUCCEEDED.value
        record = await self.metadata.get(payment_intent_id)

        if record is None:
            processed = await self._already_settled(payment_intent_id, status)
            if processed is not None:
                return processed
            return await self._report_gap(payment_intent_id, status, intent)

        outcome = PurchaseOutcome(
            payment_intent_id=payment_intent_id,
            gateway_status=status,
            result="already_processed",
            uid=record["uid"],
            plan=record["plan"],
            order_id=record["order_id"],
        )

        if record["status"] != MetadataStatus.PENDING.value:
            logger.info(f"Платёж {payment_intent_id} уже обработан (status={record['status']})")
            return outcome

        if not await self.metadata.claim(payment_intent_id, MetadataStatus.PROCESSING):
            logger.info(f"Платёж {payment_intent_id} обрабатывается другим обработчиком")
            return outcome

        try:
            coins_added = await self._apply(record)
        except Exception as e:
            logger.error(f"❌ Не удалось применить покупку {payment_intent_id}: {e}")
            await self._record_failure(record, e)
            return outcome.model_copy(update={
                "result": "failed",
                "error_code": _error_code(e),
                "error_message": _error_message(e),
            })

        await self.metadata.update_status(payment_intent_id, MetadataStatus.COMPLETED)
        logger.info(
            f"✅ Покупка применена: uid={record['uid']}, plan={record['plan']}, "
            f"coins={coins_added}, payment_intent_id={payment_intent_id}"
        )

        post_actions = await self.run_post_actions(record["uid"])
        return outcome.model_copy(update={
            "result": "applied",
            "coins_added": coins_added,
            "post_actions": post_actions,
        })

    async def _apply(self, record: PaymentMetadataRecord) -> int:
        """Применяет покупку к подписке и пишет журнал в одной транзакции"""
        uid = record["uid"]

        with storage_guard("применение покупки"):
            definition = await self.plans.get(record["plan"])
            if definition is None:
                raise NotFoundError(f"Тариф {record['plan']} не найден", code="PLAN_NOT_FOUND")

            for attempt in range(1, STATE_WRITE_ATTEMPTS + 1):
                current = await self.subscriptions.get_state(uid)
                if current is None:
                    raise NotFoundError(f"Пользователь {uid} не найден", code="USER_NOT_FOUND")

                now = self.clock()
                new_state = apply_purchase(current, definition.name, definition, now)
                order = self._order(
                    record,
                    status=OrderStatus.ACTIVE,
                    payment_status="succeeded",
                    now=now,
                    coins_added=definition.coins,
                    plan_valid_till=new_state.plan_expiry_at,
                )

                if await self.subscriptions.save_purchase(current, new_state, order):
                    return definition.coins

                logger.warning(
                    f"Состояние подписки {uid} изменилось во время покупки "
                    f"(попытка {attempt}/{STATE_WRITE_ATTEMPTS})"
                )

        raise ConflictError(
            f"Не удалось сохранить подписку {uid}: состояние постоянно меняется",
            code="CONCURRENT_STATE_CHANGE",
        )

    async def _record_failure(self, record: PaymentMetadataRecord, error: Exception) -> None:
        """Журнал failed + метаданные failed после сбоя обработки"""
        code = _error_code(error)
        message = _error_message(error)
        order = self._order(
            record,
            status=OrderStatus.FAILED,
            payment_status="failed",
            now=self.clock(),
            error_message=message,
            error_code=code,
        )
        try:
            await self.orders.insert(order)
        except Exception as e:
            logger.error(f"Не удалось записать журнал сбоя для {record['payment_intent_id']}: {e}")

        await self.metadata.update_status(
            record["payment_intent_id"], MetadataStatus.FAILED,
            error_message=message, error_code=code,
        )

    async def _handle_closed(self, payment_intent_id: str, status: PaymentIntentStatus) -> PurchaseOutcome:
        """FAILED/CANCELLED: только запись в журнал, подписка не меняется"""
        record = await self.metadata.get(payment_intent_id)

        if record is None:
            processed = await self._already_settled(payment_intent_id, status.value)
            if processed is not None:
                return processed
            logger.warning(f"⚠️ Метаданные для платежа {payment_intent_id} ({status.value}) не найдены")
            return PurchaseOutcome(
                payment_intent_id=payment_intent_id,
                gateway_status=status.value,
                result="ignored",
            )

        outcome = PurchaseOutcome(
            payment_intent_id=payment_intent_id,
            gateway_status=status.value,
            result="already_processed",
            uid=record["uid"],
            plan=record["plan"],
            order_id=record["order_id"],
        )

        if record["status"] != MetadataStatus.PENDING.value:
            return outcome

        if status == PaymentIntentStatus.FAILED:
            target, order_status, message = MetadataStatus.FAILED, OrderStatus.FAILED, "Платёж отклонён"
        else:
            target, order_status, message = MetadataStatus.CANCELLED, OrderStatus.CANCELLED, "Платёж отменён"

        order = self._order(
            record,
            status=order_status,
            payment_status=status.value.lower(),
            now=self.clock(),
            error_message=message,
            error_code=f"PAYMENT_{status.value}",
        )
        if not await self.metadata.close(payment_intent_id, target, order):
            return outcome

        logger.info(f"📝 Платёж {payment_intent_id} записан как {status.value.lower()} (uid={record['uid']})")
        return outcome.model_copy(update={
            "result": "recorded",
            "error_code": order["error_code"],
            "error_message": message,
        })

    async def _already_settled(self, payment_intent_id: str, status: str) -> Optional[PurchaseOutcome]:
        """
        Запись с истёкшим сроком жизни, которая уже дошла до конечного статуса

        Такой платёж уже обработан и не попадает в очередь сверки.
        Просроченная pending-запись (теперь expired) сюда не относится.
        """
        stored = await self.metadata.find(payment_intent_id)
        if stored is None or stored["status"] in (MetadataStatus.PENDING.value, MetadataStatus.EXPIRED.value):
            return None

        logger.info(f"Платёж {payment_intent_id} уже обработан ранее (status={stored['status']})")
        return PurchaseOutcome(
            payment_intent_id=payment_intent_id,
            gateway_status=status,
            result="already_processed",
            uid=stored["uid"],
            plan=stored["plan"],
            order_id=stored["order_id"],
        )

    async def _report_gap(
        self,
        payment_intent_id: str,
        status: str,
        intent: dict[str, Any],
    ) -> PurchaseOutcome:
        """Успешный платёж без метаданных: в очередь ручной сверки, без начислений"""
        gap_error = ReconciliationGap(payment_intent_id, status)
        logger.critical(f"🚨 {gap_error}. Требуется ручная сверка")

        gap: ReconciliationGapRecord = {
            "payment_intent_id": payment_intent_id,
            "gateway_status": status,
            "amount": _decimal(intent.get("amount")),
            "currency": intent.get("currency"),
            "merchant_order_id": intent.get("merchant_order_id"),
            "payload": intent,
            "detected_at": self.clock(),
        }
        with storage_guard("запись в очередь сверки"):
            is_new = await self.reconciliation.record(gap)

        if is_new and self.notifications is not None:
            await self.notifications.notify_admins_reconciliation_gap(gap)

        return PurchaseOutcome(
            payment_intent_id=payment_intent_id,
            gateway_status=status,
            result="reconciliation_gap",
            error_code=gap_error.code,
            error_message=gap_error.message,
        )

    async def run_post_actions(self, uid: str) -> dict[str, bool]:
        """
        Выполняет действия после покупки

        Сбой одного действия не отменяет покупку и не мешает остальным.
        """
        results: dict[str, bool] = {}
        for name, action in self.post_actions.items():
            try:
                await action(uid)
                results[name] = True
            except Exception as e:
                logger.error(f"Действие после покупки '{name}' для {uid} завершилось ошибкой: {e}")
                results[name] = False
        return results

    @staticmethod
    def _order(
        record: PaymentMetadataRecord,
        status: OrderStatus,
        payment_status: str,
        now: datetime,
        coins_added: int = 0,
        plan_valid_till: Optional[datetime] = None,
        error_message: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> OrderRecord:
        return {
            "uid": record["uid"],
            "plan_name": record["plan"],
            "total_price": record["total_price"],
            "coins_added": coins_added,
            "plan_valid_till": plan_valid_till,
            "status": status.value,
            "payment_intent_id": record["payment_intent_id"],
            "payment_status": payment_status,
            "order_id": record["order_id"],
            "payment_method": record["payment_method"] or DEFAULT_PAYMENT_METHOD,
            "payment_created_at": record["created_at"],
            "payment_updated_at": now,
            "error_message": error_message,
            "error_code": error_code,
        }


def _error_code(error: Exception) -> str:
    if isinstance(error, BillingError):
        return error.code
    return "PROCESSING_ERROR"


def _error_message(error: Exception) -> str:
    if isinstance(error, BillingError):
        return error.message
    return str(error)


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
