from decimal import Decimal
from typing import Any, Optional
import logging

from billing.clients.payment_gateway import PaymentGatewayClient
from billing.constants import DEFAULT_PAYMENT_METHOD, PLAN_ADDON
from billing.db.pool import storage_guard
from billing.db.repositories.plans import PlanRepository
from billing.db.repositories.subscriptions import SubscriptionRepository
from billing.errors import NotFoundError
from billing.models.payment import PaymentIntentStatus
from billing.services.entitlements import ensure_purchase_allowed
from billing.services.payment_metadata import PaymentMetadataService
from billing.services.purchases import PurchaseService
from billing.utils.ids import generate_order_id, generate_request_id
from billing.utils.sanitize import sanitize

logger = logging.getLogger(__name__)

# Поля намерения, которые отдаются клиенту после создания
INTENT_FIELDS = (
    "id", "amount", "currency", "status", "client_secret",
    "created_at", "updated_at", "merchant_order_id", "next_action",
)


class PaymentService:
    """Операции с платежами для внешних клиентов"""

    def __init__(
        self,
        gateway: PaymentGatewayClient,
        metadata: PaymentMetadataService,
        purchases: PurchaseService,
        plans: PlanRepository,
        subscriptions: SubscriptionRepository,
    ):
        self.gateway = gateway
        self.metadata = metadata
        self.purchases = purchases
        self.plans = plans
        self.subscriptions = subscriptions

    async def create_payment_intent(
        self,
        uid: str,
        plan: str,
        amount: Decimal,
        currency: str,
        merchant_order_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        request_id: Optional[str] = None,
        **extra: Any,
    ) -> dict[str, Any]:
        """
        Создаёт платёжное намерение и сохраняет метаданные покупки

        Намерение без записи метаданных не остаётся: если запись не удалась,
        намерение отменяется в шлюзе, а ошибка возвращается вызывающему.

        Raises:
            NotFoundError: Тариф не найден
            PreconditionError: Addon без активной подписки
        """
        request_id = request_id or generate_request_id()

        with storage_guard("проверка тарифа"):
            definition = await self.plans.get(plan)
            if definition is None:
                raise NotFoundError(f"Тариф {plan} не найден", code="PLAN_NOT_FOUND")
            if definition.name == PLAN_ADDON:
                current = await self.subscriptions.get_state(uid)
                ensure_purchase_allowed(current, definition.name)

        order_id = merchant_order_id or generate_order_id()
        # поля сопоставления покупки не переопределяются метаданными клиента
        gateway_metadata = {
            **(metadata or {}),
            "uid": uid,
            "plan": definition.name,
            "totalPrice": str(amount),
            "orderId": order_id,
            "paymentMethod": DEFAULT_PAYMENT_METHOD,
        }

        intent = await self.gateway.create_payment_intent(
            amount,
            currency,
            merchant_order_id=order_id,
            metadata=gateway_metadata,
            **extra,
        )
        payment_intent_id = intent.get("id")

        try:
            await self.metadata.store(payment_intent_id, {
                "uid": uid,
                "plan": definition.name,
                "price": amount,
                "orderId": order_id,
                "paymentMethod": DEFAULT_PAYMENT_METHOD,
                "requestId": request_id,
                "currency": currency,
            })
        except Exception as e:
            logger.error(f"❌ Не удалось сохранить метаданные для {payment_intent_id}, отменяем намерение: {e}")
            await self._cancel_orphan(payment_intent_id)
            raise

        logger.info(f"💳 Намерение создано: {sanitize({'id': payment_intent_id, 'uid': uid, 'plan': definition.name, 'request_id': request_id})}")

        return {
            "success": True,
            "message": "Платёжное намерение создано",
            "data": {field: intent.get(field) for field in INTENT_FIELDS},
            "requestId": request_id,
        }

    async def _cancel_orphan(self, payment_intent_id: Optional[str]) -> None:
        if not payment_intent_id:
            return
        try:
            await self.gateway.cancel_payment_intent(payment_intent_id, reason="merchant_error")
            logger.info(f"🚫 Намерение {payment_intent_id} отменено")
        except Exception as e:
            logger.critical(f"🚨 Не удалось отменить намерение {payment_intent_id} без метаданных: {e}")

    async def get_payment_status(self, payment_intent_id: str, request_id: Optional[str] = None) -> dict[str, Any]:
        """Статус платежа из шлюза; конечный статус передаётся на обработку покупки"""
        request_id = request_id or generate_request_id()
        intent = await self.gateway.get_payment_intent_status(payment_intent_id)
        outcome = await self.purchases.handle_payment_status(payment_intent_id, intent.get("status"), intent)

        return {
            "success": True,
            "message": "Статус платежа получен",
            "data": intent,
            "processing": outcome.model_dump(),
            "requestId": request_id,
        }

    async def confirm_payment_intent(
        self,
        payment_intent_id: str,
        confirmation_data: Optional[dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> dict[str, Any]:
        request_id = request_id or generate_request_id()
        intent = await self.gateway.confirm_payment_intent(payment_intent_id, confirmation_data)
        response = {
            "success": True,
            "message": "Платёжное намерение подтверждено",
            "data": intent,
            "requestId": request_id,
        }
        if _is_terminal(intent.get("status")):
            outcome = await self.purchases.handle_payment_status(payment_intent_id, intent["status"], intent)
            response["processing"] = outcome.model_dump()
        return response

    async def cancel_payment_intent(
        self,
        payment_intent_id: str,
        reason: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> dict[str, Any]:
        request_id = request_id or generate_request_id()
        intent = await self.gateway.cancel_payment_intent(payment_intent_id, reason)
        response = {
            "success": True,
            "message": "Платёжное намерение отменено",
            "data": intent,
            "requestId": request_id,
        }
        if _is_terminal(intent.get("status")):
            outcome = await self.purchases.handle_payment_status(payment_intent_id, intent["status"], intent)
            response["processing"] = outcome.model_dump()
        return response

    async def list_payment_methods(
        self,
        params: Optional[dict[str, str]] = None,
        request_id: Optional[str] = None,
    ) -> dict[str, Any]:
        request_id = request_id or generate_request_id()
        methods = await self.gateway.list_payment_methods(params)
        return {
            "success": True,
            "message": "Способы оплаты получены",
            "data": methods,
            "requestId": request_id,
        }


def _is_terminal(status: Any) -> bool:
    try:
        return PaymentIntentStatus(str(status).upper()).is_terminal
    except ValueError:
        return False
