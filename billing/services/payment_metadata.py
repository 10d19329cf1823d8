from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional, Union
import logging

from billing.constants import DEFAULT_PAYMENT_METHOD, METADATA_TTL
from billing.db.pool import storage_guard
from billing.db.repositories.payment_metadata import PaymentMetadataRepository
from billing.errors import ConflictError, ValidationError
from billing.models.payment import METADATA_TRANSITIONS, MetadataStatus, OrderRecord, PaymentMetadataRecord
from billing.utils.dates import utcnow

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("uid", "plan", "price")


class PaymentMetadataService:
    """
    Мост между платёжным намерением шлюза и покупкой внутри сервиса.

    Запись живёт 24 часа и двигается по статусам только вперёд:
    pending → processing → completed | failed, pending → cancelled | expired.
    """

    def __init__(
        self,
        repository: PaymentMetadataRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.clock = clock

    async def store(self, payment_intent_id: str, data: dict[str, Any]) -> PaymentMetadataRecord:
        """
        Сохраняет метаданные покупки для нового платёжного намерения

        Raises:
            ValidationError: Нет обязательных полей или цена не число
            ConflictError: Запись для этого намерения уже есть
        """
        if not payment_intent_id:
            raise ValidationError("Не указан идентификатор платёжного намерения", code="MISSING_PAYMENT_INTENT_ID")

        missing = [field for field in REQUIRED_FIELDS if data.get(field) in (None, "")]
        if missing:
            raise ValidationError(
                f"Отсутствуют обязательные поля метаданных: {', '.join(missing)}",
                code="MISSING_METADATA_FIELDS",
                details={"missing": missing},
            )

        try:
            price = Decimal(str(data["price"]))
        except (InvalidOperation, ValueError):
            raise ValidationError("Цена должна быть числом", code="INVALID_PRICE")
        if not price.is_finite():
            raise ValidationError("Цена должна быть числом", code="INVALID_PRICE")

        now = self.clock()
        extra = {
            key: value for key, value in data.items()
            if key not in ("uid", "plan", "price", "orderId", "paymentMethod", "requestId")
        }

        with storage_guard("сохранение метаданных платежа"):
            inserted = await self.repository.insert(
                payment_intent_id=payment_intent_id,
                uid=str(data["uid"]),
                plan=str(data["plan"]),
                total_price=price,
                order_id=data.get("orderId"),
                payment_method=data.get("paymentMethod") or DEFAULT_PAYMENT_METHOD,
                request_id=data.get("requestId"),
                metadata=extra,
                created_at=now,
                expires_at=now + METADATA_TTL,
            )

        if not inserted:
            raise ConflictError(
                f"Метаданные для платежа {payment_intent_id} уже существуют",
                code="DUPLICATE_PAYMENT_METADATA",
            )

        logger.info(f"💾 Метаданные сохранены: payment_intent_id={payment_intent_id}, uid={data['uid']}, plan={data['plan']}")

        return {
            "payment_intent_id": payment_intent_id,
            "uid": str(data["uid"]),
            "plan": str(data["plan"]),
            "total_price": price,
            "order_id": data.get("orderId"),
            "payment_method": data.get("paymentMethod") or DEFAULT_PAYMENT_METHOD,
            "request_id": data.get("requestId"),
            "status": MetadataStatus.PENDING.value,
            "metadata": extra,
            "error_message": None,
            "error_code": None,
            "created_at": now,
            "updated_at": None,
            "expires_at": now + METADATA_TTL,
        }

    async def get(self, payment_intent_id: str) -> Optional[PaymentMetadataRecord]:
        """Возвращает запись или None, если её нет или срок жизни истёк"""
        with storage_guard("чтение метаданных платежа"):
            record = await self.repository.get(payment_intent_id)

        if record is None:
            return None

        if self.clock() > record["expires_at"]:
            logger.info(f"⌛ Метаданные платежа {payment_intent_id} просрочены")
            if record["status"] == MetadataStatus.PENDING.value:
                await self.update_status(payment_intent_id, MetadataStatus.EXPIRED)
            return None

        return record

    async def find(self, payment_intent_id: str) -> Optional[PaymentMetadataRecord]:
        """Запись без учёта срока жизни (для проверки, была ли она уже обработана)"""
        with storage_guard("чтение метаданных платежа"):
            return await self.repository.get(payment_intent_id)

    async def update_status(
        self,
        payment_intent_id: str,
        status: Union[MetadataStatus, str],
        error_message: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> bool:
        """
        Переводит запись в новый статус, если текущий статус это допускает

        Ошибки логируются и не пробрасываются.

        Returns:
            True если запись перешла в новый статус
        """
        try:
            target = MetadataStatus(status)
            allowed = METADATA_TRANSITIONS.get(target)
            if not allowed:
                logger.warning(f"Недопустимый целевой статус метаданных: {target.value}")
                return False

            moved = await self.repository.transition(
                payment_intent_id, target, allowed, self.clock(),
                error_message=error_message, error_code=error_code,
            )
            if not moved:
                logger.info(f"Статус метаданных {payment_intent_id} не изменён (→ {target.value})")
            return moved
        except Exception as e:
            logger.error(f"Не удалось обновить статус метаданных {payment_intent_id}: {e}")
            return False

    async def claim(self, payment_intent_id: str, to_status: MetadataStatus) -> bool:
        """
        Условный переход pending → to_status

        Ровно один из конкурирующих обработчиков получает True.
        """
        with storage_guard("захват метаданных платежа"):
            return await self.repository.transition(
                payment_intent_id, to_status, (MetadataStatus.PENDING,), self.clock()
            )

    async def close(self, payment_intent_id: str, to_status: MetadataStatus, order: OrderRecord) -> bool:
        """
        Условный переход pending → to_status вместе с записью журнала заказа

        Либо меняются обе записи, либо ни одна. Ошибки хранилища пробрасываются.
        """
        with storage_guard("закрытие платежа"):
            return await self.repository.close_with_order(
                payment_intent_id, to_status, order, self.clock()
            )

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Массово переводит просроченные pending-записи в expired"""
        with storage_guard("очистка просроченных метаданных"):
            count = await self.repository.expire_stale(now or self.clock())
        if count:
            logger.info(f"⌛ Просрочено записей метаданных: {count}")
        return count

    async def list_for_user(self, uid: str, limit: int = 10) -> list[PaymentMetadataRecord]:
        with storage_guard("список метаданных пользователя"):
            return await self.repository.list_for_user(uid, limit)
