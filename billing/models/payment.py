"""Модели для платежей"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, TypedDict

from pydantic import BaseModel


class PaymentIntentStatus(str, Enum):
    """Статусы платёжного намерения в шлюзе"""
    REQUIRES_PAYMENT_METHOD = "REQUIRES_PAYMENT_METHOD"
    REQUIRES_CUSTOMER_ACTION = "REQUIRES_CUSTOMER_ACTION"
    REQUIRES_CAPTURE = "REQUIRES_CAPTURE"
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (
            PaymentIntentStatus.SUCCEEDED,
            PaymentIntentStatus.FAILED,
            PaymentIntentStatus.CANCELLED,
        )


class MetadataStatus(str, Enum):
    """Статусы записи payment_metadata"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# Из каких статусов разрешён переход в целевой
METADATA_TRANSITIONS: dict[MetadataStatus, tuple[MetadataStatus, ...]] = {
    MetadataStatus.PROCESSING: (MetadataStatus.PENDING,),
    MetadataStatus.COMPLETED: (MetadataStatus.PROCESSING,),
    MetadataStatus.FAILED: (MetadataStatus.PENDING, MetadataStatus.PROCESSING),
    MetadataStatus.CANCELLED: (MetadataStatus.PENDING,),
    MetadataStatus.EXPIRED: (MetadataStatus.PENDING,),
}


class OrderStatus(str, Enum):
    ACTIVE = "active"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentMetadataRecord(TypedDict):
    """Запись payment_metadata из базы данных"""
    payment_intent_id: str
    uid: str
    plan: str
    total_price: Decimal
    order_id: Optional[str]
    payment_method: str
    request_id: Optional[str]
    status: str
    metadata: dict[str, Any]
    error_message: Optional[str]
    error_code: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]
    expires_at: datetime


class OrderRecord(TypedDict):
    """Запись журнала заказов user_order (только вставка)"""
    uid: str
    plan_name: str
    total_price: Decimal
    coins_added: int
    plan_valid_till: Optional[datetime]
    status: str  # active, failed, cancelled
    payment_intent_id: Optional[str]
    payment_status: str  # succeeded, failed, cancelled
    order_id: Optional[str]
    payment_method: Optional[str]
    payment_created_at: datetime
    payment_updated_at: datetime
    error_message: Optional[str]
    error_code: Optional[str]


class ReconciliationGapRecord(TypedDict):
    """Успешный платёж без метаданных, ждёт ручной сверки"""
    payment_intent_id: str
    gateway_status: str
    amount: Optional[Decimal]
    currency: Optional[str]
    merchant_order_id: Optional[str]
    payload: dict[str, Any]
    detected_at: datetime


class PurchaseOutcome(BaseModel):
    """Результат обработки статуса платежа"""
    payment_intent_id: str
    gateway_status: str
    result: str  # applied, recorded, already_processed, reconciliation_gap, failed, pending, ignored
    uid: Optional[str] = None
    plan: Optional[str] = None
    order_id: Optional[str] = None
    coins_added: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    post_actions: dict[str, bool] = {}
