"""
Типизированные ошибки биллинга.

Каждая ошибка создаётся в точке сбоя с конкретным классом, кодом и
признаком повторяемости. Наружу ошибки отдаются единым конвертом
{success: false, code, message, retryable}.
"""
from typing import Any, Optional

from billing.constants import RATE_LIMIT_RETRY_AFTER_SECONDS, RETRY_AFTER_SECONDS


class BillingError(Exception):
    """Базовая ошибка биллинга"""

    code = "BILLING_ERROR"
    http_status = 500
    retryable = False
    retry_after: Optional[int] = None

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ValidationError(BillingError):
    """Некорректные входные данные"""

    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(BillingError):
    """Тариф или пользователь не найден"""

    code = "NOT_FOUND"
    http_status = 404


class AuthenticationError(BillingError):
    """Проблема с учётными данными шлюза, нужна помощь оператора"""

    code = "AUTHENTICATION_ERROR"
    http_status = 500


class NetworkError(BillingError):
    """Транспортная ошибка: соединение сброшено, отказано или истёк таймаут"""

    code = "NETWORK_ERROR"
    http_status = 503
    retryable = True
    retry_after = RETRY_AFTER_SECONDS


class GatewayError(BillingError):
    """Шлюз отклонил запрос"""

    code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        status: int,
        code: Optional[str] = None,
        raw_body: Optional[str] = None,
    ):
        super().__init__(message, code=code, details={"gateway_status": status})
        self.status = status
        self.raw_body = raw_body

    @property
    def http_status(self) -> int:  # type: ignore[override]
        if self.status == 429:
            return 429
        return 502 if self.status >= 500 else 400

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status >= 500 or self.status == 429

    @property
    def retry_after(self) -> Optional[int]:  # type: ignore[override]
        if self.status == 429:
            return RATE_LIMIT_RETRY_AFTER_SECONDS
        return RETRY_AFTER_SECONDS if self.status >= 500 else None


class ConflictError(BillingError):
    """Дубликат записи или конкурентное изменение"""

    code = "CONFLICT"
    http_status = 409


class PreconditionError(BillingError):
    """Операция невозможна в текущем состоянии (например, Addon без подписки)"""

    code = "PRECONDITION_FAILED"
    http_status = 422


class StorageError(BillingError):
    """Ошибка базы данных"""

    code = "STORAGE_ERROR"
    http_status = 503
    retryable = True
    retry_after = RETRY_AFTER_SECONDS


class ReconciliationGap(BillingError):
    """Шлюз подтвердил оплату, но покупку не удалось сопоставить"""

    code = "RECONCILIATION_GAP"

    def __init__(self, payment_intent_id: str, gateway_status: str = "SUCCEEDED"):
        super().__init__(
            f"Платёж {payment_intent_id} успешен в шлюзе, но метаданные покупки не найдены",
            details={"payment_intent_id": payment_intent_id, "gateway_status": gateway_status},
        )
        self.payment_intent_id = payment_intent_id
        self.gateway_status = gateway_status


def error_envelope(
    error: BaseException,
    request_id: Optional[str] = None,
    debug: bool = False,
) -> tuple[int, dict[str, Any]]:
    """Возвращает (http_status, тело ответа) для любой ошибки"""
    if isinstance(error, BillingError):
        status = error.http_status
        body: dict[str, Any] = {
            "success": False,
            "code": error.code,
            "message": error.message,
            "retryable": error.retryable,
        }
        retry_after = error.retry_after if error.retryable else None
    else:
        # Неизвестная ошибка: как в исходном классификаторе, считаем повторяемой
        status = 500
        body = {
            "success": False,
            "code": "INTERNAL_ERROR",
            "message": "Внутренняя ошибка сервиса. Попробуйте позже.",
            "retryable": True,
        }
        retry_after = RETRY_AFTER_SECONDS

    if retry_after is not None:
        body["retryAfter"] = retry_after
    if request_id:
        body["requestId"] = request_id
    if debug:
        body["debug"] = {
            "originalError": str(error),
            "details": getattr(error, "details", None),
        }
    return status, body
