"""Очистка данных перед логированием: данные карт не должны попадать в логи"""
from typing import Any

SENSITIVE_FIELDS = (
    "card_number", "cardnumber", "card", "pan",
    "cvv", "cvc", "security_code", "expiry_date",
    "expiry_month", "expiry_year", "cardholder_name",
)


def sanitize(data: Any) -> Any:
    """Рекурсивно скрывает чувствительные поля; client_secret обрезается до 8 символов"""
    if isinstance(data, list):
        return [sanitize(item) for item in data]
    if not isinstance(data, dict):
        return data

    result = {}
    for key, value in data.items():
        lowered = str(key).lower()
        if lowered == "client_secret":
            result[key] = value[:8] + "..." if isinstance(value, str) else "[REDACTED]"
        elif any(field in lowered for field in SENSITIVE_FIELDS):
            result[key] = "[REDACTED]"
        else:
            result[key] = sanitize(value)
    return result
