"""Клиент платёжного шлюза (Airwallex-совместимый API)"""
import asyncio
import json
import logging
import time
from decimal import Decimal
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import aiohttp

from billing.constants import (
    CURRENCY_RE,
    DEFAULT_CANCELLATION_REASON,
    DEFAULT_GATEWAY_BASE_URL,
    GATEWAY_TIMEOUT_SECONDS,
    PAYMENT_INTENT_ID_RE,
    TOKEN_TTL_SECONDS,
)
from billing.errors import AuthenticationError, GatewayError, NetworkError, ValidationError
from billing.utils.ids import generate_order_id, generate_request_id
from billing.utils.sanitize import sanitize

logger = logging.getLogger(__name__)

LOGIN_ENDPOINT = "/authentication/login"


class PaymentGatewayClient:
    """
    Клиент платёжного шлюза.

    Токен доступа кешируется на экземпляре клиента. Параллельные вызовы
    authenticate() во время входа ждут один общий запрос логина. На ответ 401
    токен сбрасывается и запрос повторяется ровно один раз.
    """

    def __init__(
        self,
        client_id: Optional[str],
        api_key: Optional[str],
        base_url: str = DEFAULT_GATEWAY_BASE_URL,
        merchant_account_id: Optional[str] = None,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        token_ttl: float = TOKEN_TTL_SECONDS,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.api_key = api_key
        self.merchant_account_id = merchant_account_id
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.token_ttl = token_ttl
        self._clock = clock

        self._session = session
        self._owns_session = session is None

        self._token: Optional[str] = None
        self._token_expiry: float = 0.0
        self._login_task: Optional[asyncio.Future] = None

    async def __aenter__(self) -> "PaymentGatewayClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        """Закрывает HTTP-сессию, если клиент её создал"""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    # ------------------------------------------------------------------
    # Аутентификация
    # ------------------------------------------------------------------

    def _cached_token(self) -> Optional[str]:
        if self._token and self._clock() < self._token_expiry:
            return self._token
        return None

    def invalidate_token(self, token: Optional[str] = None) -> None:
        """Сбрасывает кеш токена (только если в кеше всё ещё отвергнутый токен)"""
        if token is None or token == self._token:
            self._token = None
            self._token_expiry = 0.0

    async def authenticate(self) -> str:
        """Возвращает токен из кеша или выполняет один общий вход в шлюз"""
        token = self._cached_token()
        if token:
            logger.debug("Используем закешированный токен шлюза")
            return token

        if self._login_task is None:
            self._login_task = asyncio.ensure_future(self._login())
            self._login_task.add_done_callback(self._on_login_done)

        # shield: отмена одного ожидающего не отменяет общий вход
        return await asyncio.shield(self._login_task)

    def _on_login_done(self, task: asyncio.Future) -> None:
        if self._login_task is task:
            self._login_task = None
        if not task.cancelled():
            # Помечаем исключение как полученное, даже если все ожидающие отменены
            task.exception()

    async def _login(self) -> str:
        if not self.client_id or not self.api_key:
            raise AuthenticationError(
                "Учётные данные шлюза не настроены: задайте GATEWAY_CLIENT_ID и GATEWAY_API_KEY",
                code="AUTHENTICATION_SETUP_ERROR",
            )

        logger.info("🔐 Аутентификация в платёжном шлюзе")
        headers = {
            "Content-Type": "application/json",
            "x-client-id": self.client_id,
            "x-api-key": self.api_key,
        }
        status, payload, raw = await self._send("POST", LOGIN_ENDPOINT, headers, {})

        if status in (401, 403):
            logger.error(f"❌ Шлюз отклонил учётные данные (HTTP {status}), client_id={self.client_id[:8]}...")
            raise AuthenticationError(
                _message(payload, "Аутентификация в шлюзе не удалась"),
                code="AUTHENTICATION_FAILED",
            )
        if not 200 <= status < 300:
            raise GatewayError(
                _message(payload, "Ошибка аутентификации в шлюзе"),
                status=status,
                code=_code(payload, "AUTHENTICATION_ERROR"),
                raw_body=raw,
            )

        token = payload.get("token") if isinstance(payload, dict) else None
        if not token:
            raise AuthenticationError(
                "Некорректный ответ шлюза на вход: нет токена",
                code="INVALID_AUTH_RESPONSE",
            )

        self._token = token
        self._token_expiry = self._clock() + self.token_ttl
        logger.info(f"✅ Аутентификация успешна, токен кеширован на {int(self.token_ttl // 60)} мин")
        return token

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        endpoint: str,
        headers: dict[str, str],
        body: Optional[dict[str, Any]],
    ) -> tuple[int, Any, str]:
        """Выполняет HTTP-запрос; транспортные ошибки превращаются в NetworkError"""
        url = f"{self.base_url}{endpoint}"
        session = self._get_session()
        try:
            async with session.request(
                method,
                url,
                headers=headers,
                json=body,
                timeout=self.timeout,
            ) as response:
                raw = await response.text()
                return response.status, _parse_json(raw), raw
        except asyncio.TimeoutError as e:
            logger.warning(f"⏱ Таймаут запроса {method} {endpoint}")
            raise NetworkError(
                f"Таймаут запроса к шлюзу: {method} {endpoint}",
                code="NETWORK_TIMEOUT",
            ) from e
        except aiohttp.ClientError as e:
            logger.warning(f"🌐 Сетевая ошибка {method} {endpoint}: {e}")
            raise NetworkError(
                f"Сетевая ошибка при запросе к шлюзу: {e}",
                code="NETWORK_ERROR",
            ) from e

    async def execute(
        self,
        method: str,
        endpoint: str,
        body: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Выполняет аутентифицированный запрос с одним повтором при истёкшем токене"""
        method = method.upper()
        token = await self.authenticate()
        logger.info(f"➡️ {method} {endpoint}")

        status, payload, raw = await self._send(method, endpoint, _auth_headers(token), body)

        if status == 401:
            logger.info(f"🔄 Токен отклонён ({method} {endpoint}), повторный вход")
            self.invalidate_token(token)
            token = await self.authenticate()
            status, payload, raw = await self._send(method, endpoint, _auth_headers(token), body)
            if status == 401:
                self.invalidate_token(token)
                raise AuthenticationError(
                    "Аутентификация не удалась после повторной попытки",
                    code="AUTHENTICATION_RETRY_FAILED",
                )

        if not 200 <= status < 300:
            logger.error(f"❌ Шлюз ответил HTTP {status} на {method} {endpoint}")
            raise GatewayError(
                _message(payload, "Запрос к шлюзу отклонён"),
                status=status,
                code=_code(payload, "API_ERROR"),
                raw_body=raw,
            )

        logger.info(f"✅ {method} {endpoint} -> HTTP {status}")
        return payload if isinstance(payload, dict) else {"data": payload}

    # ------------------------------------------------------------------
    # Операции с платёжными намерениями
    # ------------------------------------------------------------------

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        merchant_order_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        request_id: Optional[str] = None,
        **extra: Any,
    ) -> dict[str, Any]:
        """
        Создаёт платёжное намерение

        Args:
            amount: Сумма (> 0)
            currency: Трёхбуквенный код валюты ISO
            merchant_order_id: ID заказа на нашей стороне (генерируется, если не передан)
            metadata: Произвольные метаданные для шлюза
            request_id: Идемпотентный ID запроса (генерируется, если не передан)

        Returns:
            JSON шлюза: id, status, client_secret и т.д.
        """
        try:
            amount = Decimal(str(amount))
        except ArithmeticError as e:
            raise ValidationError("Сумма должна быть числом", code="INVALID_AMOUNT") from e
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Сумма должна быть больше 0", code="INVALID_AMOUNT")
        if not isinstance(currency, str) or not CURRENCY_RE.match(currency):
            raise ValidationError(
                "Валюта должна быть трёхбуквенным кодом ISO (например, USD, HKD)",
                code="INVALID_CURRENCY",
            )

        body: dict[str, Any] = {
            **extra,
            "request_id": request_id or generate_request_id(),
            "amount": str(amount),
            "currency": currency,
            "merchant_order_id": merchant_order_id or generate_order_id(),
        }
        body.setdefault("order", {"type": "payment_intent"})
        if metadata:
            body["metadata"] = metadata
        if self.merchant_account_id:
            body["merchant_account_id"] = self.merchant_account_id

        logger.info(f"💳 Создание платёжного намерения: {sanitize({'amount': body['amount'], 'currency': currency, 'merchant_order_id': body['merchant_order_id']})}")
        response = await self.execute("POST", "/pa/payment_intents/create", body)
        logger.info(f"✅ Платёжное намерение создано: id={response.get('id')}, status={response.get('status')}")
        return response

    async def get_payment_intent_status(self, payment_intent_id: str) -> dict[str, Any]:
        """Получает платёжное намерение и его статус"""
        validate_payment_intent_id(payment_intent_id)
        return await self.execute("GET", f"/pa/payment_intents/{payment_intent_id}")

    async def confirm_payment_intent(
        self,
        payment_intent_id: str,
        confirmation_data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Подтверждает платёжное намерение"""
        validate_payment_intent_id(payment_intent_id)
        return await self.execute(
            "POST",
            f"/pa/payment_intents/{payment_intent_id}/confirm",
            confirmation_data or {},
        )

    async def cancel_payment_intent(
        self,
        payment_intent_id: str,
        reason: Optional[str] = None,
    ) -> dict[str, Any]:
        """Отменяет платёжное намерение"""
        validate_payment_intent_id(payment_intent_id)
        return await self.execute(
            "POST",
            f"/pa/payment_intents/{payment_intent_id}/cancel",
            {"cancellation_reason": reason or DEFAULT_CANCELLATION_REASON},
        )

    async def list_payment_methods(self, params: Optional[dict[str, str]] = None) -> dict[str, Any]:
        """Список доступных способов оплаты"""
        endpoint = "/pa/config/payment_method_types"
        if params:
            endpoint = f"{endpoint}?{urlencode(params)}"
        return await self.execute("GET", endpoint)


def validate_payment_intent_id(payment_intent_id: Optional[str]) -> str:
    """Проверяет формат ID платёжного намерения"""
    if not payment_intent_id:
        raise ValidationError("Не указан ID платёжного намерения", code="MISSING_PAYMENT_INTENT_ID")
    if not PAYMENT_INTENT_ID_RE.match(payment_intent_id):
        raise ValidationError("Некорректный формат ID платёжного намерения", code="INVALID_PAYMENT_INTENT_ID")
    return payment_intent_id


def _auth_headers(token: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }


def _parse_json(raw: str) -> Any:
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        return {}


def _message(payload: Any, default: str) -> str:
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return default


def _code(payload: Any, default: str) -> str:
    if isinstance(payload, dict) and payload.get("code"):
        return str(payload["code"])
    return default
