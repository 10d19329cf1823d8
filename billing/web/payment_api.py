"""HTTP API платежей (aiohttp)"""
import json
import logging
from decimal import Decimal
from functools import partial
from typing import Any, Optional

from aiohttp import web
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from billing.errors import BillingError, ValidationError, error_envelope
from billing.services.payments import PaymentService
from billing.utils.ids import generate_request_id

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class CreateIntentRequest(BaseModel):
    uid: str = Field(..., min_length=1)
    plan: str = Field(..., min_length=1)
    amount: Decimal
    currency: str
    merchant_order_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    order: Optional[dict[str, Any]] = None
    descriptor: Optional[str] = None
    return_url: Optional[str] = None
    payment_method_options: Optional[dict[str, Any]] = None


class CancelIntentRequest(BaseModel):
    cancellation_reason: Optional[str] = None


_dumps = partial(json.dumps, default=str, ensure_ascii=False)


def _json(data: dict[str, Any], status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


async def _read_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Тело запроса должно быть JSON", code="INVALID_JSON")
    if not isinstance(body, dict):
        raise ValidationError("Тело запроса должно быть JSON-объектом", code="INVALID_JSON")
    return body


def _parse(model: type[BaseModel], body: dict[str, Any]) -> Any:
    try:
        return model.model_validate(body)
    except PydanticValidationError as e:
        fields = [".".join(str(part) for part in error["loc"]) for error in e.errors()]
        raise ValidationError(
            f"Некорректные поля запроса: {', '.join(fields)}",
            code="MISSING_REQUIRED_FIELDS",
            details={"fields": fields},
        )


@web.middleware
async def request_id_middleware(request: web.Request, handler):
    """Берёт X-Request-ID из запроса или генерирует новый и возвращает его в ответе"""
    request_id = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
    request["request_id"] = request_id
    response = await handler(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Превращает любые ошибки в единый конверт {success: false, code, message, retryable}"""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except BillingError as e:
        level = logging.ERROR if e.http_status >= 500 else logging.WARNING
        logger.log(level, f"{request.method} {request.path}: {e}")
        error = e
    except Exception as e:
        logger.exception(f"Необработанная ошибка {request.method} {request.path}: {e}")
        error = e

    status, body = error_envelope(error, request.get("request_id"), debug=request.app["debug"])
    return _json(body, status=status)


async def handle_create_intent(request: web.Request) -> web.Response:
    """POST /api/payment/create-intent"""
    payload = _parse(CreateIntentRequest, await _read_body(request))
    service: PaymentService = request.app["payment_service"]

    extra = {
        key: value
        for key, value in payload.model_dump(
            include={"order", "descriptor", "return_url", "payment_method_options"}
        ).items()
        if value is not None
    }

    result = await service.create_payment_intent(
        uid=payload.uid,
        plan=payload.plan,
        amount=payload.amount,
        currency=payload.currency,
        merchant_order_id=payload.merchant_order_id,
        metadata=payload.metadata,
        request_id=request["request_id"],
        **extra,
    )
    return _json(result, status=201)


async def handle_status(request: web.Request) -> web.Response:
    """GET /api/payment/status/{payment_intent_id}"""
    service: PaymentService = request.app["payment_service"]
    result = await service.get_payment_status(
        request.match_info["payment_intent_id"],
        request_id=request["request_id"],
    )
    return _json(result)


async def handle_confirm(request: web.Request) -> web.Response:
    """POST /api/payment/confirm/{payment_intent_id}"""
    service: PaymentService = request.app["payment_service"]
    result = await service.confirm_payment_intent(
        request.match_info["payment_intent_id"],
        await _read_body(request),
        request_id=request["request_id"],
    )
    return _json(result)


async def handle_cancel(request: web.Request) -> web.Response:
    """POST /api/payment/cancel/{payment_intent_id}"""
    payload = _parse(CancelIntentRequest, await _read_body(request))
    service: PaymentService = request.app["payment_service"]
    result = await service.cancel_payment_intent(
        request.match_info["payment_intent_id"],
        payload.cancellation_reason,
        request_id=request["request_id"],
    )
    return _json(result)


async def handle_methods(request: web.Request) -> web.Response:
    """GET /api/payment/methods"""
    service: PaymentService = request.app["payment_service"]
    result = await service.list_payment_methods(
        dict(request.query) or None,
        request_id=request["request_id"],
    )
    return _json(result)


async def handle_health(request: web.Request) -> web.Response:
    return _json({"status": "ok"})


def create_payment_app(payment_service: PaymentService, debug: bool = False) -> web.Application:
    """Создает aiohttp приложение платёжного API"""
    app = web.Application(middlewares=[request_id_middleware, error_middleware])
    app["payment_service"] = payment_service
    app["debug"] = debug

    app.router.add_post("/api/payment/create-intent", handle_create_intent)
    app.router.add_get("/api/payment/status/{payment_intent_id}", handle_status)
    app.router.add_post("/api/payment/confirm/{payment_intent_id}", handle_confirm)
    app.router.add_post("/api/payment/cancel/{payment_intent_id}", handle_cancel)
    app.router.add_get("/api/payment/methods", handle_methods)
    app.router.add_get("/health", handle_health)

    return app
