"""
Общие фикстуры тестов: фейковый платёжный шлюз на aiohttp и репозитории в памяти.

Фейковые репозитории соблюдают те же условные контракты записи, что и SQL:
переход статуса метаданных, условное сохранение состояния подписки и
массовые проходы пересчёта с условиями WHERE.
"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from unittest.mock import MagicMock, AsyncMock

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from billing.clients.payment_gateway import PaymentGatewayClient
from billing.constants import PLAN_YEARLY, SHORT_PLANS
from billing.models.payment import MetadataStatus
from billing.models.subscription import PlanDefinition, SubscriptionState
from billing.services.payment_metadata import PaymentMetadataService
from billing.services.purchases import PurchaseService

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

CLIENT_ID = "client-test"
API_KEY = "key-test"


class FakeClock:
    """Управляемые часы: вызов возвращает текущее значение"""

    def __init__(self, now: Any):
        self.now = now

    def __call__(self) -> Any:
        return self.now

    def advance(self, delta: Any) -> None:
        self.now = self.now + delta


# ----------------------------------------------------------------------
# Фейковый платёжный шлюз
# ----------------------------------------------------------------------

class FakeGateway:
    """In-process шлюз с эндпоинтами логина и платёжных намерений"""

    def __init__(self):
        self.login_count = 0
        self.login_delay = 0.0
        self.login_status: Optional[int] = None
        self.login_without_token = False
        self.tokens: list[str] = []
        self.rejected_tokens: set[str] = set()
        self.always_unauthorized = False
        self.request_delay = 0.0
        self.intents: dict[str, dict[str, Any]] = {}
        self.requests: list[tuple[str, str]] = []
        self.error_status: Optional[int] = None

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/v1/authentication/login", self.login)
        app.router.add_post("/api/v1/pa/payment_intents/create", self.create)
        app.router.add_get("/api/v1/pa/payment_intents/{id}", self.status)
        app.router.add_post("/api/v1/pa/payment_intents/{id}/confirm", self.confirm)
        app.router.add_post("/api/v1/pa/payment_intents/{id}/cancel", self.cancel)
        app.router.add_get("/api/v1/pa/config/payment_method_types", self.methods)
        return app

    async def login(self, request: web.Request) -> web.Response:
        self.login_count += 1
        if self.login_delay:
            await asyncio.sleep(self.login_delay)
        if self.login_status:
            return web.json_response({"code": "login_error", "message": "login rejected"}, status=self.login_status)
        if request.headers.get("x-client-id") != CLIENT_ID or request.headers.get("x-api-key") != API_KEY:
            return web.json_response({"code": "unauthorized", "message": "bad credentials"}, status=401)
        if self.login_without_token:
            return web.json_response({"expires_at": "2025-01-01T13:00:00Z"}, status=201)
        token = f"token-{self.login_count}"
        self.tokens.append(token)
        return web.json_response({"token": token, "expires_at": "2025-01-01T13:00:00Z"}, status=201)

    def _authorized(self, request: web.Request) -> bool:
        header = request.headers.get("Authorization", "")
        token = header[len("Bearer "):] if header.startswith("Bearer ") else ""
        if self.always_unauthorized or token in self.rejected_tokens:
            return False
        return token in self.tokens

    async def _guard(self, request: web.Request) -> Optional[web.Response]:
        self.requests.append((request.method, request.path))
        if self.request_delay:
            await asyncio.sleep(self.request_delay)
        if not self._authorized(request):
            return web.json_response({"code": "unauthorized", "message": "token expired"}, status=401)
        if self.error_status:
            return web.json_response(
                {"code": "upstream_error", "message": "gateway failure"},
                status=self.error_status,
            )
        return None

    async def create(self, request: web.Request) -> web.Response:
        denied = await self._guard(request)
        if denied:
            return denied
        body = await request.json()
        intent_id = f"int_{len(self.intents) + 1}"
        intent = {
            "id": intent_id,
            "request_id": body["request_id"],
            "amount": body["amount"],
            "currency": body["currency"],
            "merchant_order_id": body["merchant_order_id"],
            "metadata": body.get("metadata"),
            "status": "REQUIRES_PAYMENT_METHOD",
            "client_secret": "cs_1234567890abcdef",
            "created_at": "2025-01-01T12:00:00Z",
            "updated_at": "2025-01-01T12:00:00Z",
        }
        self.intents[intent_id] = intent
        return web.json_response(intent, status=201)

    def _intent(self, request: web.Request) -> Optional[dict[str, Any]]:
        return self.intents.get(request.match_info["id"])

    async def status(self, request: web.Request) -> web.Response:
        denied = await self._guard(request)
        if denied:
            return denied
        intent = self._intent(request)
        if intent is None:
            return web.json_response({"code": "resource_not_found", "message": "not found"}, status=404)
        return web.json_response(intent)

    async def confirm(self, request: web.Request) -> web.Response:
        denied = await self._guard(request)
        if denied:
            return denied
        intent = self._intent(request)
        if intent is None:
            return web.json_response({"code": "resource_not_found", "message": "not found"}, status=404)
        intent["status"] = "SUCCEEDED"
        return web.json_response(intent)

    async def cancel(self, request: web.Request) -> web.Response:
        denied = await self._guard(request)
        if denied:
            return denied
        intent = self._intent(request)
        if intent is None:
            return web.json_response({"code": "resource_not_found", "message": "not found"}, status=404)
        body = await request.json()
        intent["status"] = "CANCELLED"
        intent["cancellation_reason"] = body.get("cancellation_reason")
        return web.json_response(intent)

    async def methods(self, request: web.Request) -> web.Response:
        denied = await self._guard(request)
        if denied:
            return denied
        return web.json_response({
            "items": [{"name": "card"}, {"name": "alipayhk"}],
            "query": dict(request.query),
        })


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def gateway_server(fake_gateway):
    server = TestServer(fake_gateway.app())
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
def gateway_url(gateway_server):
    return str(gateway_server.make_url("/api/v1"))


@pytest.fixture
def monotonic_clock():
    return FakeClock(1000.0)


@pytest_asyncio.fixture
async def gateway_client(gateway_url, monotonic_clock):
    client = PaymentGatewayClient(
        client_id=CLIENT_ID,
        api_key=API_KEY,
        base_url=gateway_url,
        timeout=5,
        clock=monotonic_clock,
    )
    yield client
    await client.close()


# ----------------------------------------------------------------------
# Репозитории в памяти
# ----------------------------------------------------------------------

class FakeMetadataRepository:
    def __init__(self, orders: Optional["FakeOrderRepository"] = None):
        self.records: dict[str, dict[str, Any]] = {}
        self.orders = orders or FakeOrderRepository()

    async def insert(self, payment_intent_id, uid, plan, total_price, order_id,
                     payment_method, request_id, metadata, created_at, expires_at) -> bool:
        await asyncio.sleep(0)
        if payment_intent_id in self.records:
            return False
        self.records[payment_intent_id] = {
            "payment_intent_id": payment_intent_id,
            "uid": uid,
            "plan": plan,
            "total_price": total_price,
            "order_id": order_id,
            "payment_method": payment_method,
            "request_id": request_id,
            "status": MetadataStatus.PENDING.value,
            "metadata": metadata,
            "error_message": None,
            "error_code": None,
            "created_at": created_at,
            "updated_at": None,
            "expires_at": expires_at,
        }
        return True

    async def get(self, payment_intent_id):
        await asyncio.sleep(0)
        record = self.records.get(payment_intent_id)
        return dict(record) if record else None

    async def transition(self, payment_intent_id, to_status, from_statuses, now,
                         error_message=None, error_code=None) -> bool:
        await asyncio.sleep(0)
        record = self.records.get(payment_intent_id)
        if record is None or record["status"] not in [s.value for s in from_statuses]:
            return False
        record["status"] = to_status.value
        record["updated_at"] = now
        if error_message is not None:
            record["error_message"] = error_message
        if error_code is not None:
            record["error_code"] = error_code
        return True

    async def close_with_order(self, payment_intent_id, to_status, order, now) -> bool:
        await asyncio.sleep(0)
        record = self.records.get(payment_intent_id)
        if record is None or record["status"] != MetadataStatus.PENDING.value:
            return False
        # журнал пишется первым: при ошибке запись остаётся pending, как после отката транзакции
        await self.orders.insert(order)
        record["status"] = to_status.value
        record["updated_at"] = now
        record["error_message"] = order["error_message"]
        record["error_code"] = order["error_code"]
        return True

    async def expire_stale(self, now) -> int:
        count = 0
        for record in self.records.values():
            if record["status"] == MetadataStatus.PENDING.value and record["expires_at"] < now:
                record["status"] = MetadataStatus.EXPIRED.value
                record["updated_at"] = now
                count += 1
        return count

    async def list_for_user(self, uid, limit=10):
        records = [dict(r) for r in self.records.values() if r["uid"] == uid]
        records.sort(key=lambda r: r["created_at"], reverse=True)
        return records[:limit]


class FakeOrderRepository:
    def __init__(self):
        self.orders: list[dict[str, Any]] = []

    async def insert(self, order) -> int:
        self.orders.append(dict(order))
        return len(self.orders)


COMPARED_FIELDS = (
    "active", "plan", "coin_balance", "plan_expiry_at", "coins_expiry_at", "next_coin_refresh_at",
)


class FakeSubscriptionRepository:
    def __init__(self, orders: FakeOrderRepository):
        self.states: dict[str, SubscriptionState] = {}
        self.orders = orders
        self.conflicts = 0  # сколько раз подряд save_purchase сообщит о конкурентном изменении
        self.save_attempts = 0

    def put(self, state: SubscriptionState) -> None:
        self.states[state.uid] = state

    async def get_state(self, uid):
        await asyncio.sleep(0)
        return self.states.get(uid)

    async def save_purchase(self, expected, new_state, order) -> bool:
        self.save_attempts += 1
        if self.conflicts:
            self.conflicts -= 1
            return False
        current = self.states.get(expected.uid)
        if current is None or any(getattr(current, f) != getattr(expected, f) for f in COMPARED_FIELDS):
            return False
        self.states[new_state.uid] = new_state
        await self.orders.insert(order)
        return True

    def _update(self, predicate, change) -> int:
        count = 0
        for uid, state in list(self.states.items()):
            if predicate(state):
                self.states[uid] = change(state)
                count += 1
        return count

    async def expire_short_plans(self, now) -> int:
        return self._update(
            lambda s: s.plan in SHORT_PLANS and s.active and s.plan_expiry_at is not None and s.plan_expiry_at <= now,
            lambda s: SubscriptionState(uid=s.uid),
        )

    async def refresh_yearly_coins(self, now, coins, next_refresh) -> int:
        return self._update(
            lambda s: (
                s.plan == PLAN_YEARLY and s.active
                and s.next_coin_refresh_at is not None and s.next_coin_refresh_at <= now
                and s.plan_expiry_at is not None and s.plan_expiry_at > now
            ),
            lambda s: s.model_copy(update={
                "coin_balance": coins,
                "coins_expiry_at": next_refresh,
                "next_coin_refresh_at": next_refresh,
                "last_coin_addition_at": now,
            }),
        )

    async def expire_yearly_plans(self, now) -> int:
        return self._update(
            lambda s: s.plan == PLAN_YEARLY and s.active and s.plan_expiry_at is not None and s.plan_expiry_at <= now,
            lambda s: SubscriptionState(uid=s.uid),
        )

    async def clear_expired_addon_coins(self, now) -> int:
        return self._update(
            lambda s: not s.active and s.coins_expiry_at is not None and s.coins_expiry_at <= now and s.coin_balance != 0,
            lambda s: s.model_copy(update={"coin_balance": 0}),
        )

    async def get_monitored(self):
        return [s for s in self.states.values() if s.active or s.plan_expiry_at is not None]


class FakePlanRepository:
    def __init__(self, plans: list[PlanDefinition]):
        self.plans = {plan.name: plan for plan in plans}

    async def get(self, plan_name):
        for name, plan in self.plans.items():
            if name.lower() == str(plan_name).lower():
                return plan
        return None


class FakeReconciliationRepository:
    def __init__(self):
        self.gaps: dict[str, dict[str, Any]] = {}

    async def record(self, gap) -> bool:
        if gap["payment_intent_id"] in self.gaps:
            return False
        self.gaps[gap["payment_intent_id"]] = {**gap, "resolved_at": None, "resolution_note": None}
        return True

    async def list_open(self, limit=20):
        return [g for g in self.gaps.values() if g["resolved_at"] is None][:limit]

    async def resolve(self, payment_intent_id, note, now) -> bool:
        gap = self.gaps.get(payment_intent_id)
        if gap is None or gap["resolved_at"] is not None:
            return False
        gap["resolved_at"] = now
        gap["resolution_note"] = note
        return True


CATALOG = [
    PlanDefinition(name="Monthly", coins=300, period_seconds=30 * 86400, price=Decimal("9.99")),
    PlanDefinition(name="Yearly", coins=400, period_seconds=365 * 86400, price=Decimal("99.00")),
    PlanDefinition(name="Tester", coins=20, period_seconds=30 * 86400, price=Decimal("1.00")),
    PlanDefinition(name="Addon", coins=150, period_seconds=30 * 86400, price=Decimal("4.99")),
    PlanDefinition(name="Weekly", coins=50, period_seconds=7 * 86400, price=Decimal("2.99")),
]


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def plans():
    return FakePlanRepository(CATALOG)


@pytest.fixture
def orders():
    return FakeOrderRepository()


@pytest.fixture
def subscriptions(orders):
    repo = FakeSubscriptionRepository(orders)
    repo.put(SubscriptionState(uid="user-1"))
    return repo


@pytest.fixture
def metadata_repository(orders):
    return FakeMetadataRepository(orders)


@pytest.fixture
def metadata_service(metadata_repository, clock):
    return PaymentMetadataService(metadata_repository, clock=clock)


@pytest.fixture
def reconciliation():
    return FakeReconciliationRepository()


@pytest.fixture
def notifications():
    service = MagicMock()
    service.notify_admins_reconciliation_gap = AsyncMock(return_value=1)
    service.notify_admins_expiration_failure = AsyncMock(return_value=1)
    return service


@pytest.fixture
def purchase_service(metadata_service, plans, subscriptions, orders, reconciliation, notifications, clock):
    return PurchaseService(
        metadata=metadata_service,
        plans=plans,
        subscriptions=subscriptions,
        orders=orders,
        reconciliation=reconciliation,
        notifications=notifications,
        clock=clock,
    )


def make_pool(conn):
    """Мок пула asyncpg: pool.acquire() отдаёт conn как async context manager"""
    pool = MagicMock()
    acquire = MagicMock()
    acquire.__aenter__ = AsyncMock(return_value=conn)
    acquire.__aexit__ = AsyncMock(return_value=False)
    pool.acquire.return_value = acquire

    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return pool


async def store_pending(service: PaymentMetadataService, payment_intent_id: str = "int_1",
                        uid: str = "user-1", plan: str = "Yearly", price: str = "99.00"):
    """Создаёт pending-запись метаданных"""
    return await service.store(payment_intent_id, {
        "uid": uid,
        "plan": plan,
        "price": price,
        "orderId": f"order-{payment_intent_id}",
        "paymentMethod": "airwallex",
    })

