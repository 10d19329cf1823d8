"""Тесты пересчёта подписок по таймеру"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from billing.models.subscription import SubscriptionState
from billing.services.entitlements import apply_purchase
from billing.services.expiration import ExpirationService
from conftest import CATALOG, T0, FakePlanRepository

PLANS = {plan.name: plan for plan in CATALOG}


@pytest.fixture
def expiration_service(subscriptions, plans, clock):
    return ExpirationService(subscriptions, plans, clock=clock)


def purchased(uid: str, plan: str, at=T0) -> SubscriptionState:
    return apply_purchase(SubscriptionState(uid=uid), plan, PLANS[plan], at)


class TestYearlyLifecycle:

    @pytest.mark.asyncio
    async def test_monthly_refresh_then_idempotent(self, expiration_service, subscriptions):
        subscriptions.put(purchased("user-1", "Yearly"))
        subscriptions.put(subscriptions.states["user-1"].model_copy(update={"coin_balance": 12}))
        now = T0 + timedelta(days=30, seconds=1)

        report = await expiration_service.run_expiration_pass(now)

        state = subscriptions.states["user-1"]
        assert report.passes["yearly_coin_refresh"].affected == 1
        assert state.coin_balance == 400
        assert state.next_coin_refresh_at == now + timedelta(days=30)
        assert state.coins_expiry_at == now + timedelta(days=30)
        assert state.last_coin_addition_at == now
        assert state.plan_expiry_at == T0 + timedelta(days=365)

        again = await expiration_service.run_expiration_pass(now)

        assert again.total_affected == 0
        assert subscriptions.states["user-1"] == state

    @pytest.mark.asyncio
    async def test_yearly_expires_after_a_year(self, expiration_service, subscriptions):
        subscriptions.put(purchased("user-1", "Yearly"))

        report = await expiration_service.run_expiration_pass(T0 + timedelta(days=365))

        assert report.passes["yearly_expiry"].affected == 1
        assert report.passes["yearly_coin_refresh"].affected == 0
        assert subscriptions.states["user-1"] == SubscriptionState(uid="user-1")


class TestShortPlans:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("plan", ["Monthly", "Tester"])
    async def test_expired_plan_is_cleared(self, expiration_service, subscriptions, plan):
        subscriptions.put(purchased("user-1", plan))

        report = await expiration_service.run_expiration_pass(T0 + timedelta(days=30))

        assert report.passes["monthly_tester_expiry"].affected == 1
        state = subscriptions.states["user-1"]
        assert state.active is False
        assert state.plan is None
        assert state.coin_balance == 0

    @pytest.mark.asyncio
    async def test_plan_still_valid_is_untouched(self, expiration_service, subscriptions):
        subscriptions.put(purchased("user-1", "Monthly"))

        report = await expiration_service.run_expiration_pass(T0 + timedelta(days=29))

        assert report.total_affected == 0
        assert subscriptions.states["user-1"].active is True

    @pytest.mark.asyncio
    async def test_other_plans_are_not_expired_by_engine(self, expiration_service, subscriptions):
        subscriptions.put(purchased("user-1", "Weekly"))

        report = await expiration_service.run_expiration_pass(T0 + timedelta(days=8))

        assert report.total_affected == 0


class TestAddonCleanup:

    @pytest.mark.asyncio
    async def test_leftover_addon_coins_are_cleared(self, expiration_service, subscriptions):
        subscriptions.put(SubscriptionState(
            uid="user-1", coin_balance=150, coins_expiry_at=T0 - timedelta(minutes=1),
        ))

        report = await expiration_service.run_expiration_pass(T0)

        assert report.passes["addon_cleanup"].affected == 1
        assert subscriptions.states["user-1"].coin_balance == 0

        again = await expiration_service.run_expiration_pass(T0)
        assert again.passes["addon_cleanup"].affected == 0


class TestReport:

    @pytest.mark.asyncio
    async def test_failed_pass_does_not_block_others(self, expiration_service, subscriptions):
        subscriptions.put(purchased("user-2", "Yearly"))
        subscriptions.expire_short_plans = AsyncMock(side_effect=OSError("db down"))

        report = await expiration_service.run_expiration_pass(T0 + timedelta(days=31))

        assert report.passes["monthly_tester_expiry"].success is False
        assert "db down" in report.passes["monthly_tester_expiry"].error
        assert report.passes["yearly_coin_refresh"].affected == 1
        assert report.success is False
        assert report.failed_passes == ["monthly_tester_expiry"]

    @pytest.mark.asyncio
    async def test_missing_yearly_plan_fails_refresh_pass(self, subscriptions, clock):
        service = ExpirationService(subscriptions, FakePlanRepository([]), clock=clock)

        report = await service.run_expiration_pass()

        assert report.passes["yearly_coin_refresh"].success is False
        assert report.passes["yearly_expiry"].success is True

    @pytest.mark.asyncio
    async def test_report_uses_clock_and_dumps_totals(self, expiration_service):
        report = await expiration_service.run_expiration_pass()

        dumped = report.model_dump()
        assert report.started_at == T0
        assert dumped["total_affected"] == 0
        assert dumped["success"] is True
        assert set(dumped["passes"]) == {
            "monthly_tester_expiry", "yearly_coin_refresh", "yearly_expiry", "addon_cleanup",
        }


class TestMonitoring:

    @pytest.mark.asyncio
    async def test_monitoring_summaries(self, expiration_service, subscriptions):
        subscriptions.put(purchased("user-2", "Monthly", at=T0 - timedelta(days=31)))
        subscriptions.put(purchased("user-3", "Yearly"))

        summaries = await expiration_service.get_monitoring()

        by_uid = {s["uid"]: s["status"] for s in summaries}
        assert by_uid == {"user-2": "EXPIRED", "user-3": "ACTIVE"}
