"""Тесты машины состояний подписки"""
from datetime import timedelta

import pytest

from billing.errors import PreconditionError
from billing.models.subscription import SubscriptionState
from billing.services.entitlements import apply_purchase, ensure_purchase_allowed, summarize
from conftest import CATALOG, T0

PLANS = {plan.name: plan for plan in CATALOG}


def active_state(**overrides) -> SubscriptionState:
    data = dict(
        uid="user-1",
        active=True,
        plan="Monthly",
        coin_balance=120,
        plan_expiry_at=T0 + timedelta(days=10),
        coins_expiry_at=T0 + timedelta(days=10),
        purchased_at=T0 - timedelta(days=20),
    )
    data.update(overrides)
    return SubscriptionState(**data)


class TestApplyPurchase:

    def test_yearly(self):
        state = apply_purchase(SubscriptionState(uid="user-1"), "Yearly", PLANS["Yearly"], T0)

        assert state.active is True
        assert state.plan == "Yearly"
        assert state.coin_balance == 400
        assert state.plan_expiry_at == T0 + timedelta(days=365)
        assert state.coins_expiry_at == T0 + timedelta(days=30)
        assert state.next_coin_refresh_at == T0 + timedelta(days=30)
        assert state.purchased_at == T0
        assert state.last_coin_addition_at == T0

    @pytest.mark.parametrize("plan", ["Monthly", "Tester"])
    def test_short_plans(self, plan):
        state = apply_purchase(active_state(plan="Yearly", next_coin_refresh_at=T0), plan, PLANS[plan], T0)

        assert state.plan == plan
        assert state.plan_expiry_at == T0 + timedelta(days=30)
        assert state.coins_expiry_at == T0 + timedelta(days=30)
        assert state.next_coin_refresh_at is None

    def test_balance_is_replaced_not_added(self):
        state = apply_purchase(active_state(coin_balance=999), "Monthly", PLANS["Monthly"], T0)

        assert state.coin_balance == 300

    def test_other_plan_uses_catalog_period(self):
        state = apply_purchase(SubscriptionState(uid="user-1"), "Weekly", PLANS["Weekly"], T0)

        assert state.plan_expiry_at == T0 + timedelta(days=7)
        assert state.coins_expiry_at == T0 + timedelta(days=7)
        assert state.next_coin_refresh_at is None
        assert state.coin_balance == 50

    def test_addon_adds_coins_and_keeps_plan(self):
        current = active_state()

        state = apply_purchase(current, "Addon", PLANS["Addon"], T0)

        assert state.coin_balance == 120 + 150
        assert state.plan == "Monthly"
        assert state.plan_expiry_at == current.plan_expiry_at
        assert state.coins_expiry_at == current.coins_expiry_at
        assert state.purchased_at == current.purchased_at
        assert state.next_coin_refresh_at == current.next_coin_refresh_at

    def test_addon_without_coins_expiry_falls_back_to_coin_period(self):
        state = apply_purchase(active_state(coins_expiry_at=None), "Addon", PLANS["Addon"], T0)

        assert state.coins_expiry_at == T0 + timedelta(days=30)

    def test_addon_without_active_subscription(self):
        current = SubscriptionState(uid="user-1", coin_balance=5)

        with pytest.raises(PreconditionError):
            apply_purchase(current, "Addon", PLANS["Addon"], T0)

        assert current.coin_balance == 5

    def test_addon_requires_plan_expiry(self):
        with pytest.raises(PreconditionError):
            apply_purchase(active_state(plan_expiry_at=None), "Addon", PLANS["Addon"], T0)

    def test_deterministic(self):
        current = active_state()

        first = apply_purchase(current, "Yearly", PLANS["Yearly"], T0)
        second = apply_purchase(current, "Yearly", PLANS["Yearly"], T0)

        assert first == second


class TestEnsurePurchaseAllowed:

    def test_non_addon_always_allowed(self):
        ensure_purchase_allowed(None, "Monthly")

    def test_addon_for_unknown_user(self):
        with pytest.raises(PreconditionError) as exc_info:
            ensure_purchase_allowed(None, "Addon")
        assert exc_info.value.code == "ACTIVE_SUBSCRIPTION_REQUIRED"

    def test_addon_with_active_plan(self):
        ensure_purchase_allowed(active_state(), "Addon")


class TestSummarize:

    def test_active(self):
        summary = summarize(active_state(), T0)

        assert summary["status"] == "ACTIVE"
        assert summary["days_until_expiry"] == 10

    def test_expired(self):
        summary = summarize(active_state(plan_expiry_at=T0 - timedelta(hours=1)), T0)

        assert summary["status"] == "EXPIRED"
        assert summary["days_until_expiry"] == 0

    def test_yearly_needs_refresh(self):
        state = active_state(
            plan="Yearly",
            plan_expiry_at=T0 + timedelta(days=200),
            next_coin_refresh_at=T0 - timedelta(minutes=1),
        )

        assert summarize(state, T0)["status"] == "NEEDS_COIN_REFRESH"

    def test_coins_expired(self):
        state = active_state(coins_expiry_at=T0 - timedelta(days=1))

        assert summarize(state, T0)["status"] == "COINS_EXPIRED"

    def test_inactive(self):
        summary = summarize(SubscriptionState(uid="user-1"), T0)

        assert summary["status"] == "INACTIVE"
        assert summary["days_until_expiry"] is None
