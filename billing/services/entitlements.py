"""
Машина состояний подписки.

Чистые функции без обращения к часам и базе: текущее время передаётся
явно, результат зависит только от аргументов.
"""
import math
from datetime import datetime, timedelta
from typing import Optional

from billing.constants import COIN_PERIOD, PLAN_ADDON, PLAN_YEARLY, SHORT_PLANS, YEARLY_PERIOD
from billing.errors import PreconditionError
from billing.models.subscription import PlanDefinition, SubscriptionState, SubscriptionSummary


def ensure_purchase_allowed(current: Optional[SubscriptionState], plan: str) -> None:
    """Addon можно купить только поверх активной подписки со сроком"""
    if plan != PLAN_ADDON:
        return
    if current is None or not current.active or current.plan_expiry_at is None:
        raise PreconditionError(
            "Пакет Addon доступен только при активной подписке",
            code="ACTIVE_SUBSCRIPTION_REQUIRED",
        )


def apply_purchase(
    current: SubscriptionState,
    plan: str,
    definition: PlanDefinition,
    now: datetime,
) -> SubscriptionState:
    """
    Вычисляет состояние подписки после успешной оплаты тарифа

    Args:
        current: Текущее состояние пользователя
        plan: Название купленного тарифа
        definition: Тариф из каталога
        now: Момент применения покупки

    Returns:
        Новое состояние (current не изменяется)

    Raises:
        PreconditionError: Addon без активной подписки
    """
    if plan == PLAN_ADDON:
        ensure_purchase_allowed(current, plan)
        # Монеты Addon сгорают вместе с текущими монетами тарифа
        coins_expiry = current.coins_expiry_at or now + COIN_PERIOD
        return current.model_copy(update={
            "coin_balance": current.coin_balance + definition.coins,
            "coins_expiry_at": coins_expiry,
            "last_coin_addition_at": now,
        })

    if plan == PLAN_YEARLY:
        plan_expiry = now + YEARLY_PERIOD
        coins_expiry = now + COIN_PERIOD
        next_refresh: Optional[datetime] = coins_expiry
    elif plan in SHORT_PLANS:
        plan_expiry = coins_expiry = now + COIN_PERIOD
        next_refresh = None
    else:
        plan_expiry = coins_expiry = now + timedelta(seconds=definition.period_seconds)
        next_refresh = None

    return SubscriptionState(
        uid=current.uid,
        active=True,
        plan=plan,
        coin_balance=definition.coins,
        plan_expiry_at=plan_expiry,
        coins_expiry_at=coins_expiry,
        next_coin_refresh_at=next_refresh,
        purchased_at=now,
        last_coin_addition_at=now,
    )


def summarize(state: SubscriptionState, now: datetime) -> SubscriptionSummary:
    """Сводка для мониторинга: статус и число дней до окончания тарифа"""
    status = "ACTIVE" if state.active else "INACTIVE"
    days_until_expiry = None

    if state.plan_expiry_at is not None:
        days_until_expiry = math.ceil((state.plan_expiry_at - now).total_seconds() / 86400)

        if state.plan_expiry_at <= now:
            status = "EXPIRED"
        elif (
            state.plan == PLAN_YEARLY
            and state.next_coin_refresh_at is not None
            and state.next_coin_refresh_at <= now
        ):
            status = "NEEDS_COIN_REFRESH"
        elif state.coins_expiry_at is not None and state.coins_expiry_at <= now:
            status = "COINS_EXPIRED"

    return {
        "uid": state.uid,
        "plan": state.plan,
        "active": state.active,
        "coin_balance": state.coin_balance,
        "status": status,
        "days_until_expiry": days_until_expiry,
        "plan_expiry_at": state.plan_expiry_at,
        "next_coin_refresh_at": state.next_coin_refresh_at,
    }
