from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional, TypedDict

from pydantic import BaseModel, ConfigDict, Field, computed_field

from billing.constants import DEFAULT_PLAN_PERIOD_SECONDS


class PlanDefinition(BaseModel):
    """Тариф из каталога subscription_plans (только чтение)"""

    model_config = ConfigDict(frozen=True)

    name: str
    coins: int = Field(ge=0)
    period_seconds: int = Field(default=DEFAULT_PLAN_PERIOD_SECONDS, gt=0)
    price: Optional[Decimal] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PlanDefinition":
        period = row.get("plan_period")
        return cls(
            name=row["plan_name"],
            coins=row["coins"] or 0,
            period_seconds=period if isinstance(period, int) and period > 0 else DEFAULT_PLAN_PERIOD_SECONDS,
            price=row.get("price"),
        )


class SubscriptionState(BaseModel):
    """Состояние подписки пользователя (строка таблицы users)"""

    model_config = ConfigDict(frozen=True)

    uid: str
    active: bool = False
    plan: Optional[str] = None
    coin_balance: int = Field(default=0, ge=0)
    plan_expiry_at: Optional[datetime] = None
    coins_expiry_at: Optional[datetime] = None
    next_coin_refresh_at: Optional[datetime] = None
    purchased_at: Optional[datetime] = None
    last_coin_addition_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SubscriptionState":
        return cls(
            uid=row["uid"],
            active=bool(row["subscription_active"]),
            plan=row["user_plan"],
            coin_balance=row["user_coins"] or 0,
            plan_expiry_at=row["plan_expiry_date"],
            coins_expiry_at=row["coins_expiry"],
            next_coin_refresh_at=row["next_coin_refresh"],
            purchased_at=row["plan_purchase_date"],
            last_coin_addition_at=row.get("last_coin_addition"),
        )


class SubscriptionSummary(TypedDict):
    """Сводка по подписке для мониторинга"""
    uid: str
    plan: Optional[str]
    active: bool
    coin_balance: int
    status: str  # ACTIVE, EXPIRED, NEEDS_COIN_REFRESH, COINS_EXPIRED, INACTIVE
    days_until_expiry: Optional[int]
    plan_expiry_at: Optional[datetime]
    next_coin_refresh_at: Optional[datetime]


class PassResult(BaseModel):
    """Результат одного прохода пересчёта подписок"""
    success: bool
    affected: int = 0
    error: Optional[str] = None


class ExpirationReport(BaseModel):
    """Отчёт о запуске пересчёта подписок"""
    started_at: datetime
    duration_ms: int = 0
    passes: dict[str, PassResult] = Field(default_factory=dict)

    @computed_field
    @property
    def total_affected(self) -> int:
        return sum(result.affected for result in self.passes.values())

    @computed_field
    @property
    def success(self) -> bool:
        return all(result.success for result in self.passes.values())

    @property
    def failed_passes(self) -> list[str]:
        return [name for name, result in self.passes.items() if not result.success]
