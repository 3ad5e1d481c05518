"""
Billing Models
==============

SQLModel tables for the reference usage ledger:
- UserAccount: one row per user — tier/status (written by the billing
  webhook), plan limits, and this month's usage/overage counters.
- OverageCharge: append-only record of each billed overage optimization.
- UsageEvent: one row per counted optimization, keyed by the caller's
  request_id so a retried POST replays the first decision instead of
  counting again.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from repartilo.models.subscription import (
    PLAN_CATALOGUE,
    OverageTerms,
    SubscriptionSnapshot,
    SubscriptionStatus,
    Tier,
)


def current_usage_month(now: Optional[datetime] = None) -> str:
    """Usage counters roll over on calendar month boundaries (UTC)."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m")


class UserAccount(SQLModel, table=True):
    """Subscription + usage counters for a user."""

    __tablename__ = "user_accounts"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(unique=True, index=True, max_length=128)
    email: Optional[str] = Field(default=None, nullable=True, max_length=255)

    tier: str = Field(default=Tier.FREE.value, max_length=32)
    status: str = Field(default=SubscriptionStatus.ACTIVE.value, max_length=32)
    current_period_end: Optional[datetime] = Field(default=None, nullable=True)
    billing_customer_id: Optional[str] = Field(default=None, nullable=True, max_length=255)
    billing_subscription_id: Optional[str] = Field(default=None, nullable=True, max_length=255)

    monthly_route_limit: int = Field(default=0)
    max_vehicles_per_optimization: int = Field(default=0)
    max_stops_per_route: int = Field(default=0)
    enable_overage: bool = Field(default=False)
    overage_price_cents: int = Field(default=0)
    max_overage_optimizations: int = Field(default=0)

    usage_month: str = Field(default_factory=current_usage_month, max_length=7)
    current_monthly_usage: int = Field(default=0)
    overage_count_this_month: int = Field(default=0)
    overage_spent_cents: int = Field(default=0)
    total_overage_charges_cents: int = Field(default=0)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def apply_plan(self, tier: Tier) -> None:
        """Copy the catalogue limits for *tier* onto this account."""
        plan = PLAN_CATALOGUE[tier]
        self.tier = tier.value
        self.monthly_route_limit = plan.monthly_route_limit
        self.max_vehicles_per_optimization = plan.max_vehicles_per_optimization
        self.max_stops_per_route = plan.max_stops_per_route
        self.enable_overage = plan.enable_overage
        self.overage_price_cents = plan.overage_price_cents
        self.max_overage_optimizations = plan.max_overage_optimizations

    def roll_usage_month(self, month: str) -> bool:
        """Reset monthly counters if *month* differs from the stored one."""
        if self.usage_month == month:
            return False
        self.usage_month = month
        self.current_monthly_usage = 0
        self.overage_count_this_month = 0
        self.overage_spent_cents = 0
        return True

    def to_snapshot(self) -> SubscriptionSnapshot:
        return SubscriptionSnapshot(
            user_id=self.user_id,
            tier=Tier(self.tier),
            status=SubscriptionStatus(self.status),
            monthly_route_limit=self.monthly_route_limit,
            current_monthly_usage=self.current_monthly_usage,
            max_vehicles_per_optimization=self.max_vehicles_per_optimization,
            max_stops_per_route=self.max_stops_per_route,
            overage=OverageTerms(
                enabled=self.enable_overage,
                price_cents=self.overage_price_cents,
                max_overages=self.max_overage_optimizations,
                overage_count_this_month=self.overage_count_this_month,
                overage_spent_cents=self.overage_spent_cents,
            ),
            current_period_end=self.current_period_end,
            billing_customer_id=self.billing_customer_id,
            billing_subscription_id=self.billing_subscription_id,
        )


class OverageCharge(SQLModel, table=True):
    """Append-only overage charge (one per overage optimization)."""

    __tablename__ = "overage_charges"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=128)
    usage_month: str = Field(index=True, max_length=7)
    amount_cents: int = Field(default=0)
    vehicle_count: int = Field(default=0)
    stop_count: int = Field(default=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class UsageEvent(SQLModel, table=True):
    """Decision recorded for one counted optimization (idempotency key)."""

    __tablename__ = "usage_events"
    __table_args__ = (UniqueConstraint("user_id", "request_id", name="uq_usage_events_user_request"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=128)
    request_id: str = Field(max_length=128)
    usage_month: str = Field(max_length=7)
    outcome: str = Field(max_length=32)
    reason: str = Field(max_length=32)
    current_value: Optional[int] = Field(default=None, nullable=True)
    limit_value: Optional[int] = Field(default=None, nullable=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
