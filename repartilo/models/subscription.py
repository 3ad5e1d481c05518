"""
Subscription Models
===================

Immutable view of a user's billing state as served by GET /api/user/me:
- Tier / SubscriptionStatus: written only by the external billing system
- OverageTerms: pay-per-use allowance beyond the included monthly quota
- SubscriptionSnapshot: what the quota gate evaluates against
- PlanLimits / PLAN_CATALOGUE: limits applied by the ledger per tier

A value of -1 for any limit means "unlimited".
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

UNLIMITED = -1


class Tier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    TRIALING = "trialing"


class OverageTerms(BaseModel):
    """Overage allowance and this month's consumption of it."""

    enabled: bool = False
    price_cents: int = 0
    max_overages: int = 0
    overage_count_this_month: int = 0
    overage_spent_cents: int = 0

    model_config = {"frozen": True}


class SubscriptionSnapshot(BaseModel):
    """Point-in-time subscription state.

    overage_count_this_month may exceed max_overages (e.g. a plan downgrade
    mid-month); the quota gate treats that as a blocking state.
    """

    user_id: str = ""
    tier: Tier = Tier.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    monthly_route_limit: int = 0
    current_monthly_usage: int = Field(default=0, ge=0)
    max_vehicles_per_optimization: int = 0
    max_stops_per_route: int = 0
    overage: OverageTerms = Field(default_factory=OverageTerms)
    current_period_end: Optional[datetime] = None
    billing_customer_id: Optional[str] = None
    billing_subscription_id: Optional[str] = None

    model_config = {"frozen": True}

    @property
    def is_unlimited(self) -> bool:
        return self.monthly_route_limit == UNLIMITED

    @property
    def remaining_included(self) -> Optional[int]:
        if self.is_unlimited:
            return None
        return max(0, self.monthly_route_limit - self.current_monthly_usage)

    @property
    def is_using_overages(self) -> bool:
        return (
            not self.is_unlimited
            and self.current_monthly_usage >= self.monthly_route_limit
            and self.overage.overage_count_this_month > 0
        )

    @property
    def overages_remaining(self) -> int:
        if not self.overage.enabled:
            return 0
        return max(0, self.overage.max_overages - self.overage.overage_count_this_month)

    # ------------------------------------------------------------------
    # Wire format (flat /api/user/me payload)
    # ------------------------------------------------------------------

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "SubscriptionSnapshot":
        return cls(
            user_id=str(data.get("user_id", "")),
            tier=data.get("tier", Tier.FREE),
            status=data.get("subscription_status", SubscriptionStatus.ACTIVE),
            monthly_route_limit=data.get("monthly_route_limit", 0),
            current_monthly_usage=data.get("current_monthly_usage", 0),
            max_vehicles_per_optimization=data.get("max_vehicles_per_optimization", 0),
            max_stops_per_route=data.get("max_stops_per_route", 0),
            overage=OverageTerms(
                enabled=data.get("enable_overage", False),
                price_cents=data.get("overage_price_cents", 0),
                max_overages=data.get("max_overage_optimizations", 0),
                overage_count_this_month=data.get("overage_count_this_month", 0),
                overage_spent_cents=data.get("overage_spent_cents", 0),
            ),
            current_period_end=data.get("current_period_end"),
            billing_customer_id=data.get("stripe_customer_id"),
            billing_subscription_id=data.get("stripe_subscription_id"),
        )

    def to_api(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "tier": self.tier.value,
            "subscription_status": self.status.value,
            "monthly_route_limit": self.monthly_route_limit,
            "current_monthly_usage": self.current_monthly_usage,
            "max_vehicles_per_optimization": self.max_vehicles_per_optimization,
            "max_stops_per_route": self.max_stops_per_route,
            "enable_overage": self.overage.enabled,
            "overage_price_cents": self.overage.price_cents,
            "max_overage_optimizations": self.overage.max_overages,
            "overage_count_this_month": self.overage.overage_count_this_month,
            "overage_spent_cents": self.overage.overage_spent_cents,
            "is_using_overages": self.is_using_overages,
            "remaining_included_routes": self.remaining_included,
            "overages_remaining": self.overages_remaining,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "stripe_customer_id": self.billing_customer_id,
            "stripe_subscription_id": self.billing_subscription_id,
        }


# =============================================================================
# Plan catalogue
# =============================================================================

class PlanLimits(BaseModel):
    monthly_route_limit: int
    max_vehicles_per_optimization: int
    max_stops_per_route: int
    enable_overage: bool = False
    overage_price_cents: int = 0
    max_overage_optimizations: int = 0

    model_config = {"frozen": True}


PLAN_CATALOGUE: Dict[Tier, PlanLimits] = {
    Tier.FREE: PlanLimits(
        monthly_route_limit=10,
        max_vehicles_per_optimization=2,
        max_stops_per_route=25,
    ),
    Tier.STARTER: PlanLimits(
        monthly_route_limit=100,
        max_vehicles_per_optimization=5,
        max_stops_per_route=100,
        enable_overage=True,
        overage_price_cents=150,
        max_overage_optimizations=50,
    ),
    Tier.PROFESSIONAL: PlanLimits(
        monthly_route_limit=500,
        max_vehicles_per_optimization=20,
        max_stops_per_route=300,
        enable_overage=True,
        overage_price_cents=100,
        max_overage_optimizations=200,
    ),
    Tier.ENTERPRISE: PlanLimits(
        monthly_route_limit=UNLIMITED,
        max_vehicles_per_optimization=UNLIMITED,
        max_stops_per_route=UNLIMITED,
    ),
}
