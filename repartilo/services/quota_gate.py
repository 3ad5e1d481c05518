"""
Quota Gate — Pre-flight Limit Evaluation
=========================================

PURPOSE:
    Decides whether a proposed optimization of ``vehicle_count`` vehicles and
    ``stop_count`` deliveries may run under a subscription snapshot.

RULES (evaluated in order, first match wins):
    1. max_vehicles_per_optimization != -1 and vehicles > max  → BLOCKED(vehicle_limit)
    2. max_stops_per_route != -1 and stops > max               → BLOCKED(stop_limit)
    3. monthly_route_limit == -1                               → ALLOWED
    4. current_monthly_usage < monthly_route_limit             → ALLOWED
    5. usage >= limit:
         overage disabled                                      → BLOCKED(monthly_limit)
         overage_count_this_month >= max_overages              → BLOCKED(overage_cap_exceeded)
         otherwise                                             → ALLOWED_WITH_OVERAGE

    The rule order is part of the contract: size limits (1-2) always win
    over the monthly dimension.

ADVISORY ONLY:
    Decisions computed from a cached snapshot can be stale. The usage ledger
    re-evaluates against its own row and is the only place counters move.

Pure functions: no I/O, no mutation. Safe from any thread.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from repartilo.core.errors import LimitExceeded
from repartilo.models.subscription import UNLIMITED, SubscriptionSnapshot

__all__ = [
    "QuotaOutcome",
    "QuotaReason",
    "QuotaDecision",
    "evaluate",
    "evaluate_upload",
    "evaluate_monthly",
]


class QuotaOutcome(str, Enum):
    ALLOWED = "allowed"
    ALLOWED_WITH_OVERAGE = "allowed_with_overage"
    BLOCKED = "blocked"


class QuotaReason(str, Enum):
    NONE = "none"
    VEHICLE_LIMIT = "vehicle_limit"
    STOP_LIMIT = "stop_limit"
    MONTHLY_LIMIT = "monthly_limit"
    OVERAGE_CAP_EXCEEDED = "overage_cap_exceeded"


@dataclass(frozen=True)
class QuotaDecision:
    """Result of a quota evaluation."""

    outcome: QuotaOutcome
    reason: QuotaReason = QuotaReason.NONE
    current_value: Optional[int] = None
    limit_value: Optional[int] = None

    @property
    def blocked(self) -> bool:
        return self.outcome == QuotaOutcome.BLOCKED

    @property
    def uses_overage(self) -> bool:
        return self.outcome == QuotaOutcome.ALLOWED_WITH_OVERAGE

    def raise_for_block(self) -> "QuotaDecision":
        """Raise LimitExceeded if this decision blocks; return self otherwise."""
        if self.blocked:
            raise LimitExceeded(
                self.reason.value,
                current_value=self.current_value,
                limit_value=self.limit_value,
            )
        return self


ALLOWED = QuotaDecision(QuotaOutcome.ALLOWED)


def _blocked(reason: QuotaReason, current: int, limit: int) -> QuotaDecision:
    return QuotaDecision(QuotaOutcome.BLOCKED, reason, current, limit)


def evaluate_upload(
    snapshot: SubscriptionSnapshot,
    vehicle_count: int,
    stop_count: int,
) -> QuotaDecision:
    """Size-only check (rules 1-2), run on row counts before full validation."""
    max_vehicles = snapshot.max_vehicles_per_optimization
    if max_vehicles != UNLIMITED and vehicle_count > max_vehicles:
        return _blocked(QuotaReason.VEHICLE_LIMIT, vehicle_count, max_vehicles)

    max_stops = snapshot.max_stops_per_route
    if max_stops != UNLIMITED and stop_count > max_stops:
        return _blocked(QuotaReason.STOP_LIMIT, stop_count, max_stops)

    return ALLOWED


def evaluate_monthly(snapshot: SubscriptionSnapshot) -> QuotaDecision:
    """Monthly quota and overage check (rules 3-5)."""
    limit = snapshot.monthly_route_limit
    if limit == UNLIMITED:
        return ALLOWED

    usage = snapshot.current_monthly_usage
    if usage < limit:
        return ALLOWED

    overage = snapshot.overage
    if not overage.enabled:
        return _blocked(QuotaReason.MONTHLY_LIMIT, usage, limit)

    if overage.overage_count_this_month >= overage.max_overages:
        return _blocked(
            QuotaReason.OVERAGE_CAP_EXCEEDED,
            overage.overage_count_this_month,
            overage.max_overages,
        )

    return QuotaDecision(
        QuotaOutcome.ALLOWED_WITH_OVERAGE,
        current_value=overage.overage_count_this_month,
        limit_value=overage.max_overages,
    )


def evaluate(
    snapshot: SubscriptionSnapshot,
    vehicle_count: int,
    stop_count: int,
) -> QuotaDecision:
    """Full evaluation: size limits first, then the monthly dimension."""
    decision = evaluate_upload(snapshot, vehicle_count, stop_count)
    if decision.blocked:
        return decision
    return evaluate_monthly(snapshot)
