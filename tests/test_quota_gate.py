"""
Quota Gate Tests
================

Ordered rule evaluation for the pre-flight quota check.

Coverage:
  - Size limits (vehicles, stops) and their precedence over the monthly dimension
  - Unlimited plans (-1) for each dimension
  - Monthly quota, overage allowance and overage cap
  - evaluate == evaluate_upload then evaluate_monthly
  - raise_for_block → LimitExceeded with registry codes
"""

import pytest

from repartilo.core.errors import LimitExceeded
from repartilo.models.subscription import OverageTerms, Tier
from repartilo.services import quota_gate
from repartilo.services.quota_gate import QuotaDecision, QuotaOutcome, QuotaReason


@pytest.fixture
def starter(make_snapshot):
    """Starter plan at its included quota with overages available."""

    def _make(**overage):
        terms = {"enabled": True, "price_cents": 150, "max_overages": 50, "overage_count_this_month": 0}
        terms.update(overage)
        return make_snapshot(
            tier=Tier.STARTER,
            monthly_route_limit=100,
            current_monthly_usage=100,
            max_vehicles_per_optimization=5,
            max_stops_per_route=100,
            overage=OverageTerms(**terms),
        )

    return _make


class TestScenarios:
    def test_starter_at_limit_uses_overage(self, starter):
        decision = quota_gate.evaluate(starter(), vehicle_count=3, stop_count=10)
        assert decision.outcome == QuotaOutcome.ALLOWED_WITH_OVERAGE
        assert decision.reason == QuotaReason.NONE
        assert decision.uses_overage is True

    def test_starter_overage_cap_reached(self, starter):
        decision = quota_gate.evaluate(starter(overage_count_this_month=50), vehicle_count=3, stop_count=10)
        assert decision.outcome == QuotaOutcome.BLOCKED
        assert decision.reason == QuotaReason.OVERAGE_CAP_EXCEEDED
        assert (decision.current_value, decision.limit_value) == (50, 50)

    def test_free_vehicle_limit_precedes_monthly(self, make_snapshot):
        decision = quota_gate.evaluate(make_snapshot(), vehicle_count=3, stop_count=5)
        assert decision.blocked
        assert decision.reason == QuotaReason.VEHICLE_LIMIT
        assert (decision.current_value, decision.limit_value) == (3, 2)


class TestSizeLimits:
    def test_vehicle_limit_wins_even_when_monthly_exhausted(self, make_snapshot):
        snap = make_snapshot(current_monthly_usage=10)
        assert quota_gate.evaluate(snap, 3, 30).reason == QuotaReason.VEHICLE_LIMIT

    def test_stop_limit(self, make_snapshot):
        decision = quota_gate.evaluate(make_snapshot(), vehicle_count=2, stop_count=26)
        assert decision.reason == QuotaReason.STOP_LIMIT
        assert decision.limit_value == 25

    def test_exact_limits_allowed(self, make_snapshot):
        assert quota_gate.evaluate(make_snapshot(), 2, 25).outcome == QuotaOutcome.ALLOWED

    def test_unlimited_size(self, make_snapshot):
        snap = make_snapshot(max_vehicles_per_optimization=-1, max_stops_per_route=-1)
        assert quota_gate.evaluate(snap, 500, 10_000).outcome == QuotaOutcome.ALLOWED

    def test_upload_check_ignores_monthly(self, make_snapshot):
        snap = make_snapshot(current_monthly_usage=10)
        assert quota_gate.evaluate_upload(snap, 1, 1).outcome == QuotaOutcome.ALLOWED
        assert quota_gate.evaluate(snap, 1, 1).reason == QuotaReason.MONTHLY_LIMIT


class TestMonthly:
    @pytest.mark.parametrize("usage", [0, 10, 10_000])
    def test_unlimited_monthly_ignores_usage(self, make_snapshot, usage):
        snap = make_snapshot(monthly_route_limit=-1, current_monthly_usage=usage)
        assert quota_gate.evaluate_monthly(snap).outcome == QuotaOutcome.ALLOWED

    @pytest.mark.parametrize("usage", [0, 5, 9])
    def test_below_limit_never_monthly_blocked(self, make_snapshot, usage):
        snap = make_snapshot(current_monthly_usage=usage)
        assert quota_gate.evaluate_monthly(snap).outcome == QuotaOutcome.ALLOWED

    def test_overage_disabled_blocks_with_monthly_limit(self, make_snapshot):
        decision = quota_gate.evaluate_monthly(make_snapshot(current_monthly_usage=10))
        assert decision.reason == QuotaReason.MONTHLY_LIMIT
        assert (decision.current_value, decision.limit_value) == (10, 10)

    def test_overage_count_above_cap_still_blocked(self, starter):
        decision = quota_gate.evaluate_monthly(starter(overage_count_this_month=60))
        assert decision.reason == QuotaReason.OVERAGE_CAP_EXCEEDED

    def test_evaluate_is_composition(self, starter, make_snapshot):
        cases = [
            (starter(), 3, 10),
            (starter(overage_count_this_month=50), 3, 10),
            (starter(), 6, 10),
            (make_snapshot(), 1, 26),
            (make_snapshot(current_monthly_usage=10), 1, 1),
        ]
        for snap, v, s in cases:
            upload = quota_gate.evaluate_upload(snap, v, s)
            expected = upload if upload.blocked else quota_gate.evaluate_monthly(snap)
            assert quota_gate.evaluate(snap, v, s) == expected


class TestRaiseForBlock:
    def test_allowed_returns_self(self):
        decision = QuotaDecision(QuotaOutcome.ALLOWED)
        assert decision.raise_for_block() is decision

    @pytest.mark.parametrize("reason,code", [
        (QuotaReason.VEHICLE_LIMIT, "RPT-QTA-001"),
        (QuotaReason.STOP_LIMIT, "RPT-QTA-002"),
        (QuotaReason.MONTHLY_LIMIT, "RPT-QTA-003"),
        (QuotaReason.OVERAGE_CAP_EXCEEDED, "RPT-QTA-004"),
    ])
    def test_blocked_raises_with_code(self, reason, code):
        with pytest.raises(LimitExceeded) as exc_info:
            QuotaDecision(QuotaOutcome.BLOCKED, reason, 3, 2).raise_for_block()
        assert exc_info.value.code == code
        assert exc_info.value.reason == reason.value
        assert exc_info.value.context == {"reason": reason.value, "current": 3, "limit": 2}

    def test_decision_is_frozen(self):
        decision = QuotaDecision(QuotaOutcome.ALLOWED)
        with pytest.raises(Exception):
            decision.outcome = QuotaOutcome.BLOCKED
