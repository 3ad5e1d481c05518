"""
SQL Usage Ledger — reference implementation of the UsageLedger contract
========================================================================

PURPOSE:
    Authoritative per-user usage counters and saved optimization history on
    a SQLModel database (SQLite by default, PostgreSQL supported).

COUNTING (record_optimization):
    The quota gate is re-evaluated against the locked account row, never
    against a client snapshot. Then exactly one of:
      - current_monthly_usage += 1                      (under the limit)
      - overage_count_this_month += 1, charge appended  (in overage)
    Blocked decisions raise LimitExceeded and leave the row untouched.

IDEMPOTENCY:
    Callers pass a request_id (the workflow run id). A counted optimization
    stores a UsageEvent and a saved record keeps its request_id, both unique
    per user, so a retried POST whose first response was lost returns the
    original decision or record id instead of counting or saving twice.

SERIALIZATION:
    Striped threading.Lock pool inside this process (a user always maps to
    the same stripe), plus SELECT ... FOR UPDATE for multi-process
    deployments on PostgreSQL (SQLite serializes writers
    on its own; SQLITE_BUSY is retried).

MONTH ROLLOVER:
    Counters are reset lazily on the first access in a new UTC calendar month.

TIER CHANGES:
    Only apply_billing_update (called by the billing webhook) writes tier
    and status.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, List, Optional
from urllib.parse import urlencode

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, func, select

from repartilo.config import settings
from repartilo.core.database import get_engine, sqlite_retry
from repartilo.core.errors import CapacityExceeded, RecordNotFound
from repartilo.models.billing import OverageCharge, UsageEvent, UserAccount, current_usage_month
from repartilo.models.optimization import (
    OptimizationRecord,
    OptimizationSummary,
    SavedOptimization,
)
from repartilo.models.subscription import SubscriptionSnapshot, SubscriptionStatus, Tier
from repartilo.services import quota_gate
from repartilo.services.quota_gate import QuotaDecision, QuotaOutcome, QuotaReason

logger = logging.getLogger(__name__)

__all__ = ["SqlUsageLedger", "get_sql_ledger"]

MAX_PAGE_SIZE = 100
LOCK_STRIPES = 64


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqlUsageLedger:
    """SQLModel-backed usage ledger."""

    def __init__(
        self,
        engine: Optional[Engine] = None,
        max_records: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
        checkout_base_url: Optional[str] = None,
    ) -> None:
        self._engine = engine
        self._max_records = max_records if max_records is not None else settings.max_saved_optimizations
        self._clock = clock
        self._checkout_base_url = checkout_base_url or settings.checkout_base_url
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    @property
    def max_records(self) -> int:
        return self._max_records

    def _lock_for(self, user_id: str) -> threading.Lock:
        return self._locks[hash(user_id) % LOCK_STRIPES]

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def _load_account(
        self, session: Session, user_id: str, for_update: bool = False,
    ) -> UserAccount:
        """Fetch (or provision a free) account and roll its usage month."""
        stmt = select(UserAccount).where(UserAccount.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        account = session.exec(stmt).first()

        if account is None:
            account = UserAccount(user_id=user_id, usage_month=current_usage_month(self._clock()))
            account.apply_plan(Tier.FREE)
            session.add(account)
            logger.info("Provisioned free account: user=%s", user_id)
        elif account.roll_usage_month(current_usage_month(self._clock())):
            account.updated_at = self._clock()
            session.add(account)
            logger.info("Monthly usage counters reset: user=%s month=%s", user_id, account.usage_month)
        return account

    def get_snapshot(self, user_id: str) -> SubscriptionSnapshot:
        def _op() -> SubscriptionSnapshot:
            with self._lock_for(user_id), Session(self.engine) as session:
                account = self._load_account(session, user_id)
                session.commit()
                session.refresh(account)
                return account.to_snapshot()

        return sqlite_retry(_op)

    @staticmethod
    def _find_usage_event(session: Session, user_id: str, request_id: str) -> Optional[UsageEvent]:
        return session.exec(
            select(UsageEvent).where(UsageEvent.user_id == user_id, UsageEvent.request_id == request_id)
        ).first()

    @staticmethod
    def _replayed(event: UsageEvent) -> QuotaDecision:
        logger.info("Usage replayed: user=%s request_id=%s outcome=%s", event.user_id, event.request_id, event.outcome)
        return QuotaDecision(
            outcome=QuotaOutcome(event.outcome),
            reason=QuotaReason(event.reason),
            current_value=event.current_value,
            limit_value=event.limit_value,
        )

    def record_optimization(
        self,
        user_id: str,
        vehicle_count: int,
        stop_count: int,
        request_id: Optional[str] = None,
    ) -> QuotaDecision:
        """Count one successful optimization. Raises LimitExceeded when blocked.

        A repeated *request_id* returns the decision of the first call and
        leaves the counters alone.
        """

        def _op() -> QuotaDecision:
            with self._lock_for(user_id), Session(self.engine) as session:
                if request_id:
                    prior = self._find_usage_event(session, user_id, request_id)
                    if prior is not None:
                        return self._replayed(prior)

                account = self._load_account(session, user_id, for_update=True)
                decision = quota_gate.evaluate(account.to_snapshot(), vehicle_count, stop_count)

                if decision.blocked:
                    session.commit()  # persist any month rollover
                    logger.warning(
                        "Usage rejected: user=%s reason=%s current=%s limit=%s",
                        user_id, decision.reason.value, decision.current_value, decision.limit_value,
                    )
                    decision.raise_for_block()

                if decision.uses_overage:
                    account.overage_count_this_month += 1
                    account.overage_spent_cents += account.overage_price_cents
                    account.total_overage_charges_cents += account.overage_price_cents
                    session.add(OverageCharge(
                        user_id=user_id,
                        usage_month=account.usage_month,
                        amount_cents=account.overage_price_cents,
                        vehicle_count=vehicle_count,
                        stop_count=stop_count,
                    ))
                else:
                    account.current_monthly_usage += 1

                account.updated_at = self._clock()
                session.add(account)
                if request_id:
                    session.add(UsageEvent(
                        user_id=user_id,
                        request_id=request_id,
                        usage_month=account.usage_month,
                        outcome=decision.outcome.value,
                        reason=decision.reason.value,
                        current_value=decision.current_value,
                        limit_value=decision.limit_value,
                    ))
                session.commit()

                logger.info(
                    "Usage recorded: user=%s outcome=%s usage=%d/%d overages=%d/%d",
                    user_id, decision.outcome.value,
                    account.current_monthly_usage, account.monthly_route_limit,
                    account.overage_count_this_month, account.max_overage_optimizations,
                )
                return decision

        try:
            return sqlite_retry(_op)
        except IntegrityError:
            # Another process committed the same request_id first.
            if not request_id:
                raise
            with Session(self.engine) as session:
                prior = self._find_usage_event(session, user_id, request_id)
            if prior is None:
                raise
            return self._replayed(prior)

    def apply_billing_update(
        self,
        user_id: str,
        tier: Tier,
        status: SubscriptionStatus,
        current_period_end: Optional[datetime] = None,
        billing_customer_id: Optional[str] = None,
        billing_subscription_id: Optional[str] = None,
    ) -> SubscriptionSnapshot:
        """Webhook-side update of tier/status; re-applies the plan limits."""

        def _op() -> SubscriptionSnapshot:
            with self._lock_for(user_id), Session(self.engine) as session:
                account = self._load_account(session, user_id, for_update=True)
                previous = account.tier
                account.apply_plan(tier)
                account.status = status.value
                account.current_period_end = current_period_end
                if billing_customer_id:
                    account.billing_customer_id = billing_customer_id
                if billing_subscription_id:
                    account.billing_subscription_id = billing_subscription_id
                account.updated_at = self._clock()
                session.add(account)
                session.commit()
                session.refresh(account)
                logger.info(
                    "Billing update applied: user=%s tier=%s→%s status=%s",
                    user_id, previous, account.tier, account.status,
                )
                return account.to_snapshot()

        return sqlite_retry(_op)

    def list_overage_charges(self, user_id: str, usage_month: Optional[str] = None) -> List[OverageCharge]:
        month = usage_month or current_usage_month(self._clock())
        with Session(self.engine) as session:
            stmt = (
                select(OverageCharge)
                .where(OverageCharge.user_id == user_id, OverageCharge.usage_month == month)
                .order_by(col(OverageCharge.created_at).desc())
            )
            return list(session.exec(stmt).all())

    def create_checkout_session(self, user_id: str, tier: Tier) -> str:
        """Return the redirect target for the payment provider's checkout page."""
        query = urlencode({"tier": Tier(tier).value, "client_reference_id": user_id})
        return f"{self._checkout_base_url}?{query}"

    # ------------------------------------------------------------------
    # Saved optimization history
    # ------------------------------------------------------------------

    def _get_owned(self, session: Session, user_id: str, record_id: str) -> SavedOptimization:
        row = session.get(SavedOptimization, record_id)
        if row is None or row.user_id != user_id:
            raise RecordNotFound(detail=f"optimization {record_id} not found for user {user_id}")
        return row

    def count_optimization_records(self, user_id: str) -> int:
        with Session(self.engine) as session:
            stmt = select(func.count()).select_from(SavedOptimization).where(
                SavedOptimization.user_id == user_id
            )
            return int(session.exec(stmt).one())

    def list_optimization_records(
        self, user_id: str, limit: int = 20, offset: int = 0,
    ) -> List[OptimizationSummary]:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        with Session(self.engine) as session:
            stmt = (
                select(SavedOptimization)
                .where(SavedOptimization.user_id == user_id)
                .order_by(col(SavedOptimization.created_at).desc())
                .offset(offset)
                .limit(limit)
            )
            return [row.to_summary() for row in session.exec(stmt).all()]

    def get_optimization_record(self, user_id: str, record_id: str) -> OptimizationRecord:
        with Session(self.engine) as session:
            return self._get_owned(session, user_id, record_id).to_record()

    @staticmethod
    def _find_saved(session: Session, user_id: str, request_id: str) -> Optional[str]:
        return session.exec(
            select(SavedOptimization.id).where(
                SavedOptimization.user_id == user_id, SavedOptimization.request_id == request_id,
            )
        ).first()

    def save_optimization_record(
        self, user_id: str, record: OptimizationRecord, request_id: Optional[str] = None,
    ) -> str:
        """Persist *record*; raises CapacityExceeded at the per-user cap.

        A repeated *request_id* returns the id saved by the first call.
        """

        def _op() -> str:
            with self._lock_for(user_id), Session(self.engine) as session:
                if request_id:
                    existing = self._find_saved(session, user_id, request_id)
                    if existing is not None:
                        logger.info("Save replayed: user=%s request_id=%s id=%s", user_id, request_id, existing)
                        return existing

                count = session.exec(
                    select(func.count()).select_from(SavedOptimization).where(
                        SavedOptimization.user_id == user_id
                    )
                ).one()
                if count >= self._max_records:
                    logger.warning(
                        "History full: user=%s count=%d max=%d", user_id, count, self._max_records,
                    )
                    raise CapacityExceeded(
                        detail=f"user {user_id} has {count} saved optimizations (max {self._max_records})",
                        context={"count": int(count), "max": self._max_records},
                    )

                row = SavedOptimization.from_record(user_id, record, request_id=request_id)
                session.add(row)
                session.commit()
                logger.info("Optimization saved: user=%s id=%s", user_id, row.id)
                return row.id

        try:
            return sqlite_retry(_op)
        except IntegrityError:
            if not request_id:
                raise
            with Session(self.engine) as session:
                existing = self._find_saved(session, user_id, request_id)
            if existing is None:
                raise
            return existing

    def rename_optimization_record(self, user_id: str, record_id: str, name: str) -> None:
        with Session(self.engine) as session:
            row = self._get_owned(session, user_id, record_id)
            row.name = name
            session.add(row)
            session.commit()

    def delete_optimization_record(self, user_id: str, record_id: str) -> None:
        """Delete a saved optimization. Raises RecordNotFound if already gone."""
        with Session(self.engine) as session:
            row = self._get_owned(session, user_id, record_id)
            session.delete(row)
            session.commit()
            logger.info("Optimization deleted: user=%s id=%s", user_id, record_id)


# ---------------------------------------------------------------------------
# Module-level singleton + FastAPI dependency
# ---------------------------------------------------------------------------
_ledger: Optional[SqlUsageLedger] = None


def get_sql_ledger() -> SqlUsageLedger:
    global _ledger
    if _ledger is None:
        _ledger = SqlUsageLedger()
    return _ledger
