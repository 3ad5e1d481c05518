"""
Subscription Reconciler — post-checkout polling for eventual consistency
=========================================================================

PURPOSE:
    After the payment provider redirects back with ``success``, the billing
    webhook may not have updated the ledger yet. The reconciler refreshes the
    cached SubscriptionSnapshot once immediately and then up to
    ``reconcile_attempts`` more times, ``reconcile_interval_ms`` apart, until
    the tier differs from the tier cached when checkout returned.

TRIGGERS:
    A checkout return (``success`` or ``canceled``) is consumed at most once
    per round-trip. ``arm()`` starts a new round-trip when checkout is
    initiated. ``canceled`` emits one notification and never polls.

CANCELLATION:
    ``stop()`` sets the session flag. The flag is checked before every
    scheduled attempt and before every network call; a snapshot that arrives
    after the flag is set is discarded. ``shutdown()`` also cancels the task.

FAILURES:
    NetworkError during a refresh is logged and counts as a consumed attempt.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Optional

from repartilo.config import settings
from repartilo.core.errors import NetworkError
from repartilo.models.subscription import SubscriptionSnapshot, Tier
from repartilo.services.snapshot_cache import SnapshotCache

logger = logging.getLogger(__name__)

TRUTHY = {"1", "true", "yes"}

FetchSnapshot = Callable[[], Awaitable[SubscriptionSnapshot]]
Notify = Callable[[str], None]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class CheckoutReturn:
    """The ``success`` / ``canceled`` flags carried by the checkout return URL."""

    success: bool = False
    canceled: bool = False

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> "CheckoutReturn":
        return cls(
            success=str(params.get("success", "")).lower() in TRUTHY,
            canceled=str(params.get("canceled", "")).lower() in TRUTHY,
        )

    @property
    def is_trigger(self) -> bool:
        return self.success or self.canceled


@dataclass
class ReconciliationSession:
    start_tier: Optional[Tier]
    attempts_remaining: int
    interval_ms: int
    cancelled: bool = False
    consumed_trigger: bool = True


def _log_event(event: str, **fields) -> None:
    logger.info(json.dumps({"event": event, **fields}, default=str))


class SubscriptionReconciler:
    """Polls the ledger after checkout until the new tier shows up."""

    def __init__(
        self,
        fetch_snapshot: FetchSnapshot,
        cache: SnapshotCache,
        attempts: Optional[int] = None,
        interval_ms: Optional[int] = None,
        notify: Optional[Notify] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._fetch_snapshot = fetch_snapshot
        self._cache = cache
        self._attempts = attempts if attempts is not None else settings.reconcile_attempts
        self._interval_ms = interval_ms if interval_ms is not None else settings.reconcile_interval_ms
        self._notify = notify
        self._sleep = sleep
        self._consumed = False
        self._session: Optional[ReconciliationSession] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def session(self) -> Optional[ReconciliationSession]:
        return self._session

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self) -> None:
        """Start a new checkout round-trip; the next return will be handled."""
        self._consumed = False

    def handle_checkout_return(self, event: CheckoutReturn) -> Optional[ReconciliationSession]:
        """Consume a checkout return. Returns the polling session, if one started."""
        if not event.is_trigger:
            return None
        if self._consumed:
            _log_event("reconcile_trigger_ignored", success=event.success, canceled=event.canceled)
            return None
        self._consumed = True

        if not event.success:
            _log_event("checkout_canceled")
            if self._notify is not None:
                self._notify("canceled")
            return None

        self.stop()
        cached = self._cache.get()
        session = ReconciliationSession(
            start_tier=cached.tier if cached is not None else None,
            attempts_remaining=self._attempts,
            interval_ms=self._interval_ms,
        )
        self._session = session
        _log_event(
            "reconcile_started",
            start_tier=session.start_tier.value if session.start_tier else None,
            attempts=session.attempts_remaining,
            interval_ms=session.interval_ms,
        )
        self._task = asyncio.create_task(self._run(session))
        self._task.add_done_callback(self._on_task_done)
        return session

    def stop(self) -> None:
        """Cancel the active session. In-flight results will be discarded."""
        if self._session is not None and not self._session.cancelled:
            self._session.cancelled = True
            if self.is_running:
                _log_event("reconcile_stopped", attempts_remaining=self._session.attempts_remaining)

    async def shutdown(self) -> None:
        """Stop and cancel the polling task, waiting for it to finish."""
        self.stop()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _run(self, session: ReconciliationSession) -> None:
        try:
            if await self._refresh(session, attempt=0):
                return
            attempt = 0
            while session.attempts_remaining > 0:
                if session.cancelled:
                    return
                await self._sleep(session.interval_ms / 1000)
                if session.cancelled:
                    return
                session.attempts_remaining -= 1
                attempt += 1
                if await self._refresh(session, attempt=attempt):
                    return
            _log_event("reconcile_exhausted", start_tier=_tier_value(session.start_tier))
        except asyncio.CancelledError:
            session.cancelled = True
            _log_event("reconcile_cancelled")
            raise

    async def _refresh(self, session: ReconciliationSession, attempt: int) -> bool:
        """One refresh. Returns True when polling should stop."""
        if session.cancelled:
            return True
        try:
            snapshot = await self._fetch_snapshot()
        except NetworkError as e:
            _log_event("reconcile_refresh_failed", attempt=attempt, error=str(e))
            return False

        if session.cancelled:
            _log_event("reconcile_result_discarded", attempt=attempt)
            return True

        self._cache.set(snapshot)
        if session.start_tier is not None and snapshot.tier != session.start_tier:
            _log_event(
                "reconcile_tier_changed",
                attempt=attempt,
                start_tier=session.start_tier.value,
                tier=snapshot.tier.value,
            )
            return True
        return False

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Reconciliation task failed: %s", exc, exc_info=exc)


def _tier_value(tier: Optional[Tier]) -> Optional[str]:
    return tier.value if tier is not None else None
