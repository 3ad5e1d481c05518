"""
Optimize Session — one user's view of the optimize workflow.
=============================================================

Wires the UI-layer events to the core components:

    upload          → QuotaGate size check → WorkflowStateMachine.submit_upload
    optimize        → WorkflowStateMachine.run_optimization (ledger counts it)
    attach_qr_codes → store codes → HistoryAutoSaver.auto_save → mark_saved
    open_record     → ledger lookup → WorkflowStateMachine.load_from_record
    start_checkout  → ledger checkout url, reconciler armed
    checkout return → SubscriptionReconciler
    reset / close

The SnapshotCache is the only thing shared between the workflow and the
reconciler.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import List, Optional

from repartilo.core.errors import LimitExceeded, NetworkError
from repartilo.models.optimization import Delivery, QRCode, Vehicle
from repartilo.models.subscription import SubscriptionSnapshot, Tier
from repartilo.models.workflow import WorkflowState, WorkflowStep
from repartilo.services.history import HistoryAutoSaver
from repartilo.services.ledger import OptimizationEngine, UsageLedger
from repartilo.services.reconciler import (
    CheckoutReturn,
    Notify,
    ReconciliationSession,
    Sleep,
    SubscriptionReconciler,
)
from repartilo.services.snapshot_cache import SnapshotCache
from repartilo.services.workflow import WorkflowStateMachine
from repartilo.services.workflow_store import WorkflowStore

logger = logging.getLogger(__name__)


class OptimizeSession:
    def __init__(
        self,
        user_id: str,
        ledger: UsageLedger,
        engine: OptimizationEngine,
        store: Optional[WorkflowStore] = None,
        cache: Optional[SnapshotCache] = None,
        notify: Optional[Notify] = None,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.user_id = user_id
        self._ledger = ledger
        self.cache = cache or SnapshotCache()
        self.machine = WorkflowStateMachine(user_id, engine, ledger, store=store, rng=rng)
        self.auto_saver = HistoryAutoSaver(ledger, user_id)
        self.reconciler = SubscriptionReconciler(
            self._fetch_snapshot, self.cache, notify=notify, sleep=sleep,
        )

    @property
    def state(self) -> WorkflowState:
        return self.machine.state

    # ------------------------------------------------------------------
    # Subscription snapshot
    # ------------------------------------------------------------------

    async def _fetch_snapshot(self) -> SubscriptionSnapshot:
        return await self._ledger.get_snapshot(self.user_id)

    async def refresh_snapshot(self) -> SubscriptionSnapshot:
        snapshot = await self._fetch_snapshot()
        self.cache.set(snapshot)
        return snapshot

    async def _current_snapshot(self) -> SubscriptionSnapshot:
        return self.cache.get() or await self.refresh_snapshot()

    async def _refresh_after_usage(self) -> None:
        try:
            await self.refresh_snapshot()
        except NetworkError as e:
            logger.warning("Snapshot refresh after optimization failed: user=%s %s", self.user_id, e)

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    async def upload(self, vehicles: List[Vehicle], deliveries: List[Delivery]) -> WorkflowState:
        snapshot = await self._current_snapshot()
        self.machine.check_upload(snapshot, len(vehicles), len(deliveries))
        return self.machine.submit_upload(vehicles, deliveries)

    async def optimize(self) -> WorkflowState:
        snapshot = await self._current_snapshot()
        try:
            state = await self.machine.run_optimization(snapshot)
        except LimitExceeded:
            await self._refresh_after_usage()
            raise
        if state.step == WorkflowStep.OPTIMIZED:
            await self._refresh_after_usage()
        return state

    async def attach_qr_codes(self, qr_codes: List[QRCode]) -> WorkflowState:
        state = self.machine.attach_qr_codes(qr_codes)
        record_id = await self.auto_saver.auto_save(state)
        if record_id is not None:
            state = self.machine.mark_saved(record_id)
        return state

    async def open_record(self, record_id: str) -> WorkflowState:
        record = await self._ledger.get_optimization_record(self.user_id, record_id)
        return self.machine.load_from_record(record)

    def reset(self) -> WorkflowState:
        return self.machine.reset()

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def start_checkout(self, tier: Tier) -> str:
        url = await self._ledger.create_checkout_session(self.user_id, tier)
        self.reconciler.arm()
        logger.info("Checkout started: user=%s tier=%s", self.user_id, Tier(tier).value)
        return url

    def handle_checkout_return(
        self, success: bool = False, canceled: bool = False,
    ) -> Optional[ReconciliationSession]:
        return self.reconciler.handle_checkout_return(CheckoutReturn(success=success, canceled=canceled))

    async def close(self) -> None:
        await self.reconciler.shutdown()
