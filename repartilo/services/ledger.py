"""
Usage Ledger — contract for the authoritative usage/history store.
===================================================================

Provides:
- UsageLedger protocol (async) consumed by the workflow, auto-save and
  reconciliation code
- OptimizationEngine protocol for the external routing service
- LocalUsageLedger: runs the SQL reference ledger in a worker thread so it
  satisfies the async protocol in-process

Implementations:
- repartilo.services.sql_ledger.SqlUsageLedger (reference, SQLModel)
- repartilo.services.api_client.HttpUsageLedger (HTTP client, httpx)

record_optimization and save_optimization_record take an optional request_id;
repeating a call with the same id returns the first result without counting
or saving again, which makes both safe to retry.

Errors raised by any implementation:
    LimitExceeded     — record_optimization refused by the authoritative row
    CapacityExceeded  — save_optimization_record at the per-user cap
    RecordNotFound    — get/rename/delete of an unknown record
    NetworkError      — transport failure (HTTP implementations only)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, List, Optional, Protocol

from repartilo.models.optimization import (
    Delivery,
    OptimizationRecord,
    OptimizationResult,
    OptimizationSummary,
    Vehicle,
)
from repartilo.models.subscription import SubscriptionSnapshot, SubscriptionStatus, Tier
from repartilo.services.quota_gate import QuotaDecision

if TYPE_CHECKING:
    from repartilo.models.billing import OverageCharge
    from repartilo.services.sql_ledger import SqlUsageLedger


class UsageLedger(Protocol):
    async def get_snapshot(self, user_id: str) -> SubscriptionSnapshot: ...

    async def record_optimization(
        self, user_id: str, vehicle_count: int, stop_count: int, request_id: Optional[str] = None,
    ) -> QuotaDecision: ...

    async def list_optimization_records(
        self, user_id: str, limit: int = 20, offset: int = 0,
    ) -> List[OptimizationSummary]: ...

    async def get_optimization_record(self, user_id: str, record_id: str) -> OptimizationRecord: ...

    async def count_optimization_records(self, user_id: str) -> int: ...

    async def save_optimization_record(
        self, user_id: str, record: OptimizationRecord, request_id: Optional[str] = None,
    ) -> str: ...

    async def rename_optimization_record(self, user_id: str, record_id: str, name: str) -> None: ...

    async def delete_optimization_record(self, user_id: str, record_id: str) -> None: ...

    async def create_checkout_session(self, user_id: str, tier: Tier) -> str: ...


class OptimizationEngine(Protocol):
    async def optimize(
        self, vehicles: List[Vehicle], deliveries: List[Delivery],
    ) -> OptimizationResult: ...


class LocalUsageLedger:
    """Async facade over SqlUsageLedger (blocking DB calls run via to_thread)."""

    def __init__(self, ledger: "SqlUsageLedger") -> None:
        self._ledger = ledger

    async def get_snapshot(self, user_id: str) -> SubscriptionSnapshot:
        return await asyncio.to_thread(self._ledger.get_snapshot, user_id)

    async def record_optimization(
        self, user_id: str, vehicle_count: int, stop_count: int, request_id: Optional[str] = None,
    ) -> QuotaDecision:
        return await asyncio.to_thread(
            self._ledger.record_optimization, user_id, vehicle_count, stop_count, request_id,
        )

    async def list_optimization_records(
        self, user_id: str, limit: int = 20, offset: int = 0,
    ) -> List[OptimizationSummary]:
        return await asyncio.to_thread(
            self._ledger.list_optimization_records, user_id, limit, offset,
        )

    async def get_optimization_record(self, user_id: str, record_id: str) -> OptimizationRecord:
        return await asyncio.to_thread(self._ledger.get_optimization_record, user_id, record_id)

    async def count_optimization_records(self, user_id: str) -> int:
        return await asyncio.to_thread(self._ledger.count_optimization_records, user_id)

    async def save_optimization_record(
        self, user_id: str, record: OptimizationRecord, request_id: Optional[str] = None,
    ) -> str:
        return await asyncio.to_thread(self._ledger.save_optimization_record, user_id, record, request_id)

    async def rename_optimization_record(self, user_id: str, record_id: str, name: str) -> None:
        await asyncio.to_thread(self._ledger.rename_optimization_record, user_id, record_id, name)

    async def delete_optimization_record(self, user_id: str, record_id: str) -> None:
        await asyncio.to_thread(self._ledger.delete_optimization_record, user_id, record_id)

    async def list_overage_charges(self, user_id: str) -> List["OverageCharge"]:
        return await asyncio.to_thread(self._ledger.list_overage_charges, user_id)

    async def apply_billing_update(
        self, user_id: str, tier: Tier, status: SubscriptionStatus, **kwargs,
    ) -> SubscriptionSnapshot:
        return await asyncio.to_thread(self._ledger.apply_billing_update, user_id, tier, status, **kwargs)

    async def create_checkout_session(self, user_id: str, tier: Tier) -> str:
        return self._ledger.create_checkout_session(user_id, tier)
