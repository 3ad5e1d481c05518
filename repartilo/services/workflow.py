"""
Workflow State Machine — upload → validated → optimized, with reset.
=====================================================================

Two layers:

1. ``transition(state, action) -> state`` — pure functions over the immutable
   WorkflowState. Every state change in the system goes through here.
2. ``WorkflowStateMachine`` — owns the current state for one user session,
   performs the I/O around transitions (quota gate, routing engine, usage
   ledger) and writes every new state to the WorkflowStore.

Quota checks:
    check_upload      — size limits only, on row counts, before full validation
    run_optimization  — full gate (size + monthly) on the cached snapshot;
                        the ledger then counts the run authoritatively
    load_from_record  — none: viewing history consumes no usage
"""

from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from repartilo.core.errors import InvalidTransition, LimitExceeded, NetworkError, ValidationError
from repartilo.models.optimization import (
    Delivery,
    EfficiencyMetrics,
    OptimizationRecord,
    QRCode,
    Vehicle,
    VehicleRoute,
)
from repartilo.models.subscription import SubscriptionSnapshot
from repartilo.models.workflow import WorkflowOrigin, WorkflowState, WorkflowStep
from repartilo.services import quota_gate
from repartilo.services.efficiency import calculate_efficiency_metrics
from repartilo.services.ledger import OptimizationEngine, UsageLedger
from repartilo.services.quota_gate import QuotaDecision
from repartilo.services.workflow_store import WorkflowStore

logger = logging.getLogger(__name__)

OPTIMIZE_FAILED_MESSAGE = "Route optimization failed. Please try again."
SERVICE_UNAVAILABLE_MESSAGE = "The optimization service could not be reached. Please try again."


# =============================================================================
# Actions
# =============================================================================

@dataclass(frozen=True)
class UploadValidated:
    vehicles: Sequence[Vehicle]
    deliveries: Sequence[Delivery]


@dataclass(frozen=True)
class OptimizationCompleted:
    routes: Sequence[VehicleRoute]
    efficiency_metrics: Optional[EfficiencyMetrics]
    run_id: str


@dataclass(frozen=True)
class OptimizationFailed:
    message: str


@dataclass(frozen=True)
class RecordLoaded:
    record: OptimizationRecord


@dataclass(frozen=True)
class QRCodesGenerated:
    qr_codes: Sequence[QRCode]


@dataclass(frozen=True)
class RecordSaved:
    record_id: str


@dataclass(frozen=True)
class Reset:
    pass


Action = Union[
    UploadValidated,
    OptimizationCompleted,
    OptimizationFailed,
    RecordLoaded,
    QRCodesGenerated,
    RecordSaved,
    Reset,
]


# =============================================================================
# Pure transitions
# =============================================================================

def _require_step(state: WorkflowState, action: str, *steps: WorkflowStep) -> None:
    if state.step not in steps:
        raise InvalidTransition(
            detail=f"{action} not allowed at step {state.step.value}",
            context={"step": state.step.value, "action": action},
        )


def transition(state: WorkflowState, action: Action) -> WorkflowState:
    """Return the state that results from applying *action* to *state*."""
    if isinstance(action, Reset):
        return WorkflowState()

    if isinstance(action, UploadValidated):
        _require_step(state, type(action).__name__, WorkflowStep.UPLOAD, WorkflowStep.VALIDATED)
        if not action.vehicles or not action.deliveries:
            raise ValidationError(
                detail="upload needs at least one vehicle and one delivery",
                context={"vehicles": len(action.vehicles), "deliveries": len(action.deliveries)},
            )
        return WorkflowState(
            step=WorkflowStep.VALIDATED,
            vehicles=list(action.vehicles),
            deliveries=list(action.deliveries),
            origin=WorkflowOrigin.FRESH,
        )

    if isinstance(action, OptimizationCompleted):
        _require_step(state, type(action).__name__, WorkflowStep.VALIDATED)
        if not action.routes:
            raise InvalidTransition(detail="optimized step requires at least one route")
        return WorkflowState(
            step=WorkflowStep.OPTIMIZED,
            vehicles=state.vehicles,
            deliveries=state.deliveries,
            routes=list(action.routes),
            efficiency_metrics=action.efficiency_metrics,
            origin=WorkflowOrigin.FRESH,
            run_id=action.run_id,
        )

    if isinstance(action, OptimizationFailed):
        _require_step(state, type(action).__name__, WorkflowStep.VALIDATED)
        return WorkflowState(
            step=WorkflowStep.VALIDATED,
            vehicles=state.vehicles,
            deliveries=state.deliveries,
            error_message=action.message,
            origin=state.origin,
        )

    if isinstance(action, RecordLoaded):
        record = action.record
        if not record.vehicles or not record.deliveries or not record.routes:
            raise ValidationError(
                detail=f"saved optimization {record.id} is incomplete",
                context={"record_id": record.id},
            )
        return WorkflowState(
            step=WorkflowStep.OPTIMIZED,
            vehicles=record.vehicles,
            deliveries=record.deliveries,
            routes=record.routes,
            qr_codes=record.qr_codes,
            efficiency_metrics=record.efficiency_metrics,
            origin=WorkflowOrigin.LOADED_FROM_HISTORY,
            saved_record_id=record.id,
        )

    if isinstance(action, QRCodesGenerated):
        _require_step(state, type(action).__name__, WorkflowStep.OPTIMIZED)
        return state.model_copy(update={"qr_codes": list(action.qr_codes)})

    if isinstance(action, RecordSaved):
        _require_step(state, type(action).__name__, WorkflowStep.OPTIMIZED)
        return state.model_copy(update={"saved_record_id": action.record_id})

    raise TypeError(f"Unknown workflow action: {action!r}")


# =============================================================================
# State machine
# =============================================================================

class WorkflowStateMachine:
    """Drives one user's optimize workflow."""

    def __init__(
        self,
        user_id: str,
        engine: OptimizationEngine,
        ledger: UsageLedger,
        store: Optional[WorkflowStore] = None,
        state: Optional[WorkflowState] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._user_id = user_id
        self._engine = engine
        self._ledger = ledger
        self._store = store
        self._rng = rng
        if state is not None:
            self._state = state
        elif store is not None:
            self._state = store.load()
        else:
            self._state = WorkflowState()

    @property
    def state(self) -> WorkflowState:
        return self._state

    def _apply(self, action: Action) -> WorkflowState:
        previous = self._state.step
        self._state = transition(self._state, action)
        if self._store is not None:
            self._store.save(self._state)
        if previous != self._state.step:
            logger.info(
                "Workflow step: %s → %s (%s) user=%s",
                previous.value, self._state.step.value, type(action).__name__, self._user_id,
            )
        return self._state

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def check_upload(
        self, snapshot: SubscriptionSnapshot, vehicle_count: int, stop_count: int,
    ) -> QuotaDecision:
        """Count-only size check. Raises LimitExceeded when blocked."""
        decision = quota_gate.evaluate_upload(snapshot, vehicle_count, stop_count)
        if decision.blocked:
            logger.info(
                "Upload blocked: user=%s reason=%s current=%s limit=%s",
                self._user_id, decision.reason.value, decision.current_value, decision.limit_value,
            )
        return decision.raise_for_block()

    def submit_upload(self, vehicles: List[Vehicle], deliveries: List[Delivery]) -> WorkflowState:
        """Store validated upload data. Caller has already passed check_upload."""
        return self._apply(UploadValidated(vehicles, deliveries))

    # ------------------------------------------------------------------
    # Optimize
    # ------------------------------------------------------------------

    async def run_optimization(self, snapshot: SubscriptionSnapshot) -> WorkflowState:
        """Run the routing engine on the validated data.

        Raises InvalidTransition outside the validated step and LimitExceeded
        when the gate (or the ledger) blocks. Engine and transport failures
        leave the step at validated with error_message set.
        """
        state = self._state
        _require_step(state, "run_optimization", WorkflowStep.VALIDATED)

        vehicle_count, stop_count = len(state.vehicles), len(state.deliveries)
        quota_gate.evaluate(snapshot, vehicle_count, stop_count).raise_for_block()

        try:
            result = await self._engine.optimize(state.vehicles, state.deliveries)
        except NetworkError as e:
            logger.warning("Routing engine unreachable: user=%s error=%s", self._user_id, e)
            return self._apply(OptimizationFailed(SERVICE_UNAVAILABLE_MESSAGE))

        if not result.success or not result.routes:
            logger.info("Routing engine failed: user=%s message=%s", self._user_id, result.message)
            return self._apply(OptimizationFailed(result.message or OPTIMIZE_FAILED_MESSAGE))

        run_id = uuid.uuid4().hex
        try:
            await self._ledger.record_optimization(
                self._user_id, vehicle_count, stop_count, request_id=run_id,
            )
        except LimitExceeded as e:
            self._apply(OptimizationFailed(f"Usage limit reached ({e.reason})."))
            raise
        except NetworkError as e:
            logger.warning("Usage could not be recorded: user=%s error=%s", self._user_id, e)
            return self._apply(OptimizationFailed(SERVICE_UNAVAILABLE_MESSAGE))

        metrics = calculate_efficiency_metrics(result.routes, state.vehicles, self._rng)
        return self._apply(OptimizationCompleted(
            routes=result.routes,
            efficiency_metrics=metrics,
            run_id=run_id,
        ))

    # ------------------------------------------------------------------
    # History / results
    # ------------------------------------------------------------------

    def load_from_record(self, record: OptimizationRecord) -> WorkflowState:
        return self._apply(RecordLoaded(record))

    def attach_qr_codes(self, qr_codes: List[QRCode]) -> WorkflowState:
        return self._apply(QRCodesGenerated(qr_codes))

    def mark_saved(self, record_id: str) -> WorkflowState:
        return self._apply(RecordSaved(record_id))

    def reset(self) -> WorkflowState:
        return self._apply(Reset())
