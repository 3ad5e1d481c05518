"""
History auto-save — persist a fresh optimization run exactly once.

A run is skipped when it was loaded from history (it already has a record)
or when it has already been saved (``saved_record_id`` is set). Failures are
non-fatal: the results stay on screen and nothing is retried.
"""

from __future__ import annotations

import logging
from typing import Optional

from repartilo.core.errors import CapacityExceeded, NetworkError
from repartilo.models.optimization import OptimizationRecord, OptimizationTotals
from repartilo.models.workflow import WorkflowOrigin, WorkflowState, WorkflowStep
from repartilo.services.ledger import UsageLedger

logger = logging.getLogger(__name__)


def build_record(state: WorkflowState, name: Optional[str] = None) -> OptimizationRecord:
    """Snapshot the displayed run as an OptimizationRecord (no id yet)."""
    return OptimizationRecord(
        name=name,
        vehicles=state.vehicles,
        deliveries=state.deliveries,
        routes=state.routes,
        qr_codes=state.qr_codes,
        efficiency_metrics=state.efficiency_metrics,
        totals=OptimizationTotals.from_routes(state.routes),
        deliveries_count=len(state.deliveries),
    )


class HistoryAutoSaver:
    def __init__(self, ledger: UsageLedger, user_id: str) -> None:
        self._ledger = ledger
        self._user_id = user_id

    async def auto_save(self, state: WorkflowState) -> Optional[str]:
        """Save *state* to history. Returns the new record id, or None if skipped or failed."""
        if state.step != WorkflowStep.OPTIMIZED:
            logger.debug("Auto-save skipped: step=%s", state.step.value)
            return None
        if state.origin == WorkflowOrigin.LOADED_FROM_HISTORY:
            logger.info("Auto-save skipped: viewing saved optimization %s", state.saved_record_id)
            return None
        if state.saved_record_id is not None:
            logger.info("Auto-save skipped: run %s already saved as %s", state.run_id, state.saved_record_id)
            return None

        try:
            record_id = await self._ledger.save_optimization_record(
                self._user_id, build_record(state), request_id=state.run_id,
            )
        except CapacityExceeded as e:
            logger.warning("Auto-save failed, history full: user=%s %s", self._user_id, e)
            return None
        except NetworkError as e:
            logger.warning("Auto-save failed, ledger unreachable: user=%s %s", self._user_id, e)
            return None

        logger.info("Auto-saved run %s as %s: user=%s", state.run_id, record_id, self._user_id)
        return record_id
