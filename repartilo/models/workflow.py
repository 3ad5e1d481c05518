"""
Workflow State
==============

Immutable value describing where a user is in the optimize pipeline:

    upload ──submit──▶ validated ──optimize──▶ optimized
      ▲                                            │
      └───────────────────reset────────────────────┘

Only the transition functions in repartilo.services.workflow produce new
states; this module just defines the shape and its invariants.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from repartilo.models.optimization import (
    Delivery,
    EfficiencyMetrics,
    QRCode,
    Vehicle,
    VehicleRoute,
)


class WorkflowStep(str, Enum):
    UPLOAD = "upload"
    VALIDATED = "validated"
    OPTIMIZED = "optimized"


class WorkflowOrigin(str, Enum):
    """Where the displayed data came from."""
    FRESH = "fresh"
    LOADED_FROM_HISTORY = "loaded_from_history"


class WorkflowState(BaseModel):
    step: WorkflowStep = WorkflowStep.UPLOAD
    vehicles: List[Vehicle] = Field(default_factory=list)
    deliveries: List[Delivery] = Field(default_factory=list)
    routes: List[VehicleRoute] = Field(default_factory=list)
    qr_codes: List[QRCode] = Field(default_factory=list)
    efficiency_metrics: Optional[EfficiencyMetrics] = None
    error_message: Optional[str] = None
    origin: WorkflowOrigin = WorkflowOrigin.FRESH

    # Identity of the optimization run currently displayed, and the ledger
    # id once that run has been saved to history.
    run_id: Optional[str] = None
    saved_record_id: Optional[str] = None

    model_config = {"frozen": True}

    def invariant_violations(self) -> List[str]:
        problems: List[str] = []
        if self.step == WorkflowStep.UPLOAD:
            if self.vehicles or self.deliveries or self.routes or self.qr_codes:
                problems.append("upload step carries data")
        if self.step in (WorkflowStep.VALIDATED, WorkflowStep.OPTIMIZED):
            if not self.vehicles or not self.deliveries:
                problems.append(f"{self.step.value} step without vehicles and deliveries")
        if self.step == WorkflowStep.VALIDATED and self.routes:
            problems.append("validated step carries routes")
        if self.step == WorkflowStep.OPTIMIZED and not self.routes:
            problems.append("optimized step without routes")
        return problems
