"""
Optimization Models
===================

Payloads exchanged with the routing service and the history store:
- Vehicle / Delivery: validated upload rows (parsing + geocoding happen upstream)
- VehicleRoute / RouteStep: routing service output
- QRCode: per-vehicle navigation link rendered by the QR generator
- EfficiencyMetrics: presentation-only savings percentages
- OptimizationRecord / OptimizationSummary: saved history entries
- SavedOptimization: SQLModel table behind the reference ledger
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field as PydanticField
from sqlalchemy import UniqueConstraint
from sqlmodel import JSON, Column, Field, SQLModel


class Vehicle(BaseModel):
    name: str
    capacity: int
    start_address: str
    end_address: Optional[str] = None
    start_lat: float
    start_lon: float
    end_lat: Optional[float] = None
    end_lon: Optional[float] = None

    model_config = {"frozen": True}


class Delivery(BaseModel):
    address: str
    packages: int
    customer_name: str
    lat: float
    lon: float
    confidence: float = 10.0  # geocoder confidence, 0-10

    model_config = {"frozen": True}


class RouteStep(BaseModel):
    type: str  # start | job | end
    location: List[float]  # [lon, lat]
    address: Optional[str] = None
    customer_name: Optional[str] = None
    packages: Optional[int] = None
    arrival: Optional[int] = None
    duration: Optional[int] = None

    model_config = {"frozen": True}


class VehicleRoute(BaseModel):
    vehicle_name: str
    steps: List[RouteStep] = PydanticField(default_factory=list)
    distance: float = 0.0  # meters
    duration: float = 0.0  # seconds
    load: int = 0
    geometry: Optional[str] = None

    model_config = {"frozen": True}

    @property
    def job_count(self) -> int:
        return sum(1 for step in self.steps if step.type == "job")


class QRCode(BaseModel):
    vehicle_name: str
    qr_code_base64: str
    google_maps_url: str

    model_config = {"frozen": True}


class EfficiencyMetrics(BaseModel):
    """Estimated savings percentages shown next to an optimized plan."""

    distance_saving: int
    time_saving: int
    fuel_saving: int

    model_config = {"frozen": True}


class UnassignedDelivery(BaseModel):
    customer_name: str
    address: str
    packages: int
    reason: str


class OptimizationResult(BaseModel):
    """Response of the external routing service."""

    success: bool
    message: str = ""
    routes: List[VehicleRoute] = PydanticField(default_factory=list)
    unassigned: List[UnassignedDelivery] = PydanticField(default_factory=list)
    total_distance: float = 0.0
    total_duration: float = 0.0
    vehicles_used: int = 0


class OptimizationTotals(BaseModel):
    distance: float = 0.0  # km
    duration: float = 0.0  # seconds
    vehicles_used: int = 0

    model_config = {"frozen": True}

    @classmethod
    def from_routes(cls, routes: List[VehicleRoute]) -> "OptimizationTotals":
        return cls(
            distance=sum(r.distance for r in routes) / 1000,
            duration=sum(r.duration for r in routes),
            vehicles_used=sum(1 for r in routes if r.steps),
        )


class OptimizationSummary(BaseModel):
    """History listing row (no data sets)."""

    id: str
    name: Optional[str] = None
    created_at: datetime
    totals: OptimizationTotals
    deliveries_count: int


class OptimizationRecord(BaseModel):
    """A persisted optimization run."""

    id: Optional[str] = None  # assigned by the ledger
    name: Optional[str] = None
    created_at: Optional[datetime] = None
    vehicles: List[Vehicle] = PydanticField(default_factory=list)
    deliveries: List[Delivery] = PydanticField(default_factory=list)
    routes: List[VehicleRoute] = PydanticField(default_factory=list)
    qr_codes: List[QRCode] = PydanticField(default_factory=list)
    efficiency_metrics: Optional[EfficiencyMetrics] = None
    totals: OptimizationTotals = PydanticField(default_factory=OptimizationTotals)
    deliveries_count: int = 0


# =============================================================================
# Ledger table
# =============================================================================

class SavedOptimization(SQLModel, table=True):
    """Saved optimization history entry (capped per user)."""

    __tablename__ = "saved_optimizations"
    __table_args__ = (UniqueConstraint("user_id", "request_id", name="uq_saved_optimizations_user_request"),)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: str = Field(index=True, max_length=128)
    request_id: Optional[str] = Field(default=None, nullable=True, max_length=128)
    name: Optional[str] = Field(default=None, nullable=True, max_length=255)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)

    total_distance: float = Field(default=0.0)
    total_duration: float = Field(default=0.0)
    vehicles_used: int = Field(default=0)
    deliveries_count: int = Field(default=0)

    vehicles: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    deliveries: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    routes: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    qr_codes: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    efficiency_metrics: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))

    @classmethod
    def from_record(
        cls, user_id: str, record: OptimizationRecord, request_id: Optional[str] = None,
    ) -> "SavedOptimization":
        return cls(
            user_id=user_id,
            request_id=request_id,
            name=record.name,
            total_distance=record.totals.distance,
            total_duration=record.totals.duration,
            vehicles_used=record.totals.vehicles_used,
            deliveries_count=record.deliveries_count or len(record.deliveries),
            vehicles=[v.model_dump() for v in record.vehicles],
            deliveries=[d.model_dump() for d in record.deliveries],
            routes=[r.model_dump() for r in record.routes],
            qr_codes=[q.model_dump() for q in record.qr_codes],
            efficiency_metrics=record.efficiency_metrics.model_dump() if record.efficiency_metrics else None,
        )

    def totals(self) -> OptimizationTotals:
        return OptimizationTotals(
            distance=self.total_distance,
            duration=self.total_duration,
            vehicles_used=self.vehicles_used,
        )

    def to_summary(self) -> OptimizationSummary:
        return OptimizationSummary(
            id=self.id,
            name=self.name,
            created_at=self.created_at,
            totals=self.totals(),
            deliveries_count=self.deliveries_count,
        )

    def to_record(self) -> OptimizationRecord:
        return OptimizationRecord(
            id=self.id,
            name=self.name,
            created_at=self.created_at,
            vehicles=self.vehicles,
            deliveries=self.deliveries,
            routes=self.routes,
            qr_codes=self.qr_codes,
            efficiency_metrics=self.efficiency_metrics,
            totals=self.totals(),
            deliveries_count=self.deliveries_count,
        )
