"""
Ledger Router
=============

HTTP surface of the reference usage ledger:

1. Subscription: GET /api/user/me
2. Usage: POST /api/v1/optimizations/record-usage, GET /api/v1/usage/overage-charges
3. History: /api/v1/optimizations/{save,list,count,{id},{id}/name}
4. Billing: POST /api/billing/checkout, POST /api/webhooks/billing

Identity comes from the X-User-Id header set by the upstream auth proxy.
record-usage and save accept a request_id; a repeated id replays the first
result, so clients may retry them after a lost response.
Quota and history errors propagate as RepartiloError and are rendered by
the registry error handler (402/403 quota, 404 not found, 409 history full).
"""

import hmac
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query, Response, status
from pydantic import BaseModel, Field

from repartilo.config import settings
from repartilo.core.errors import MissingUser, WebhookRejected
from repartilo.core.structured_logging import user_id_var
from repartilo.models.optimization import (
    Delivery,
    EfficiencyMetrics,
    OptimizationRecord,
    OptimizationSummary,
    OptimizationTotals,
    QRCode,
    Vehicle,
    VehicleRoute,
)
from repartilo.models.subscription import SubscriptionStatus, Tier
from repartilo.services.ledger import LocalUsageLedger
from repartilo.services.sql_ledger import get_sql_ledger

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class RecordUsageRequest(BaseModel):
    vehicle_count: int = Field(..., ge=0)
    stop_count: int = Field(..., ge=0)
    request_id: Optional[str] = Field(default=None, max_length=128)


class RecordUsageResponse(BaseModel):
    outcome: str
    reason: str
    current_value: Optional[int] = None
    limit_value: Optional[int] = None


class SaveOptimizationRequest(BaseModel):
    request_id: Optional[str] = Field(default=None, max_length=128)
    name: Optional[str] = Field(default=None, max_length=255)
    vehicles: List[Vehicle]
    deliveries: List[Delivery]
    routes: List[VehicleRoute]
    qr_codes: List[QRCode] = Field(default_factory=list)
    efficiency_metrics: Optional[EfficiencyMetrics] = None
    totals: Optional[OptimizationTotals] = None
    deliveries_count: int = 0

    def to_record(self) -> OptimizationRecord:
        return OptimizationRecord(
            name=self.name,
            vehicles=self.vehicles,
            deliveries=self.deliveries,
            routes=self.routes,
            qr_codes=self.qr_codes,
            efficiency_metrics=self.efficiency_metrics,
            totals=self.totals or OptimizationTotals.from_routes(self.routes),
            deliveries_count=self.deliveries_count or len(self.deliveries),
        )


class SaveOptimizationResponse(BaseModel):
    id: str


class RenameRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class CountResponse(BaseModel):
    count: int


class OverageChargeResponse(BaseModel):
    usage_month: str
    amount_cents: int
    vehicle_count: int
    stop_count: int
    created_at: datetime


class CheckoutRequest(BaseModel):
    tier: Tier


class CheckoutResponse(BaseModel):
    url: str


class BillingWebhookEvent(BaseModel):
    user_id: str
    tier: Tier
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_end: Optional[datetime] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_ledger() -> LocalUsageLedger:
    return LocalUsageLedger(get_sql_ledger())


async def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        raise MissingUser(detail="X-User-Id header missing")
    user_id_var.set(x_user_id)
    return x_user_id


def verify_webhook_secret(x_webhook_secret: Optional[str] = Header(default=None)) -> None:
    expected = settings.billing_webhook_secret
    if not expected:
        raise WebhookRejected(detail="billing webhook secret not configured")
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected):
        raise WebhookRejected(detail="webhook secret mismatch")


router = APIRouter()


# ---------------------------------------------------------------------------
# Subscription / usage
# ---------------------------------------------------------------------------

@router.get("/api/user/me", summary="Current subscription snapshot")
async def get_me(
    user_id: str = Depends(get_user_id),
    ledger: LocalUsageLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    snapshot = await ledger.get_snapshot(user_id)
    return snapshot.to_api()


@router.post(
    "/api/v1/optimizations/record-usage",
    response_model=RecordUsageResponse,
    summary="Count one successful optimization",
)
async def record_usage(
    body: RecordUsageRequest,
    user_id: str = Depends(get_user_id),
    ledger: LocalUsageLedger = Depends(get_ledger),
):
    decision = await ledger.record_optimization(
        user_id, body.vehicle_count, body.stop_count, request_id=body.request_id,
    )
    return RecordUsageResponse(
        outcome=decision.outcome.value,
        reason=decision.reason.value,
        current_value=decision.current_value,
        limit_value=decision.limit_value,
    )


@router.get(
    "/api/v1/usage/overage-charges",
    response_model=List[OverageChargeResponse],
    summary="This month's overage charges",
)
async def list_overage_charges(
    user_id: str = Depends(get_user_id),
    ledger: LocalUsageLedger = Depends(get_ledger),
):
    charges = await ledger.list_overage_charges(user_id)
    return [
        OverageChargeResponse(
            usage_month=c.usage_month,
            amount_cents=c.amount_cents,
            vehicle_count=c.vehicle_count,
            stop_count=c.stop_count,
            created_at=c.created_at,
        )
        for c in charges
    ]


# ---------------------------------------------------------------------------
# Saved optimization history
# ---------------------------------------------------------------------------

@router.post(
    "/api/v1/optimizations/save",
    response_model=SaveOptimizationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def save_optimization(
    body: SaveOptimizationRequest,
    user_id: str = Depends(get_user_id),
    ledger: LocalUsageLedger = Depends(get_ledger),
):
    record_id = await ledger.save_optimization_record(user_id, body.to_record(), request_id=body.request_id)
    return SaveOptimizationResponse(id=record_id)


@router.get("/api/v1/optimizations/list", response_model=List[OptimizationSummary])
async def list_optimizations(
    limit: int = Query(default=settings.history_page_size, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(get_user_id),
    ledger: LocalUsageLedger = Depends(get_ledger),
):
    return await ledger.list_optimization_records(user_id, limit, offset)


@router.get("/api/v1/optimizations/count", response_model=CountResponse)
async def count_optimizations(
    user_id: str = Depends(get_user_id),
    ledger: LocalUsageLedger = Depends(get_ledger),
):
    return CountResponse(count=await ledger.count_optimization_records(user_id))


@router.get("/api/v1/optimizations/{record_id}", response_model=OptimizationRecord)
async def get_optimization(
    record_id: str,
    user_id: str = Depends(get_user_id),
    ledger: LocalUsageLedger = Depends(get_ledger),
):
    return await ledger.get_optimization_record(user_id, record_id)


@router.put("/api/v1/optimizations/{record_id}/name")
async def rename_optimization(
    record_id: str,
    body: RenameRequest,
    user_id: str = Depends(get_user_id),
    ledger: LocalUsageLedger = Depends(get_ledger),
) -> Dict[str, str]:
    await ledger.rename_optimization_record(user_id, record_id, body.name)
    return {"id": record_id, "name": body.name}


@router.delete("/api/v1/optimizations/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_optimization(
    record_id: str,
    user_id: str = Depends(get_user_id),
    ledger: LocalUsageLedger = Depends(get_ledger),
) -> Response:
    await ledger.delete_optimization_record(user_id, record_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------

@router.post("/api/billing/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    user_id: str = Depends(get_user_id),
    ledger: LocalUsageLedger = Depends(get_ledger),
):
    url = await ledger.create_checkout_session(user_id, body.tier)
    logger.info("Checkout session created: user=%s tier=%s", user_id, body.tier.value)
    return CheckoutResponse(url=url)


@router.post("/api/webhooks/billing", dependencies=[Depends(verify_webhook_secret)])
async def billing_webhook(
    event: BillingWebhookEvent,
    ledger: LocalUsageLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    snapshot = await ledger.apply_billing_update(
        event.user_id,
        event.tier,
        event.status,
        current_period_end=event.current_period_end,
        billing_customer_id=event.customer_id,
        billing_subscription_id=event.subscription_id,
    )
    return {"received": True, "tier": snapshot.tier.value, "status": snapshot.status.value}
