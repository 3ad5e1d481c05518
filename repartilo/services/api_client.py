"""
API Client — HTTP clients for the ledger API and the routing service.
=====================================================================

Wraps the ledger endpoints (GET /api/user/me, /api/v1/optimizations/*,
POST /api/billing/checkout) and the routing endpoint
(POST /api/v1/optimize-routes) with retry + backoff on transport errors.

STATUS MAPPING:
    2xx            → parsed body
    402 / 403      → LimitExceeded (reason from the error code in the body)
    404            → RecordNotFound
    409            → CapacityExceeded
    transport / 5xx / anything else → NetworkError

IDEMPOTENCY:
    Transport errors are retried, including after the server may already
    have committed. record-usage and save therefore always carry a
    request_id (the caller's run id, or a generated one shared by every
    attempt) so the ledger replays the first result instead of counting or
    saving twice.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, List, Optional

import httpx

from repartilo.config import settings
from repartilo.core.errors import (
    CapacityExceeded,
    LimitExceeded,
    NetworkError,
    RecordNotFound,
)
from repartilo.models.optimization import (
    Delivery,
    OptimizationRecord,
    OptimizationResult,
    OptimizationSummary,
    Vehicle,
)
from repartilo.models.subscription import SubscriptionSnapshot, Tier
from repartilo.services.quota_gate import QuotaDecision, QuotaOutcome, QuotaReason

logger = logging.getLogger(__name__)

RETRY_DELAYS = [1.0, 3.0]  # Exponential backoff: 1s, 3s


def _make_request_id(request_id: Optional[str]) -> str:
    return request_id or f"rp:{uuid.uuid4().hex}"


class ApiClient:
    """Async HTTP client base with retries on transport errors."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = (base_url or settings.api_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.api_timeout_s
        self._retries = retries if retries is not None else settings.api_retries
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Any] = None,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> Any:
        """Make an HTTP request with retries and backoff; map errors."""
        url = f"{self._base_url}{path}"
        last_exc: Optional[Exception] = None

        for attempt in range(1 + self._retries):
            try:
                async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                    resp = await client.request(
                        method, url, json=json, params=params, headers=headers or {},
                    )
                return self._handle_response(method, path, resp)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_exc = e
                if attempt < self._retries:
                    delay = RETRY_DELAYS[attempt] if attempt < len(RETRY_DELAYS) else RETRY_DELAYS[-1]
                    logger.warning(
                        "API retry %d/%d for %s %s: %s (wait %.1fs)",
                        attempt + 1, self._retries, method, path, e, delay,
                    )
                    await asyncio.sleep(delay)

        logger.error("API failed after %d attempts: %s %s: %s", 1 + self._retries, method, path, last_exc)
        raise NetworkError(detail=f"{method} {path}: {last_exc}")

    def _handle_response(self, method: str, path: str, resp: httpx.Response) -> Any:
        status_code = resp.status_code
        try:
            data = resp.json()
        except ValueError:
            data = None

        if 200 <= status_code < 300:
            return data

        error = data.get("error", {}) if isinstance(data, dict) else {}
        code = error.get("code") if isinstance(error, dict) else None
        message = (error.get("message") if isinstance(error, dict) else None) or resp.text[:200]

        if status_code in (402, 403) and code in LimitExceeded.CODES.values():
            context = error.get("context") or {}
            raise LimitExceeded.from_code(
                code, detail=message, current_value=context.get("current"), limit_value=context.get("limit"),
            )
        if status_code == 404:
            raise RecordNotFound(detail=f"{method} {path}: {message}")
        if status_code == 409:
            raise CapacityExceeded(detail=message)

        logger.error(
            "Unexpected status from API: %s %s status=%d body=%s",
            method, path, status_code, resp.text[:200],
        )
        raise NetworkError(detail=f"{method} {path}: HTTP {status_code}", status_code=status_code)


class HttpUsageLedger(ApiClient):
    """UsageLedger over the ledger HTTP API."""

    @staticmethod
    def _user_headers(user_id: str) -> dict:
        return {"X-User-Id": user_id}

    async def get_snapshot(self, user_id: str) -> SubscriptionSnapshot:
        data = await self._request("GET", "/api/user/me", headers=self._user_headers(user_id))
        return SubscriptionSnapshot.from_api(data)

    async def record_optimization(
        self, user_id: str, vehicle_count: int, stop_count: int, request_id: Optional[str] = None,
    ) -> QuotaDecision:
        data = await self._request(
            "POST",
            "/api/v1/optimizations/record-usage",
            json={
                "vehicle_count": vehicle_count,
                "stop_count": stop_count,
                "request_id": _make_request_id(request_id),
            },
            headers=self._user_headers(user_id),
        )
        return QuotaDecision(
            outcome=QuotaOutcome(data["outcome"]),
            reason=QuotaReason(data.get("reason", QuotaReason.NONE.value)),
            current_value=data.get("current_value"),
            limit_value=data.get("limit_value"),
        )

    async def list_optimization_records(
        self, user_id: str, limit: int = 20, offset: int = 0,
    ) -> List[OptimizationSummary]:
        data = await self._request(
            "GET",
            "/api/v1/optimizations/list",
            params={"limit": limit, "offset": offset},
            headers=self._user_headers(user_id),
        )
        return [OptimizationSummary.model_validate(item) for item in data]

    async def get_optimization_record(self, user_id: str, record_id: str) -> OptimizationRecord:
        data = await self._request(
            "GET", f"/api/v1/optimizations/{record_id}", headers=self._user_headers(user_id),
        )
        return OptimizationRecord.model_validate(data)

    async def count_optimization_records(self, user_id: str) -> int:
        data = await self._request(
            "GET", "/api/v1/optimizations/count", headers=self._user_headers(user_id),
        )
        return int(data["count"])

    async def save_optimization_record(
        self, user_id: str, record: OptimizationRecord, request_id: Optional[str] = None,
    ) -> str:
        payload = record.model_dump(mode="json", exclude={"id", "created_at"})
        payload["request_id"] = _make_request_id(request_id)
        data = await self._request(
            "POST",
            "/api/v1/optimizations/save",
            json=payload,
            headers=self._user_headers(user_id),
        )
        return data["id"]

    async def rename_optimization_record(self, user_id: str, record_id: str, name: str) -> None:
        await self._request(
            "PUT",
            f"/api/v1/optimizations/{record_id}/name",
            json={"name": name},
            headers=self._user_headers(user_id),
        )

    async def delete_optimization_record(self, user_id: str, record_id: str) -> None:
        await self._request(
            "DELETE", f"/api/v1/optimizations/{record_id}", headers=self._user_headers(user_id),
        )

    async def create_checkout_session(self, user_id: str, tier: Tier) -> str:
        data = await self._request(
            "POST",
            "/api/billing/checkout",
            json={"tier": Tier(tier).value},
            headers=self._user_headers(user_id),
        )
        return data["url"]


class HttpOptimizationEngine(ApiClient):
    """OptimizationEngine backed by the external routing service."""

    def __init__(self, *args, auth_token: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._auth_token = auth_token

    async def optimize(
        self, vehicles: List[Vehicle], deliveries: List[Delivery],
    ) -> OptimizationResult:
        headers = {"Authorization": f"Bearer {self._auth_token}"} if self._auth_token else {}
        data = await self._request(
            "POST",
            "/api/v1/optimize-routes",
            json={
                "vehicles": [v.model_dump(mode="json") for v in vehicles],
                "deliveries": [d.model_dump(mode="json") for d in deliveries],
            },
            headers=headers,
        )
        return OptimizationResult.model_validate(data)
