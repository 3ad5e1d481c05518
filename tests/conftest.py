"""
Pytest configuration for Repartilo tests.
Points data, logs and the ledger database at a temp dir before any imports.
"""

import os
import tempfile

_test_data_dir = tempfile.mkdtemp(prefix="repartilo_test_")
os.environ.setdefault("REPARTILO_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("REPARTILO_LOG_DIR", os.path.join(_test_data_dir, "logs"))
os.environ.setdefault("REPARTILO_BILLING_WEBHOOK_SECRET", "test-webhook-secret")

import pytest

from repartilo.core.database import build_engine, init_db
from repartilo.core.errors.registry import error_registry
from repartilo.models.optimization import (
    Delivery,
    OptimizationResult,
    RouteStep,
    Vehicle,
    VehicleRoute,
)
from repartilo.models.subscription import OverageTerms, SubscriptionSnapshot, Tier
from repartilo.services.sql_ledger import SqlUsageLedger

# Ensure ledger tables exist on the default engine (used by the API tests)
init_db()

# Load error registry so RepartiloError returns correct HTTP status codes
error_registry.load()


@pytest.fixture
def engine(tmp_path):
    """Isolated SQLite ledger database per test."""
    eng = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def sql_ledger(engine):
    return SqlUsageLedger(engine=engine, checkout_base_url="https://pay.test/checkout")


@pytest.fixture
def make_snapshot():
    """Factory for subscription snapshots; defaults to a free-plan user."""

    def _make(**overrides):
        overage = overrides.pop("overage", None)
        data = {
            "user_id": "user-1",
            "tier": Tier.FREE,
            "monthly_route_limit": 10,
            "current_monthly_usage": 0,
            "max_vehicles_per_optimization": 2,
            "max_stops_per_route": 25,
        }
        data.update(overrides)
        return SubscriptionSnapshot(overage=overage or OverageTerms(), **data)

    return _make


@pytest.fixture
def vehicles():
    return [
        Vehicle(name="Van 1", capacity=100, start_address="Depot", start_lat=40.41, start_lon=-3.70),
        Vehicle(name="Van 2", capacity=80, start_address="Depot", start_lat=40.41, start_lon=-3.70),
    ]


@pytest.fixture
def deliveries():
    return [
        Delivery(address=f"Calle Mayor {i}", packages=5, customer_name=f"Customer {i}",
                 lat=40.41 + i / 1000, lon=-3.70 - i / 1000)
        for i in range(1, 6)
    ]


@pytest.fixture
def routes():
    def _steps(n):
        return (
            [RouteStep(type="start", location=[-3.70, 40.41])]
            + [RouteStep(type="job", location=[-3.70, 40.41], packages=5) for _ in range(n)]
            + [RouteStep(type="end", location=[-3.70, 40.41])]
        )

    return [
        VehicleRoute(vehicle_name="Van 1", steps=_steps(3), distance=12500, duration=3600, load=15),
        VehicleRoute(vehicle_name="Van 2", steps=_steps(2), distance=7500, duration=2400, load=10),
    ]


@pytest.fixture
def optimization_result(routes):
    return OptimizationResult(
        success=True,
        message="ok",
        routes=routes,
        total_distance=20000,
        total_duration=6000,
        vehicles_used=2,
    )
