"""
Efficiency metrics — only the bounds and the fallback are contractual.
"""

import random

import pytest

from repartilo.models.optimization import RouteStep, Vehicle, VehicleRoute
from repartilo.services.efficiency import FALLBACK_METRICS, calculate_efficiency_metrics


def _route(name, jobs, load):
    steps = [RouteStep(type="job", location=[0.0, 0.0]) for _ in range(jobs)]
    return VehicleRoute(vehicle_name=name, steps=steps, load=load)


def test_no_used_routes_falls_back(vehicles):
    empty = [VehicleRoute(vehicle_name="Van 1"), VehicleRoute(vehicle_name="Van 2")]
    assert calculate_efficiency_metrics(empty, vehicles) == FALLBACK_METRICS
    assert (FALLBACK_METRICS.distance_saving, FALLBACK_METRICS.time_saving,
            FALLBACK_METRICS.fuel_saving) == (40, 60, 35)


@pytest.mark.parametrize("seed", range(25))
def test_metrics_stay_in_bounds(seed):
    rng = random.Random(seed)
    fleet = [
        Vehicle(name=f"V{i}", capacity=rng.randint(1, 200), start_address="x", start_lat=0, start_lon=0)
        for i in range(rng.randint(1, 8))
    ]
    routes = [_route(v.name, rng.randint(0, 30), rng.randint(0, 500)) for v in fleet]

    metrics = calculate_efficiency_metrics(routes, fleet, rng)

    if not any(r.steps for r in routes):
        assert metrics == FALLBACK_METRICS
        return
    assert 30 <= metrics.distance_saving <= 55
    assert 50 <= metrics.time_saving <= 75
    assert 25 <= metrics.fuel_saving <= 50


def test_deterministic_with_seeded_rng(routes, vehicles):
    a = calculate_efficiency_metrics(routes, vehicles, random.Random(3))
    b = calculate_efficiency_metrics(routes, vehicles, random.Random(3))
    assert a == b


def test_unknown_vehicle_uses_default_capacity():
    metrics = calculate_efficiency_metrics([_route("ghost", 4, 50)], [], random.Random(0))
    assert 30 <= metrics.distance_saving <= 55
