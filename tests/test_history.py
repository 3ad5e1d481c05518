"""
Tests for HistoryAutoSaver — a fresh run is saved exactly once, runs
loaded from history are never saved again, and save failures are non-fatal.
"""

from unittest.mock import AsyncMock

import pytest

from repartilo.core.errors import CapacityExceeded, NetworkError
from repartilo.models.optimization import OptimizationRecord
from repartilo.models.workflow import WorkflowState
from repartilo.services.history import HistoryAutoSaver, build_record
from repartilo.services.workflow import (
    OptimizationCompleted,
    RecordLoaded,
    RecordSaved,
    UploadValidated,
    transition,
)


@pytest.fixture
def ledger():
    mock = AsyncMock()
    mock.save_optimization_record.return_value = "rec-1"
    return mock


@pytest.fixture
def saver(ledger):
    return HistoryAutoSaver(ledger, "user-1")


@pytest.fixture
def fresh(vehicles, deliveries, routes):
    state = transition(WorkflowState(), UploadValidated(vehicles, deliveries))
    return transition(state, OptimizationCompleted(routes, None, run_id="run-1"))


class TestAutoSave:
    @pytest.mark.asyncio
    async def test_fresh_run_saved(self, saver, ledger, fresh):
        assert await saver.auto_save(fresh) == "rec-1"
        ledger.save_optimization_record.assert_awaited_once()
        user_id, record = ledger.save_optimization_record.await_args.args
        assert user_id == "user-1"
        assert record.deliveries_count == 5
        assert record.totals.distance == pytest.approx(20.0)
        assert record.totals.duration == 6000
        assert ledger.save_optimization_record.await_args.kwargs == {"request_id": "run-1"}
        assert record.totals.vehicles_used == 2

    @pytest.mark.asyncio
    async def test_loaded_from_history_never_saved(self, saver, ledger, vehicles, deliveries, routes):
        record = OptimizationRecord(id="rec-0", vehicles=vehicles, deliveries=deliveries, routes=routes)
        loaded = transition(WorkflowState(), RecordLoaded(record))

        assert await saver.auto_save(loaded) is None
        assert await saver.auto_save(loaded) is None
        ledger.save_optimization_record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_saved_run_skipped(self, saver, ledger, fresh):
        saved = transition(fresh, RecordSaved("rec-1"))
        assert await saver.auto_save(saved) is None
        ledger.save_optimization_record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_optimized_skipped(self, saver, ledger):
        assert await saver.auto_save(WorkflowState()) is None
        ledger.save_optimization_record.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [CapacityExceeded(detail="full"), NetworkError("down")])
    async def test_failures_are_non_fatal(self, saver, ledger, fresh, error):
        ledger.save_optimization_record.side_effect = error
        assert await saver.auto_save(fresh) is None


def test_build_record_has_no_id(fresh):
    record = build_record(fresh, name="Monday")
    assert record.id is None
    assert record.name == "Monday"
    assert record.routes == fresh.routes
