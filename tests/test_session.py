"""
OptimizeSession Tests
=====================

End-to-end flows through the session facade against the in-process
reference ledger (LocalUsageLedger over SqlUsageLedger) and a mocked
routing engine.
"""

import random
from unittest.mock import AsyncMock, MagicMock

import pytest

from repartilo.core.errors import LimitExceeded
from repartilo.models.optimization import QRCode
from repartilo.models.subscription import SubscriptionStatus, Tier
from repartilo.models.workflow import WorkflowOrigin, WorkflowState, WorkflowStep
from repartilo.services.ledger import LocalUsageLedger
from repartilo.services.session import OptimizeSession
from repartilo.services.workflow_store import WorkflowStore

QR = [QRCode(vehicle_name="Van 1", qr_code_base64="aGk=", google_maps_url="https://maps.test")]


@pytest.fixture
def ledger(sql_ledger):
    return LocalUsageLedger(sql_ledger)


@pytest.fixture
def engine_mock(optimization_result):
    engine = AsyncMock()
    engine.optimize.return_value = optimization_result
    return engine


@pytest.fixture
def store(tmp_path):
    return WorkflowStore(path=str(tmp_path / "state.json"))


@pytest.fixture
def session(ledger, engine_mock, store):
    return OptimizeSession("user-1", ledger, engine_mock, store=store, sleep=AsyncMock(), rng=random.Random(1))


class TestOptimizeFlow:
    @pytest.mark.asyncio
    async def test_upload_optimize_autosave(self, session, sql_ledger, vehicles, deliveries):
        await session.upload(vehicles, deliveries)
        state = await session.optimize()
        assert state.step == WorkflowStep.OPTIMIZED
        assert session.cache.get().current_monthly_usage == 1

        state = await session.attach_qr_codes(QR)
        assert state.saved_record_id is not None
        assert sql_ledger.count_optimization_records("user-1") == 1

        # generating codes again for the same run does not save twice
        await session.attach_qr_codes(QR)
        assert sql_ledger.count_optimization_records("user-1") == 1

    @pytest.mark.asyncio
    async def test_upload_over_vehicle_limit(self, session, vehicles, deliveries):
        three = vehicles + [vehicles[0].model_copy(update={"name": "Van 3"})]
        with pytest.raises(LimitExceeded) as exc_info:
            await session.upload(three, deliveries)
        assert exc_info.value.reason == "vehicle_limit"
        assert session.state == WorkflowState()

    @pytest.mark.asyncio
    async def test_open_record_does_not_count_or_save(self, session, sql_ledger, vehicles, deliveries):
        await session.upload(vehicles, deliveries)
        await session.optimize()
        saved = await session.attach_qr_codes(QR)
        session.reset()

        state = await session.open_record(saved.saved_record_id)
        assert state.origin == WorkflowOrigin.LOADED_FROM_HISTORY
        await session.attach_qr_codes(QR)
        await session.attach_qr_codes(QR)

        assert sql_ledger.count_optimization_records("user-1") == 1
        assert sql_ledger.get_snapshot("user-1").current_monthly_usage == 1

    @pytest.mark.asyncio
    async def test_monthly_limit_blocks_before_engine(self, session, sql_ledger, engine_mock,
                                                      vehicles, deliveries):
        for _ in range(10):
            sql_ledger.record_optimization("user-1", 1, 1)
        await session.upload(vehicles, deliveries)
        with pytest.raises(LimitExceeded):
            await session.optimize()
        engine_mock.optimize.assert_not_awaited()
        assert session.state.step == WorkflowStep.VALIDATED

    @pytest.mark.asyncio
    async def test_reset_after_reload(self, session, store, vehicles, deliveries):
        await session.upload(vehicles, deliveries)
        await session.optimize()
        session.reset()
        assert store.load() == WorkflowState()


class TestCheckoutFlow:
    @pytest.mark.asyncio
    async def test_checkout_success_picks_up_new_tier(self, session, sql_ledger):
        await session.refresh_snapshot()
        url = await session.start_checkout(Tier.STARTER)
        assert "tier=starter" in url

        sql_ledger.apply_billing_update("user-1", Tier.STARTER, SubscriptionStatus.ACTIVE)
        reconciliation = session.handle_checkout_return(success=True)
        await session.reconciler.task

        assert reconciliation.start_tier == Tier.FREE
        assert session.cache.get().tier == Tier.STARTER
        await session.close()

    @pytest.mark.asyncio
    async def test_checkout_canceled_notifies(self, ledger, engine_mock):
        notify = MagicMock()
        session = OptimizeSession("user-2", ledger, engine_mock, notify=notify)
        await session.start_checkout(Tier.STARTER)
        assert session.handle_checkout_return(canceled=True) is None
        notify.assert_called_once_with("canceled")
        await session.close()
