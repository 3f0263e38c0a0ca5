"""Traceability analytics tests."""

from decimal import Decimal

import pytest

from agritrace.middleware.exceptions import NotFoundError
from agritrace.models.stage_record import QualityStatus, Stage
from agritrace.services import analytics


@pytest.mark.unit
@pytest.mark.asyncio
class TestSupplyChainSummary:

    async def test_three_stage_scenario(self, db_session, three_stage_batch):
        _, _, transport = three_stage_batch

        summary = await analytics.get_supply_chain_summary(db_session, "BATCH-1")

        assert summary.total_quantity_in == Decimal("100")
        assert summary.total_loss == Decimal("10")
        assert summary.cumulative_loss_percentage == Decimal("10.00")
        assert summary.current_stage == Stage.TRANSPORT
        assert summary.current_stage_id == transport.id
        assert summary.is_complete is False
        assert summary.total_stages == 3
        assert summary.completed_stages == 2
        assert summary.total_quantity_out == Decimal("90")
        assert summary.total_cost == Decimal("200.00")
        assert [s.status for s in summary.stages] == ["complete", "complete", "open"]
        assert summary.stages[0].duration_hours == 10.0
        assert summary.stages[1].duration_hours == 30.0
        assert summary.stages[2].duration_hours is None

    async def test_empty_batch_is_zeroed(self, db_session):
        summary = await analytics.get_supply_chain_summary(db_session, "EMPTY")

        assert summary.total_stages == 0
        assert summary.total_loss == Decimal("0")
        assert summary.current_stage is None
        assert summary.stages == []

    async def test_single_record_batch(self, db_session, stage_factory):
        await stage_factory(quantity_in=40)

        summary = await analytics.get_supply_chain_summary(db_session, "BATCH-1")

        assert summary.current_stage == Stage.HARVEST
        assert summary.cumulative_loss_percentage == Decimal("0.00")
        assert summary.total_quantity_out == Decimal("0")

    async def test_chain_complete_only_when_retail_completed(self, db_session, stage_factory):
        await stage_factory(stage=Stage.RETAIL, quantity_in=20, hours_ago=3)
        summary = await analytics.get_supply_chain_summary(db_session, "BATCH-1")
        assert summary.is_complete is False

        await stage_factory(
            batch_id="BATCH-2", stage=Stage.RETAIL, quantity_in=20, quantity_out=19,
            loss_quantity=1, hours_ago=3, duration_hours=2,
        )
        summary = await analytics.get_supply_chain_summary(db_session, "BATCH-2")
        assert summary.is_complete is True
        assert summary.current_stage == Stage.RETAIL

    async def test_quality_issues_counted(self, db_session, stage_factory):
        await stage_factory(quality_status=QualityStatus.REJECTED)
        summary = await analytics.get_supply_chain_summary(db_session, "BATCH-1")
        assert summary.quality_issue_count == 1


@pytest.mark.unit
@pytest.mark.asyncio
class TestProductionMetrics:

    async def test_in_progress_batch(self, db_session, three_stage_batch):
        metrics = await analytics.get_crop_production_metrics(db_session, "BATCH-1")

        assert metrics.status == "in progress"
        assert metrics.in_progress is True
        assert metrics.total_elapsed_hours is None
        assert metrics.total_cost == Decimal("200.00")
        assert metrics.average_cost_per_stage == Decimal("66.67")
        assert metrics.cost_per_unit == Decimal("2.00")
        assert metrics.stages_with_losses == 2
        assert metrics.overall_loss_percentage == Decimal("10.00")

    async def test_finished_batch_elapsed_time(self, db_session, stage_factory):
        await stage_factory(quantity_in=100, quantity_out=100, hours_ago=50, duration_hours=10)
        await stage_factory(
            stage=Stage.STORAGE, quantity_in=100, quantity_out=99, loss_quantity=1,
            hours_ago=38, duration_hours=8,
        )

        metrics = await analytics.get_crop_production_metrics(db_session, "BATCH-1")

        assert metrics.status == "complete"
        # First start 50h ago, last end 30h ago
        assert metrics.total_elapsed_hours == 20.0
        assert metrics.final_quantity == Decimal("99")

    async def test_no_data(self, db_session):
        metrics = await analytics.get_crop_production_metrics(db_session, "EMPTY")
        assert metrics.status == "no data"
        assert metrics.total_cost == Decimal("0")


@pytest.mark.unit
@pytest.mark.asyncio
class TestPerformanceAnalysis:

    async def test_bottleneck_longest_and_alerts(self, db_session, stage_factory):
        # HARVEST 4% loss, 10h; STORAGE 10% loss, 30h; TRANSPORT 5% loss, 2h
        await stage_factory(quantity_in=100, quantity_out=96, loss_quantity=4,
                            hours_ago=80, duration_hours=10)
        await stage_factory(stage=Stage.STORAGE, quantity_in=96, quantity_out=86.4,
                            loss_quantity=9.6, hours_ago=68, duration_hours=30)
        await stage_factory(stage=Stage.TRANSPORT, quantity_in=80, quantity_out=76,
                            loss_quantity=4, hours_ago=30, duration_hours=2)

        analysis = await analytics.get_performance_analysis(db_session, "BATCH-1")

        assert analysis.insufficient_data is False
        assert analysis.bottleneck.stage == Stage.STORAGE
        assert analysis.bottleneck.loss_percentage == Decimal("10.00")
        assert analysis.longest_stage.stage == Stage.STORAGE
        assert analysis.longest_stage.duration_hours == 30.0
        # Strictly above 5%: exactly 5% on TRANSPORT does not alert
        assert [a.stage for a in analysis.loss_alerts] == [Stage.STORAGE]
        assert analysis.min_efficiency == Decimal("90.00")
        assert analysis.max_efficiency == Decimal("96.00")
        assert analysis.quality_distribution == {"PENDING": 3}

    async def test_no_losses_means_no_bottleneck(self, db_session, stage_factory):
        await stage_factory(quantity_out=100, duration_hours=1)
        analysis = await analytics.get_performance_analysis(db_session, "BATCH-1")
        assert analysis.bottleneck is None
        assert analysis.loss_alerts == []

    async def test_empty_batch_declines(self, db_session):
        analysis = await analytics.get_performance_analysis(db_session, "EMPTY")
        assert analysis.insufficient_data is True
        assert analysis.bottleneck is None


@pytest.mark.unit
@pytest.mark.asyncio
class TestTrackingInfo:

    async def test_tracking_journey(self, db_session, three_stage_batch):
        harvest, _, _ = three_stage_batch

        info = await analytics.get_tracking_info(db_session, harvest.tracking_code)

        assert info.batch_id == "BATCH-1"
        assert info.current.id == harvest.id
        assert [j.stage for j in info.journey] == [Stage.HARVEST, Stage.STORAGE, Stage.TRANSPORT]
        assert info.completed_stages == 2
        assert info.progress_percentage == 66.7
        assert info.next_stage == Stage.STORAGE

    async def test_open_record_has_no_next_stage(self, db_session, three_stage_batch):
        _, _, transport = three_stage_batch
        info = await analytics.get_tracking_info(db_session, transport.tracking_code)
        assert info.next_stage is None

    async def test_unknown_tracking_code(self, db_session):
        with pytest.raises(NotFoundError):
            await analytics.get_tracking_info(db_session, "TRK-NOPE")


@pytest.mark.unit
@pytest.mark.asyncio
class TestFleetStatistics:

    async def test_stage_statistics_scenario(self, db_session, stage_factory):
        await stage_factory(batch_id="A", stage=Stage.HARVEST)
        await stage_factory(batch_id="B", stage=Stage.HARVEST)
        await stage_factory(batch_id="C", stage=Stage.STORAGE)

        assert await analytics.get_stage_statistics(db_session) == {"HARVEST": 2, "STORAGE": 1}

    async def test_quality_statistics(self, db_session, stage_factory):
        await stage_factory(batch_id="A", quality_status=QualityStatus.PASSED)
        await stage_factory(batch_id="B", quality_status=QualityStatus.PASSED)
        await stage_factory(batch_id="C", quality_status=QualityStatus.FLAGGED)

        assert await analytics.get_quality_statistics(db_session) == {"PASSED": 2, "FLAGGED": 1}

    async def test_duration_statistics(self, db_session, stage_factory):
        await stage_factory(batch_id="A", quantity_out=100, duration_hours=4)
        await stage_factory(batch_id="B", quantity_out=100, duration_hours=8)
        await stage_factory(batch_id="C")  # open, ignored

        stats = await analytics.get_stage_duration_statistics(db_session)

        assert list(stats) == ["HARVEST"]
        assert stats["HARVEST"].completed == 2
        assert stats["HARVEST"].average_hours == 6.0
        assert stats["HARVEST"].min_hours == 4.0
        assert stats["HARVEST"].max_hours == 8.0

    async def test_empty_store(self, db_session):
        assert await analytics.get_stage_statistics(db_session) == {}
        assert await analytics.get_quality_statistics(db_session) == {}
        assert await analytics.get_stage_duration_statistics(db_session) == {}
