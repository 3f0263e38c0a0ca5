"""Stage record store tests: create/update rules, queries, bulk and retention."""

from datetime import timedelta
from decimal import Decimal

import pytest

from agritrace.middleware.exceptions import (
    ConservationError,
    IllegalStateError,
    NotFoundError,
    ValidationError,
)
from agritrace.models.stage_record import QualityStatus, Stage, utcnow
from agritrace.schemas.stage import StageFilter, StageRecordCreate
from agritrace.services import stage_store


def _body(**overrides) -> StageRecordCreate:
    data = {
        "batch_id": "BATCH-1",
        "stage": Stage.HARVEST,
        "location": "Farm Field 7",
        "responsible_party": "Jane Grower",
        "quantity_in": Decimal("100"),
    }
    data.update(overrides)
    return StageRecordCreate(**data)


@pytest.mark.unit
@pytest.mark.asyncio
class TestCreate:

    async def test_create_assigns_identity(self, db_session):
        record = await stage_store.create_stage(db_session, _body(stage=Stage.TRANSPORT))

        assert record.id.startswith("SC") and len(record.id) == 14
        assert record.tracking_code.startswith("TRK") and len(record.tracking_code) == 14
        assert record.stage_order == Stage.TRANSPORT.order
        assert record.loss_quantity == Decimal("0")
        assert record.quality_status == QualityStatus.PENDING
        assert record.created_at is not None

    async def test_rejection_scenario(self, db_session):
        with pytest.raises(ConservationError) as exc_info:
            await stage_store.create_stage(
                db_session,
                _body(
                    quantity_in=Decimal("50"),
                    quantity_out=Decimal("40"),
                    loss_quantity=Decimal("15"),
                ),
            )
        assert "40.00" in exc_info.value.message
        assert "55.00" in exc_info.value.message
        assert await stage_store.count_stages(db_session) == 0

    async def test_blank_location_rejected(self, db_session):
        with pytest.raises(ValidationError, match="location"):
            await stage_store.create_stage(db_session, _body(location="   "))

    async def test_end_before_start_rejected(self, db_session):
        start = utcnow() - timedelta(hours=2)
        with pytest.raises(ValidationError, match="before its start"):
            await stage_store.create_stage(
                db_session,
                _body(
                    quantity_out=Decimal("100"),
                    stage_start_date=start,
                    stage_end_date=start - timedelta(hours=1),
                ),
            )

    async def test_completed_record_requires_quantity_out(self, db_session):
        with pytest.raises(ValidationError, match="quantity_out"):
            await stage_store.create_stage(
                db_session,
                _body(stage_start_date=utcnow() - timedelta(hours=3), stage_end_date=utcnow()),
            )

    async def test_duplicate_tracking_code_rejected(self, db_session):
        await stage_store.create_stage(db_session, _body(tracking_code="TRK-FIXED"))
        with pytest.raises(ValidationError) as exc_info:
            await stage_store.create_stage(
                db_session, _body(batch_id="BATCH-2", tracking_code="TRK-FIXED")
            )
        assert exc_info.value.error_code == "DUPLICATE_RECORD"

    async def test_second_open_record_at_same_stage_rejected(self, db_session):
        await stage_store.create_stage(db_session, _body())
        with pytest.raises(ValidationError, match="already has an open HARVEST"):
            await stage_store.create_stage(db_session, _body())

    async def test_open_stage_index_backs_up_the_check(self, db_session, monkeypatch):
        # A concurrent writer that passed the check before our insert landed
        async def _no_check(*args, **kwargs):
            return None

        monkeypatch.setattr(stage_store, "_check_single_open", _no_check)
        await stage_store.create_stage(db_session, _body())

        with pytest.raises(ValidationError) as exc_info:
            await stage_store.create_stage(db_session, _body())
        assert exc_info.value.error_code == "DUPLICATE_RECORD"
        assert exc_info.value.details == {"batch_id": "BATCH-1", "stage": "HARVEST"}

    async def test_completed_records_may_share_a_stage(self, db_session):
        start = utcnow() - timedelta(hours=5)
        for _ in range(2):
            await stage_store.create_stage(
                db_session,
                _body(quantity_out=Decimal("100"), stage_start_date=start,
                      stage_end_date=start + timedelta(hours=1)),
            )
        await stage_store.create_stage(db_session, _body())

        assert await stage_store.count_stages(db_session, "BATCH-1") == 3

    async def test_late_upstream_record_must_cover_downstream(self, db_session, stage_factory):
        await stage_factory(stage=Stage.TRANSPORT, quantity_in=90, hours_ago=5)

        with pytest.raises(ValidationError, match="downstream TRANSPORT"):
            await stage_factory(
                stage=Stage.STORAGE, quantity_in=100, quantity_out=85, loss_quantity=15,
                hours_ago=20, duration_hours=10,
            )

    async def test_quantity_in_capped_by_predecessor_output(self, db_session, stage_factory):
        await stage_factory(quantity_in=100, quantity_out=80, loss_quantity=20, duration_hours=4)

        with pytest.raises(ValidationError, match="forwarded"):
            await stage_store.create_stage(
                db_session, _body(stage=Stage.STORAGE, quantity_in=Decimal("81"))
            )
        record = await stage_store.create_stage(
            db_session, _body(stage=Stage.STORAGE, quantity_in=Decimal("80"))
        )
        assert record.stage == Stage.STORAGE


@pytest.mark.unit
@pytest.mark.asyncio
class TestUpdate:

    async def test_text_patch(self, db_session, stage_factory):
        record = await stage_factory()
        updated = await stage_store.update_stage(
            db_session, record.id, {"handling_notes": "Kept shaded", "facility_name": "Shed 3"}
        )
        assert updated.handling_notes == "Kept shaded"
        assert updated.facility_name == "Shed 3"

    async def test_quantity_patch_revalidates_against_stored_values(
        self, db_session, stage_factory
    ):
        record = await stage_factory(quantity_in=100, quantity_out=90, loss_quantity=5, duration_hours=2)

        with pytest.raises(ConservationError):
            await stage_store.update_stage(db_session, record.id, {"loss_quantity": Decimal("11")})
        with pytest.raises(ConservationError):
            await stage_store.update_stage(db_session, record.id, {"quantity_in": Decimal("94")})

        updated = await stage_store.update_stage(
            db_session, record.id, {"loss_quantity": Decimal("10")}
        )
        assert updated.loss_quantity == Decimal("10")

    async def test_identity_fields_are_immutable(self, db_session, stage_factory):
        record = await stage_factory()
        for changes in ({"batch_id": "OTHER"}, {"stage": Stage.RETAIL}, {"stage_order": 6}):
            with pytest.raises(ValidationError, match="Immutable"):
                await stage_store.update_stage(db_session, record.id, changes)

    async def test_required_field_cannot_be_cleared(self, db_session, stage_factory):
        record = await stage_factory()
        with pytest.raises(ValidationError):
            await stage_store.update_stage(db_session, record.id, {"responsible_party": None})

    async def test_not_null_columns_cannot_be_cleared(self, db_session, stage_factory):
        record = await stage_factory()
        for name in ("quality_status", "tracking_code", "insurance_coverage", "unit"):
            with pytest.raises(ValidationError, match=f"cannot be cleared: {name}"):
                await stage_store.update_stage(db_session, record.id, {name: None})
        assert record.quality_status == QualityStatus.PENDING

    async def test_output_patch_must_cover_downstream_input(self, db_session, stage_factory):
        harvest = await stage_factory(quantity_in=100, hours_ago=10)
        await stage_factory(stage=Stage.STORAGE, quantity_in=80, hours_ago=2)

        with pytest.raises(ValidationError, match="downstream"):
            await stage_store.update_stage(
                db_session, harvest.id, {"quantity_out": Decimal("79")}
            )
        updated = await stage_store.update_stage(
            db_session, harvest.id, {"quantity_out": Decimal("80")}
        )
        assert updated.quantity_out == Decimal("80")

    async def test_update_unknown_id(self, db_session):
        with pytest.raises(NotFoundError):
            await stage_store.update_stage(db_session, "nope", {"handling_notes": "x"})

    async def test_locked_output_after_downstream_exists(self, db_session, three_stage_batch):
        harvest, _, _ = three_stage_batch

        with pytest.raises(IllegalStateError, match="quantity_out"):
            await stage_store.update_stage(
                db_session, harvest.id, {"quantity_out": Decimal("94")}
            )
        with pytest.raises(IllegalStateError):
            await stage_store.update_stage(db_session, harvest.id, {"stage_end_date": None})

        # Unlocked fields and unchanged locked values still go through
        updated = await stage_store.update_stage(
            db_session, harvest.id,
            {"quantity_out": Decimal("95"), "loss_reason": "Hail damage"},
        )
        assert updated.loss_reason == "Hail damage"


@pytest.mark.unit
@pytest.mark.asyncio
class TestQueries:

    async def test_list_batch_stages_in_pipeline_order(self, db_session, three_stage_batch):
        records = await stage_store.list_batch_stages(db_session, "BATCH-1")
        assert [r.stage for r in records] == [Stage.HARVEST, Stage.STORAGE, Stage.TRANSPORT]

    async def test_lookup_by_codes(self, db_session, stage_factory):
        record = await stage_factory(tracking_code="TRK-LOOKUP", transaction_id="TXN-1")

        assert (await stage_store.get_by_tracking_code(db_session, "TRK-LOOKUP")).id == record.id
        assert (await stage_store.get_by_transaction_id(db_session, "TXN-1")).id == record.id
        with pytest.raises(NotFoundError):
            await stage_store.get_by_tracking_code(db_session, "TRK-NONE")

    async def test_filters(self, db_session, stage_factory):
        await stage_factory(batch_id="A", location="Valley Farm", cost="10.00")
        await stage_factory(batch_id="B", location="Hill Farm", cost="50.00",
                            quantity_out=100, duration_hours=2)
        await stage_factory(batch_id="C", stage=Stage.STORAGE, location="Valley Depot",
                            cost="90.00", quality_status=QualityStatus.FLAGGED)

        items, total = await stage_store.find_with_filters(
            db_session, StageFilter(location="valley")
        )
        assert total == 2 and {r.batch_id for r in items} == {"A", "C"}

        items, total = await stage_store.find_with_filters(
            db_session, StageFilter(min_cost=Decimal("20"), max_cost=Decimal("60"))
        )
        assert [r.batch_id for r in items] == ["B"]

        items, _ = await stage_store.find_with_filters(db_session, StageFilter(completed=True))
        assert [r.batch_id for r in items] == ["B"]

        items, _ = await stage_store.find_with_filters(
            db_session, StageFilter(stage=Stage.STORAGE, quality_status=QualityStatus.FLAGGED)
        )
        assert [r.batch_id for r in items] == ["C"]

        items, total = await stage_store.find_with_filters(
            db_session, StageFilter(limit=1, offset=1)
        )
        assert total == 3 and len(items) == 1

    async def test_search(self, db_session, stage_factory):
        await stage_factory(batch_id="A", handling_notes="Washed in chlorine bath")
        await stage_factory(batch_id="B", facility_name="Chlorine-free Packhouse")
        await stage_factory(batch_id="C")

        items, total = await stage_store.search_stages(db_session, "CHLORINE")
        assert total == 2
        assert {r.batch_id for r in items} == {"A", "B"}

    async def test_incomplete_completed_and_active_at(self, db_session, stage_factory):
        done = await stage_factory(batch_id="A", quantity_out=100, hours_ago=30, duration_hours=10)
        running = await stage_factory(batch_id="B", hours_ago=5)

        assert [r.id for r in await stage_store.find_incomplete(db_session)] == [running.id]
        assert [r.id for r in await stage_store.find_completed(db_session)] == [done.id]

        active = await stage_store.find_active_at(db_session, utcnow() - timedelta(hours=25))
        assert [r.id for r in active] == [done.id]
        active = await stage_store.find_active_at(db_session, utcnow() - timedelta(hours=1))
        assert [r.id for r in active] == [running.id]


@pytest.mark.unit
@pytest.mark.asyncio
class TestBulkAndRetention:

    async def test_bulk_create(self, db_session):
        records = await stage_store.create_stages(
            db_session, [_body(batch_id=f"B{i}") for i in range(3)]
        )
        assert len(records) == 3
        assert await stage_store.count_stages(db_session) == 3

    async def test_bulk_create_reports_failing_index(self, db_session):
        with pytest.raises(ConservationError) as exc_info:
            await stage_store.create_stages(
                db_session,
                [_body(batch_id="ok"), _body(batch_id="bad", quantity_out=Decimal("101"))],
            )
        assert exc_info.value.details["index"] == 1

    async def test_bulk_update_and_delete(self, db_session, stage_factory):
        a = await stage_factory(batch_id="A")
        b = await stage_factory(batch_id="B")

        updated = await stage_store.update_stages(
            db_session,
            [(a.id, {"loss_quantity": Decimal("1")}), (b.id, {"cost": Decimal("7.50")})],
        )
        assert [r.id for r in updated] == [a.id, b.id]
        assert a.loss_quantity == Decimal("1") and b.cost == Decimal("7.50")

        with pytest.raises(NotFoundError):
            await stage_store.delete_stages(db_session, [a.id, "missing"])
        assert await stage_store.count_stages(db_session) == 2

        assert await stage_store.delete_stages(db_session, [a.id, b.id]) == 2
        assert await stage_store.count_stages(db_session) == 0

    async def test_cleanup_removes_only_old_completed(self, db_session, stage_factory):
        old_done = await stage_factory(batch_id="A", quantity_out=100, hours_ago=24 * 400, duration_hours=5)
        old_open = await stage_factory(batch_id="B", hours_ago=24 * 400)
        recent_done = await stage_factory(batch_id="C", quantity_out=100, duration_hours=5)
        long_ago = utcnow() - timedelta(days=400)
        old_done.created_at = long_ago
        old_open.created_at = long_ago
        await db_session.flush()

        deleted, cutoff = await stage_store.cleanup_old_completed(db_session, 365)

        assert deleted == 1
        assert cutoff < utcnow()
        db_session.expunge_all()
        items, _ = await stage_store.find_with_filters(db_session, StageFilter())
        assert {r.id for r in items} == {old_open.id, recent_done.id}

    async def test_cleanup_rejects_negative_days(self, db_session):
        with pytest.raises(ValidationError):
            await stage_store.cleanup_old_completed(db_session, -1)
