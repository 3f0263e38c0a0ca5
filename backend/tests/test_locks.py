"""Downstream lock tests."""

import pytest

from agritrace.models.stage_record import Stage
from agritrace.utils.locks import STAGE_OUTPUT_FIELDS, get_stage_locks


@pytest.mark.unit
@pytest.mark.asyncio
class TestStageLocks:

    async def test_open_stage_has_no_locks(self, db_session, stage_factory):
        record = await stage_factory()
        info = await get_stage_locks(db_session, record)
        assert not info.is_locked

    async def test_completed_stage_without_successor_is_unlocked(
        self, db_session, stage_factory
    ):
        record = await stage_factory(quantity_out=100, duration_hours=2)
        info = await get_stage_locks(db_session, record)
        assert info.locked_field_names() == []

    async def test_downstream_record_locks_output_fields(self, db_session, three_stage_batch):
        harvest, storage, transport = three_stage_batch

        info = await get_stage_locks(db_session, harvest)

        assert info.is_locked
        assert set(info.locked_field_names()) == set(STAGE_OUTPUT_FIELDS)
        lock = info.check_update({"quantity_out", "handling_notes"})
        assert lock.field == "quantity_out"
        assert lock.blocker_ref == storage.tracking_code
        assert "+1 more" in lock.reason
        assert info.check_update({"handling_notes", "cost"}) is None

        # Furthest stage is open, so nothing downstream of it can be locked
        assert not (await get_stage_locks(db_session, transport)).is_locked

    async def test_other_batches_do_not_lock(self, db_session, stage_factory):
        record = await stage_factory(batch_id="A", quantity_out=100, duration_hours=2)
        await stage_factory(batch_id="B", stage=Stage.STORAGE, quantity_in=50)

        assert not (await get_stage_locks(db_session, record)).is_locked
