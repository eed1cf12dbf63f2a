from __future__ import annotations

import asyncio

import pytest

from labeleval.core.db import SessionLocal
from labeleval.core.errors import InvalidTransitionError
from labeleval.jobs.store_writer import StoreWriter
from labeleval.models.dataset import Dataset
from labeleval.repositories.datasets import DatasetRepository


def test_writer_commits_each_operation_in_submission_order():
    writer = StoreWriter()
    order: list[int] = []

    def _insert(index: int):
        def _operation(db):
            order.append(index)
            dataset = DatasetRepository(db).create_dataset(
                name=f"writer-{index}",
                messages=[{"messageContent": f"m{index}", "label": True}],
            )
            return dataset.id

        return _operation

    async def _scenario():
        ids = await asyncio.gather(*[writer.submit(_insert(index)) for index in range(5)])
        await writer.close()
        return ids

    ids = asyncio.run(_scenario())

    assert order == [0, 1, 2, 3, 4]
    db = SessionLocal()
    try:
        repo = DatasetRepository(db)
        assert all(repo.get_dataset(dataset_id) is not None for dataset_id in ids)
    finally:
        db.close()


def test_failed_operation_rolls_back_and_worker_keeps_running():
    writer = StoreWriter()

    def _create_then_fail(db):
        DatasetRepository(db).create_dataset(name="rolled-back", messages=[])
        raise InvalidTransitionError("nope")

    def _create(db):
        return DatasetRepository(db).create_dataset(name="kept", messages=[]).id

    async def _scenario():
        with pytest.raises(InvalidTransitionError):
            await writer.submit(_create_then_fail)
        kept_id = await writer.submit(_create)
        await writer.close()
        return kept_id

    kept_id = asyncio.run(_scenario())

    db = SessionLocal()
    try:
        repo = DatasetRepository(db)
        assert repo.get_dataset(kept_id) is not None
        assert db.query(Dataset).count() == 1
    finally:
        db.close()


def test_writer_rebinds_to_a_new_event_loop():
    writer = StoreWriter()

    asyncio.run(writer.submit(lambda db: 1))
    assert asyncio.run(writer.submit(lambda db: 2)) == 2
