from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from labeleval.models.dataset import Dataset, DatasetMessage


class DatasetRepository:
    def __init__(self, db: Session):
        self.db = db

    def create_dataset(self, *, name: str, messages: list[dict[str, Any]], created_by: str = "system") -> Dataset:
        dataset = Dataset(name=name.strip(), created_by=created_by)
        self.db.add(dataset)
        self.db.flush()
        self.add_messages(dataset.id, messages)
        return dataset

    def add_messages(self, dataset_id: str, messages: list[dict[str, Any]]) -> list[str]:
        max_ord = (
            self.db.query(func.max(DatasetMessage.ordinal))
            .filter(DatasetMessage.dataset_id == dataset_id)
            .scalar()
        )
        next_ord = (int(max_ord) if max_ord is not None else 0) + 1
        objs: list[DatasetMessage] = []
        for offset, payload in enumerate(messages):
            objs.append(
                DatasetMessage(
                    dataset_id=dataset_id,
                    ordinal=next_ord + offset,
                    message_content=str(payload.get("messageContent") or ""),
                    label=bool(payload.get("label")),
                )
            )
        self.db.add_all(objs)
        self.db.flush()
        return [obj.id for obj in objs]

    def get_dataset(self, dataset_id: str) -> Optional[Dataset]:
        return self.db.get(Dataset, dataset_id)

    def list_messages(self, dataset_id: str) -> list[DatasetMessage]:
        return (
            self.db.query(DatasetMessage)
            .filter(DatasetMessage.dataset_id == dataset_id)
            .order_by(DatasetMessage.ordinal.asc())
            .all()
        )

    def count_messages(self, dataset_id: str) -> int:
        return int(
            self.db.query(func.count(DatasetMessage.id))
            .filter(DatasetMessage.dataset_id == dataset_id)
            .scalar()
            or 0
        )
