from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any

from sqlalchemy.orm import Session

from labeleval.jobs.store_writer import StoreWriter
from labeleval.repositories.evaluations import EvaluationRepository
from labeleval.services.event_broadcaster import EventBroadcaster

logger = logging.getLogger(__name__)


class ProgressTracker:
    """Counts completions for one pass and periodically persists them.

    ``processed`` and ``total_time_ms`` start from the pass baseline so a
    resumed run keeps counting where the previous pass stopped.
    """

    def __init__(
        self,
        evaluation_id: str,
        writer: StoreWriter,
        broadcaster: EventBroadcaster,
        *,
        processed: int = 0,
        total_time_ms: int = 0,
        flush_every: int = 10,
    ):
        self.evaluation_id = evaluation_id
        self.writer = writer
        self.broadcaster = broadcaster
        self.processed = max(0, int(processed))
        self.total_time_ms = max(0, int(total_time_ms))
        self.flush_every = max(1, int(flush_every))
        self._since_flush = 0
        self._pending: set[asyncio.Task[Any]] = set()

    def record(self, response_time_ms: int) -> bool:
        """Count one completion; returns True when a periodic flush is due."""
        self.processed += 1
        self.total_time_ms += max(0, int(response_time_ms or 0))
        self._since_flush += 1
        return self._since_flush >= self.flush_every

    def schedule_flush(self) -> None:
        self._since_flush = 0
        task = asyncio.create_task(self._flush_logged())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> dict[str, Any]:
        self._since_flush = 0
        processed = self.processed
        total_time_ms = self.total_time_ms
        evaluation_id = self.evaluation_id

        def _write(db: Session) -> dict[str, Any]:
            repo = EvaluationRepository(db)
            evaluation = repo.update_progress(evaluation_id, processed, total_time_ms)
            if evaluation is None:
                return {}
            repo.touch_heartbeat(evaluation_id, dt.datetime.utcnow())
            return repo.build_evaluation_payload(evaluation)

        snapshot = await self.writer.submit(_write)
        if snapshot:
            self.broadcaster.publish_snapshot(evaluation_id, snapshot)
        return snapshot

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def cancel_pending(self) -> None:
        tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _flush_logged(self) -> None:
        try:
            await self.flush()
        except Exception:
            logger.exception("Progress flush failed for evaluation %s", self.evaluation_id)
