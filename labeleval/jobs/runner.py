from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class InMemoryRunner:
    def __init__(self):
        self.jobs: dict[str, str] = {}
        self.errors: dict[str, str] = {}
        self._tasks_by_job_id: dict[str, asyncio.Task[Any]] = {}
        self._job_ids_by_key: dict[str, set[str]] = {}

    def _normalize_key(self, job_key: str | None) -> str:
        return str(job_key or "").strip()

    def _prune_key(self, normalized_key: str) -> None:
        job_ids = self._job_ids_by_key.get(normalized_key)
        if not job_ids:
            self._job_ids_by_key.pop(normalized_key, None)
            return
        stale_job_ids = {
            job_id
            for job_id in list(job_ids)
            if (task := self._tasks_by_job_id.get(job_id)) is None or task.done()
        }
        job_ids.difference_update(stale_job_ids)
        if not job_ids:
            self._job_ids_by_key.pop(normalized_key, None)

    def run(
        self,
        job_id: str,
        job_coro_factory: Callable[[], Awaitable[None]],
        *,
        job_key: str | None = None,
    ) -> None:
        self.jobs[job_id] = "RUNNING"
        normalized_key = self._normalize_key(job_key)

        async def _wrap():
            try:
                await job_coro_factory()
                self.jobs[job_id] = "DONE"
            except asyncio.CancelledError:
                self.jobs[job_id] = "CANCELED"
                raise
            except Exception as exc:
                self.jobs[job_id] = "FAILED"
                self.errors[job_id] = str(exc)
                logger.exception("Job %s (key=%s) failed", job_id, normalized_key or "-")

        task = asyncio.create_task(_wrap())
        self._tasks_by_job_id[job_id] = task
        if normalized_key:
            self._job_ids_by_key.setdefault(normalized_key, set()).add(job_id)

        def _cleanup(done_task: asyncio.Task[Any]) -> None:
            self._tasks_by_job_id.pop(job_id, None)
            if normalized_key:
                self._prune_key(normalized_key)
            if not done_task.cancelled():
                # _wrap() already recorded the outcome; this only marks the exception retrieved.
                done_task.exception()

        task.add_done_callback(_cleanup)

    def has_active_job(self, job_key: str) -> bool:
        return bool(self._active_tasks(job_key))

    def cancel_by_key(self, job_key: str) -> bool:
        cancelled = False
        for task in self._active_tasks(job_key):
            task.cancel()
            cancelled = True
        return cancelled

    async def wait(self, job_key: str) -> None:
        """Block until every job registered under ``job_key`` has finished."""
        while True:
            tasks = self._active_tasks(job_key)
            if not tasks:
                return
            await asyncio.wait(tasks)

    def _active_tasks(self, job_key: str) -> list[asyncio.Task[Any]]:
        normalized_key = self._normalize_key(job_key)
        if not normalized_key:
            return []
        self._prune_key(normalized_key)
        tasks: list[asyncio.Task[Any]] = []
        for job_id in self._job_ids_by_key.get(normalized_key, set()):
            task = self._tasks_by_job_id.get(job_id)
            if task is not None and not task.done():
                tasks.append(task)
        return tasks


runner = InMemoryRunner()
