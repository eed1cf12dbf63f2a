from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Optional, TypeVar

from sqlalchemy.orm import Session, sessionmaker

from labeleval.core.db import SessionLocal
from labeleval.core.errors import EvaluationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_QUEUE_MAXSIZE = 1000


class StoreWriter:
    """Serializes every engine write through one worker coroutine.

    Each submitted operation runs in its own session and is committed before
    the caller's await returns. Operations must return plain values, never ORM
    instances, since the session is closed right after.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal, maxsize: int = _QUEUE_MAXSIZE):
        self._session_factory = session_factory
        self._maxsize = max(1, int(maxsize))
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task[Any]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _ensure_worker(self) -> asyncio.Queue:
        loop = asyncio.get_running_loop()
        if self._loop is not loop or self._queue is None or self._worker is None or self._worker.done():
            self._loop = loop
            self._queue = asyncio.Queue(maxsize=self._maxsize)
            self._worker = loop.create_task(self._drain(self._queue))
        return self._queue

    async def submit(self, operation: Callable[[Session], T]) -> T:
        queue = self._ensure_worker()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await queue.put((operation, future))
        return await future

    async def _drain(self, queue: asyncio.Queue) -> None:
        while True:
            operation, future = await queue.get()
            try:
                if future.cancelled():
                    continue
                try:
                    result = self._apply(operation)
                except Exception as exc:
                    future.set_exception(exc)
                else:
                    future.set_result(result)
            finally:
                queue.task_done()

    def _apply(self, operation: Callable[[Session], T]) -> T:
        db = self._session_factory()
        try:
            result = operation(db)
            db.commit()
            return result
        except EvaluationError:
            db.rollback()
            raise
        except Exception:
            db.rollback()
            logger.exception("Store write failed")
            raise
        finally:
            db.close()

    async def close(self) -> None:
        worker = self._worker
        if worker is None or worker.done():
            return
        if self._loop is not asyncio.get_running_loop():
            return
        if self._queue is not None:
            await self._queue.join()
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._queue = None
