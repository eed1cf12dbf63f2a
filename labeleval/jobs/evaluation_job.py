from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp
from sqlalchemy.orm import Session, sessionmaker

from labeleval.adapters.model_invocation_adapter import ModelInvocationAdapter
from labeleval.core.db import SessionLocal
from labeleval.core.enums import EvaluationStatus, EventType
from labeleval.core.errors import EvaluationNotFoundError, EvaluationTimeoutError, is_rate_limit_error
from labeleval.core.settings import EngineSettings
from labeleval.jobs.llm_throttle import LlmThrottle
from labeleval.jobs.message_processor import MessageOutcome, MessageProcessor, MessageSnapshot, PromptSnapshot
from labeleval.jobs.progress_tracker import ProgressTracker
from labeleval.jobs.store_writer import StoreWriter
from labeleval.repositories.datasets import DatasetRepository
from labeleval.repositories.evaluations import EvaluationRepository
from labeleval.repositories.prompts import PromptRepository, parse_stop_sequences
from labeleval.services.event_broadcaster import EventBroadcaster
from labeleval.services.label_scoring import calculate_accuracy_stats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PassContext:
    prompt: PromptSnapshot
    captured_stop_sequences: list[str]
    messages: list[MessageSnapshot]
    total_messages: int
    processed_baseline: int
    total_time_baseline: int


@dataclass(frozen=True)
class PassOutcome:
    completed: bool
    processed: int
    total_time_ms: int


class EvaluationPass:
    """One scheduling pass over the pending messages of an evaluation."""

    def __init__(
        self,
        evaluation_id: str,
        *,
        resume: bool,
        adapter: ModelInvocationAdapter,
        throttle: LlmThrottle,
        writer: StoreWriter,
        broadcaster: EventBroadcaster,
        settings: EngineSettings,
        session_factory: sessionmaker = SessionLocal,
    ):
        self.evaluation_id = evaluation_id
        self.resume = resume
        self.adapter = adapter
        self.throttle = throttle
        self.writer = writer
        self.broadcaster = broadcaster
        self.settings = settings
        self.session_factory = session_factory
        self.capacity = settings.effective_concurrency

    def load_context(self) -> PassContext:
        db = self.session_factory()
        try:
            repo = EvaluationRepository(db)
            evaluation = repo.get_evaluation(self.evaluation_id)
            if evaluation is None:
                raise EvaluationNotFoundError("Evaluation not found")
            prompt = PromptRepository(db).get_prompt(evaluation.prompt_id)
            if prompt is None:
                raise EvaluationNotFoundError("Prompt not found")
            messages = DatasetRepository(db).list_messages(evaluation.dataset_id)

            done_ids: set[str] = set()
            processed_baseline = 0
            total_time_baseline = 0
            if self.resume:
                done_ids = repo.list_result_message_ids(self.evaluation_id)
                processed_baseline = len(done_ids)
                total_time_baseline = int(evaluation.total_time_ms or 0)

            return PassContext(
                prompt=PromptSnapshot(
                    model_id=prompt.model_id,
                    prompt_text=prompt.prompt_text,
                    opening_tag=prompt.opening_tag,
                    closing_tag=prompt.closing_tag,
                    max_tokens=prompt.max_tokens,
                    temperature=prompt.temperature,
                    top_p=prompt.top_p,
                    stop_sequences=parse_stop_sequences(prompt.stop_sequences_json),
                ),
                captured_stop_sequences=repo.stop_sequences_for(evaluation),
                messages=[
                    MessageSnapshot(id=row.id, message_content=row.message_content, label=bool(row.label))
                    for row in messages
                    if row.id not in done_ids
                ],
                total_messages=int(evaluation.total_messages or 0),
                processed_baseline=processed_baseline,
                total_time_baseline=total_time_baseline,
            )
        finally:
            db.close()

    def read_state(self) -> str:
        """``running``, ``stopped`` or ``timeout`` as currently stored."""
        db = self.session_factory()
        try:
            evaluation = EvaluationRepository(db).get_evaluation(self.evaluation_id)
            if evaluation is None or evaluation.status != EvaluationStatus.RUNNING:
                return "stopped"
            if evaluation.timeout_at is not None and dt.datetime.utcnow() > evaluation.timeout_at:
                return "timeout"
            return "running"
        finally:
            db.close()

    async def run(self) -> PassOutcome:
        context = self.load_context()
        logger.info(
            "%s evaluation %s with %d/%d messages remaining (capacity=%d)",
            "Resuming" if self.resume else "Starting",
            self.evaluation_id,
            len(context.messages),
            context.total_messages,
            self.capacity,
        )

        queue: deque[MessageSnapshot] = deque(context.messages)
        in_flight: dict[str, asyncio.Task[MessageOutcome]] = {}
        fatal_errors: list[BaseException] = []
        tracker = ProgressTracker(
            self.evaluation_id,
            self.writer,
            self.broadcaster,
            processed=context.processed_baseline,
            total_time_ms=context.total_time_baseline,
            flush_every=self.settings.progress_flush_every,
        )
        self.broadcaster.publish(
            self.evaluation_id,
            EventType.LLM_BATCH_START,
            {"queueSize": len(queue), "capacity": self.capacity},
        )

        def _on_done(message_id: str, task: asyncio.Task[MessageOutcome]) -> None:
            in_flight.pop(message_id, None)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                fatal_errors.append(exc)
                return
            outcome = task.result()
            flush_due = tracker.record(outcome.response_time_ms)
            if not outcome.success and is_rate_limit_error(outcome.error):
                self.throttle.register_rate_limit()
            if flush_due or (not queue and not in_flight):
                tracker.schedule_flush()

        stopped = False
        timed_out = False
        timeout = aiohttp.ClientTimeout(total=max(self.settings.llm_timeout_ms / 1000.0 + 5.0, 5.0))
        connector = aiohttp.TCPConnector(limit=max(5, self.capacity * 4))
        async with aiohttp.ClientSession(timeout=timeout, connector=connector) as session:
            processor = MessageProcessor(
                self.evaluation_id,
                context.prompt,
                captured_stop_sequences=context.captured_stop_sequences,
                adapter=self.adapter,
                session=session,
                throttle=self.throttle,
                writer=self.writer,
                broadcaster=self.broadcaster,
                settings=self.settings,
            )
            try:
                while (queue or in_flight) and not fatal_errors:
                    state = self.read_state()
                    if state == "stopped":
                        logger.info("Evaluation %s was stopped, terminating processing", self.evaluation_id)
                        stopped = True
                        break
                    if state == "timeout":
                        logger.warning("Evaluation %s exceeded its timeout", self.evaluation_id)
                        timed_out = True
                        break

                    while queue and len(in_flight) < self.capacity:
                        await self.throttle.wait_for_backoff()
                        message = queue.popleft()
                        task = asyncio.create_task(processor.process(message))
                        in_flight[message.id] = task
                        task.add_done_callback(lambda done, message_id=message.id: _on_done(message_id, done))

                    if in_flight and (not queue or len(in_flight) >= self.capacity):
                        await asyncio.wait(set(in_flight.values()), return_when=asyncio.FIRST_COMPLETED)

                    await asyncio.sleep(0)

                if in_flight:
                    await asyncio.wait(set(in_flight.values()))
            except asyncio.CancelledError:
                tasks = list(in_flight.values())
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                await tracker.cancel_pending()
                raise

        await tracker.drain()
        await tracker.flush()

        if fatal_errors:
            raise fatal_errors[0]
        if timed_out:
            raise EvaluationTimeoutError()
        if stopped:
            logger.info(
                "Evaluation %s was paused after %d processed messages",
                self.evaluation_id,
                tracker.processed,
            )
            return PassOutcome(completed=False, processed=tracker.processed, total_time_ms=tracker.total_time_ms)

        completed = await self._complete(tracker.processed, tracker.total_time_ms)
        return PassOutcome(completed=completed, processed=tracker.processed, total_time_ms=tracker.total_time_ms)

    async def _complete(self, processed: int, total_time_ms: int) -> bool:
        evaluation_id = self.evaluation_id

        def _write(db: Session) -> Optional[dict[str, Any]]:
            repo = EvaluationRepository(db)
            evaluation = repo.get_evaluation(evaluation_id)
            if evaluation is None or evaluation.status != EvaluationStatus.RUNNING:
                return None
            stats = calculate_accuracy_stats(repo.list_scoring_rows(evaluation_id))
            final_processed = min(processed, int(evaluation.total_messages or 0))
            evaluation = repo.update_status(
                evaluation_id,
                EvaluationStatus.COMPLETED,
                {
                    "completed_at": dt.datetime.utcnow(),
                    "processed_messages": final_processed,
                    "total_time_ms": total_time_ms,
                    "accuracy": stats.accuracy,
                    "correct_predictions": stats.correct_predictions,
                    "incorrect_predictions": stats.incorrect_for(final_processed),
                    "error_count": stats.error_count,
                },
            )
            return repo.build_evaluation_payload(evaluation)

        snapshot = await self.writer.submit(_write)
        if snapshot is None:
            logger.info("Evaluation %s left running state before completion", evaluation_id)
            return False
        self.broadcaster.publish_snapshot(evaluation_id, snapshot)
        logger.info(
            "Evaluation %s completed. Processed %d messages in %dms. Accuracy: %s%%",
            evaluation_id,
            processed,
            total_time_ms,
            snapshot.get("accuracy"),
        )
        return True
