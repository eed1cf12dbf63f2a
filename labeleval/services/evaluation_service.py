from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy.orm import Session, sessionmaker

from labeleval.adapters.model_invocation_adapter import ModelInvocationAdapter
from labeleval.core.db import SessionLocal
from labeleval.core.enums import EvaluationStatus, ObservedStatus
from labeleval.core.errors import (
    EvaluationNotFoundError,
    InvalidInputError,
    InvalidTransitionError,
    PermissionDeniedError,
)
from labeleval.core.settings import EngineSettings, load_settings
from labeleval.jobs.evaluation_job import EvaluationPass
from labeleval.jobs.llm_throttle import LlmThrottle
from labeleval.jobs.runner import InMemoryRunner, runner
from labeleval.jobs.store_writer import StoreWriter
from labeleval.repositories.datasets import DatasetRepository
from labeleval.repositories.evaluations import EvaluationRepository
from labeleval.repositories.prompts import PromptRepository, parse_stop_sequences
from labeleval.services.event_broadcaster import EventBroadcaster
from labeleval.services.label_scoring import calculate_accuracy_stats

logger = logging.getLogger(__name__)

T = TypeVar("T")

RERUN_SUFFIX = " (Rerun)"
MANUAL_PAUSE_REASON = "Manually paused"
RESTARTED_REASON = "Evaluation was running when server restarted"
TIMEOUT_REASON = "Evaluation exceeded timeout limit"


def _isoformat(value: Optional[dt.datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class EvaluationService:
    """Lifecycle operations for evaluation runs.

    Every method takes the acting user's id and refuses to touch runs owned by
    somebody else. Passes are launched on the task registry keyed by
    evaluation id, so at most one pass per run is active in this process.
    """

    def __init__(
        self,
        *,
        settings: EngineSettings,
        adapter: ModelInvocationAdapter,
        throttle: Optional[LlmThrottle] = None,
        writer: Optional[StoreWriter] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        job_runner: InMemoryRunner = runner,
        session_factory: sessionmaker = SessionLocal,
    ):
        self.settings = settings
        self.adapter = adapter
        self.throttle = throttle or LlmThrottle(
            error_delay_ms=settings.llm_error_delay_ms,
            backoff_floor_ms=settings.backoff_floor_ms,
            backoff_cap_ms=settings.backoff_cap_ms,
            backoff_decay_ms=settings.backoff_decay_ms,
        )
        self.writer = writer or StoreWriter(session_factory)
        self.broadcaster = broadcaster or EventBroadcaster()
        self.runner = job_runner
        self.session_factory = session_factory

    # -- store access ---------------------------------------------------

    def _read(self, fn: Callable[[EvaluationRepository], T]) -> T:
        db = self.session_factory()
        try:
            return fn(EvaluationRepository(db))
        finally:
            db.close()

    async def _write(self, fn: Callable[[EvaluationRepository], T]) -> T:
        def _operation(db: Session) -> T:
            return fn(EvaluationRepository(db))

        return await self.writer.submit(_operation)

    def _snapshot(self, evaluation_id: str) -> dict[str, Any]:
        def _load(repo: EvaluationRepository) -> dict[str, Any]:
            evaluation = repo.get_evaluation(evaluation_id)
            if evaluation is None:
                raise EvaluationNotFoundError("Evaluation not found")
            return repo.build_evaluation_payload(evaluation)

        return self._read(_load)

    def _owned_snapshot(self, evaluation_id: str, actor_id: str, action: str) -> dict[str, Any]:
        snapshot = self._snapshot(evaluation_id)
        if str(snapshot.get("createdBy") or "") != str(actor_id or ""):
            raise PermissionDeniedError(f"You can only {action} evaluations you created")
        return snapshot

    def _timeout_at(self, now: dt.datetime) -> dt.datetime:
        return now + dt.timedelta(hours=self.settings.timeout_hours)

    # -- reads ----------------------------------------------------------

    def get_evaluation(self, evaluation_id: str) -> dict[str, Any]:
        return self._snapshot(evaluation_id)

    def list_results(self, evaluation_id: str, *, offset: int = 0, limit: int = 50) -> dict[str, Any]:
        snapshot = self._snapshot(evaluation_id)
        items = self._read(lambda repo: repo.list_results(evaluation_id, offset=offset, limit=limit))
        total = self._read(lambda repo: repo.count_results(evaluation_id))
        return {
            "evaluationId": snapshot["id"],
            "items": items,
            "total": total,
            "offset": max(0, int(offset)),
            "limit": max(1, int(limit)),
        }

    def get_stats(self, evaluation_id: str) -> dict[str, Any]:
        self._snapshot(evaluation_id)
        stats = calculate_accuracy_stats(self._read(lambda repo: repo.list_scoring_rows(evaluation_id)))
        return {"evaluationId": evaluation_id, **stats.to_payload()}

    # -- create / edit --------------------------------------------------

    async def create_evaluation(
        self,
        *,
        name: str,
        prompt_id: str,
        dataset_id: str,
        actor_id: str,
        description: Optional[str] = None,
    ) -> dict[str, Any]:
        if not str(name or "").strip() or not str(prompt_id or "").strip() or not str(dataset_id or "").strip():
            raise InvalidInputError("name, promptId, and datasetId are required")

        def _create(repo: EvaluationRepository) -> dict[str, Any]:
            prompt = PromptRepository(repo.db).get_prompt(prompt_id)
            if prompt is None:
                raise EvaluationNotFoundError("Prompt not found")
            datasets = DatasetRepository(repo.db)
            if datasets.get_dataset(dataset_id) is None:
                raise EvaluationNotFoundError("Dataset not found")
            evaluation = repo.create_evaluation(
                name=name,
                description=description,
                prompt_id=prompt_id,
                dataset_id=dataset_id,
                total_messages=datasets.count_messages(dataset_id),
                stop_sequences=parse_stop_sequences(prompt.stop_sequences_json),
                created_by=actor_id,
            )
            return repo.build_evaluation_payload(evaluation)

        snapshot = await self._write(_create)
        logger.info("Created evaluation %s (%s) for %s", snapshot["id"], snapshot["name"], actor_id)
        return snapshot

    async def rename(self, evaluation_id: str, name: str, actor_id: str) -> dict[str, Any]:
        self._owned_snapshot(evaluation_id, actor_id, "edit")
        if not str(name or "").strip():
            raise InvalidInputError("name is required")

        def _rename(repo: EvaluationRepository) -> dict[str, Any]:
            evaluation = repo.rename(evaluation_id, name)
            if evaluation is None:
                raise EvaluationNotFoundError("Evaluation not found")
            return repo.build_evaluation_payload(evaluation)

        return await self._write(_rename)

    async def delete_evaluation(self, evaluation_id: str, actor_id: str) -> dict[str, Any]:
        snapshot = self._owned_snapshot(evaluation_id, actor_id, "delete")
        if snapshot["status"] == EvaluationStatus.RUNNING.value:
            raise InvalidTransitionError("Cannot delete a running evaluation")

        def _delete(repo: EvaluationRepository) -> bool:
            evaluation = repo.get_evaluation(evaluation_id)
            if evaluation is not None and evaluation.status == EvaluationStatus.RUNNING:
                raise InvalidTransitionError("Cannot delete a running evaluation")
            return repo.delete_evaluation(evaluation_id)

        await self._write(_delete)
        logger.info("Deleted evaluation %s", evaluation_id)
        return {"ok": True, "id": evaluation_id}

    # -- lifecycle ------------------------------------------------------

    async def start(self, evaluation_id: str, actor_id: str, *, resume: bool = False) -> dict[str, Any]:
        snapshot = self._owned_snapshot(evaluation_id, actor_id, "resume" if resume else "start")
        if not resume and snapshot["status"] != EvaluationStatus.PENDING.value:
            raise InvalidTransitionError(f"Evaluation is already {snapshot['status']}")
        if resume and not snapshot["canResume"]:
            raise InvalidTransitionError("This evaluation cannot be resumed")
        if self.runner.has_active_job(evaluation_id):
            raise InvalidTransitionError("Previous pass is still finishing, try again shortly")

        now = dt.datetime.utcnow()
        process_started_at = self.settings.process_started_at
        timeout_at = self._timeout_at(now)

        def _start(repo: EvaluationRepository) -> dict[str, Any]:
            evaluation = repo.get_evaluation(evaluation_id)
            if evaluation is None:
                raise EvaluationNotFoundError("Evaluation not found")
            if resume:
                if not evaluation.can_resume or evaluation.status == EvaluationStatus.RUNNING:
                    raise InvalidTransitionError("This evaluation cannot be resumed")
            elif evaluation.status != EvaluationStatus.PENDING:
                raise InvalidTransitionError(f"Evaluation is already {evaluation.status.value}")
            started_at = evaluation.started_at if resume and evaluation.started_at is not None else now
            evaluation = repo.update_status(
                evaluation_id,
                EvaluationStatus.RUNNING,
                {
                    "started_at": started_at,
                    "last_heartbeat": now,
                    "timeout_at": timeout_at,
                    "process_started_at": process_started_at,
                    "can_resume": False,
                    "failure_reason": None,
                    "completed_at": None,
                },
            )
            return repo.build_evaluation_payload(evaluation)

        updated = await self._write(_start)
        self.broadcaster.publish_snapshot(evaluation_id, updated)
        self._launch(evaluation_id, resume=resume)
        logger.info("%s evaluation %s for %s", "Resumed" if resume else "Started", evaluation_id, actor_id)
        return updated

    async def resume(self, evaluation_id: str, actor_id: str) -> dict[str, Any]:
        snapshot = self._owned_snapshot(evaluation_id, actor_id, "resume")
        if not snapshot["canResume"]:
            raise InvalidTransitionError("This evaluation cannot be resumed")
        if snapshot["status"] == EvaluationStatus.RUNNING.value:
            raise InvalidTransitionError("Evaluation is already running")
        return await self.start(evaluation_id, actor_id, resume=True)

    async def stop(self, evaluation_id: str, actor_id: str) -> dict[str, Any]:
        snapshot = self._owned_snapshot(evaluation_id, actor_id, "stop")
        if snapshot["status"] != EvaluationStatus.RUNNING.value:
            raise InvalidTransitionError("Evaluation is not currently running")

        def _stop(repo: EvaluationRepository) -> dict[str, Any]:
            evaluation = repo.get_evaluation(evaluation_id)
            if evaluation is None:
                raise EvaluationNotFoundError("Evaluation not found")
            if evaluation.status != EvaluationStatus.RUNNING:
                raise InvalidTransitionError("Evaluation is not currently running")
            evaluation = repo.update_status(
                evaluation_id,
                EvaluationStatus.PAUSED,
                {"can_resume": True, "failure_reason": MANUAL_PAUSE_REASON},
            )
            return repo.build_evaluation_payload(evaluation)

        updated = await self._write(_stop)
        self.broadcaster.publish_snapshot(evaluation_id, updated)
        logger.info("Evaluation %s manually paused by %s", evaluation_id, actor_id)
        return updated

    async def reset(self, evaluation_id: str, actor_id: str) -> dict[str, Any]:
        snapshot = self._owned_snapshot(evaluation_id, actor_id, "reset")
        if snapshot["status"] not in (EvaluationStatus.FAILED.value, EvaluationStatus.RUNNING.value):
            raise InvalidTransitionError("Can only reset failed or stuck evaluations")

        if self.runner.cancel_by_key(evaluation_id):
            logger.info("Cancelled active pass for evaluation %s", evaluation_id)
        await self.runner.wait(evaluation_id)

        def _reset(repo: EvaluationRepository) -> dict[str, Any]:
            evaluation = repo.reset_to_pending(evaluation_id)
            if evaluation is None:
                raise EvaluationNotFoundError("Evaluation not found")
            return repo.build_evaluation_payload(evaluation)

        updated = await self._write(_reset)
        self.broadcaster.publish_snapshot(evaluation_id, updated)
        logger.info("Evaluation %s reset by %s", evaluation_id, actor_id)
        return updated

    async def retry_errors(self, evaluation_id: str, actor_id: str) -> dict[str, Any]:
        snapshot = self._owned_snapshot(evaluation_id, actor_id, "retry errors for")
        if snapshot["status"] not in (EvaluationStatus.COMPLETED.value, EvaluationStatus.FAILED.value):
            raise InvalidTransitionError("Can only retry errors for completed or failed evaluations")
        if self._read(lambda repo: repo.count_results(evaluation_id, error_only=True)) == 0:
            raise InvalidTransitionError("No errors found to retry")
        if self.runner.has_active_job(evaluation_id):
            raise InvalidTransitionError("Previous pass is still finishing, try again shortly")

        now = dt.datetime.utcnow()
        process_started_at = self.settings.process_started_at
        timeout_at = self._timeout_at(now)

        def _retry(repo: EvaluationRepository) -> dict[str, Any]:
            evaluation = repo.get_evaluation(evaluation_id)
            if evaluation is None:
                raise EvaluationNotFoundError("Evaluation not found")
            if evaluation.status not in (EvaluationStatus.COMPLETED, EvaluationStatus.FAILED):
                raise InvalidTransitionError("Can only retry errors for completed or failed evaluations")
            deleted = repo.delete_results(evaluation_id, error_only=True)
            if deleted == 0:
                raise InvalidTransitionError("No errors found to retry")
            evaluation = repo.update_status(
                evaluation_id,
                EvaluationStatus.RUNNING,
                {
                    "processed_messages": int(evaluation.processed_messages or 0) - deleted,
                    "completed_at": None,
                    "can_resume": True,
                    "accuracy": None,
                    "correct_predictions": None,
                    "incorrect_predictions": 0,
                    "error_count": None,
                    "failure_reason": None,
                    "last_heartbeat": now,
                    "timeout_at": timeout_at,
                    "process_started_at": process_started_at,
                },
            )
            payload = repo.build_evaluation_payload(evaluation)
            payload["retriedErrorCount"] = deleted
            return payload

        updated = await self._write(_retry)
        logger.info("Retrying %d error result(s) for evaluation %s", updated["retriedErrorCount"], evaluation_id)
        self.broadcaster.publish_snapshot(evaluation_id, updated)
        self._launch(evaluation_id, resume=True)
        return updated

    async def rerun(self, evaluation_id: str, actor_id: str) -> dict[str, Any]:
        snapshot = self._owned_snapshot(evaluation_id, actor_id, "rerun")
        if snapshot["status"] != EvaluationStatus.COMPLETED.value:
            raise InvalidTransitionError("Can only rerun completed evaluations")

        created = await self.create_evaluation(
            name=f"{snapshot['name']}{RERUN_SUFFIX}",
            description=snapshot["description"],
            prompt_id=snapshot["promptId"],
            dataset_id=snapshot["datasetId"],
            actor_id=actor_id,
        )
        started = await self.start(created["id"], actor_id)
        logger.info("Started rerun evaluation %s from %s", started["id"], evaluation_id)
        return started

    async def validate_status(self, evaluation_id: str, actor_id: str) -> dict[str, Any]:
        snapshot = self._owned_snapshot(evaluation_id, actor_id, "check")
        now = dt.datetime.utcnow()
        detection = self._read(lambda repo: self._detect_stuck(repo, evaluation_id, now))
        actual_status, reason = detection if detection is not None else (snapshot["status"], "")

        if detection is not None:
            def _repair(repo: EvaluationRepository) -> dict[str, Any]:
                evaluation = repo.get_evaluation(evaluation_id)
                if evaluation is None:
                    raise EvaluationNotFoundError("Evaluation not found")
                if evaluation.status == EvaluationStatus.RUNNING:
                    evaluation.can_resume = True
                    evaluation.failure_reason = reason
                    evaluation.last_heartbeat = now
                return repo.build_evaluation_payload(evaluation)

            snapshot = await self._write(_repair)
            logger.warning("Evaluation %s looks %s: %s", evaluation_id, actual_status, reason)

        processed = int(snapshot["processedMessages"] or 0)
        total = int(snapshot["totalMessages"] or 0)
        return {
            "id": snapshot["id"],
            "displayStatus": snapshot["status"],
            "actualStatus": actual_status,
            "isStuck": detection is not None,
            "canResume": bool(snapshot["canResume"]),
            "reason": reason or snapshot["failureReason"],
            "progress": {
                "processed": processed,
                "total": total,
                "percentage": round(processed / total * 100) if total else 0,
            },
            "timing": {
                "startedAt": _isoformat(snapshot["startedAt"]),
                "lastHeartbeat": _isoformat(snapshot["lastHeartbeat"]),
                "timeoutAt": _isoformat(snapshot["timeoutAt"]),
                "totalTimeMs": snapshot["totalTimeMs"],
            },
        }

    def recover_interrupted_runs(self) -> int:
        """Mark runs orphaned by a restart as resumable. Called once at startup."""
        db = self.session_factory()
        try:
            recovered = EvaluationRepository(db).mark_running_resumable(
                RESTARTED_REASON,
                self.settings.process_started_at,
            )
            db.commit()
        finally:
            db.close()
        if recovered:
            logger.warning("Marked %d evaluation(s) interrupted by a restart as resumable", recovered)
        else:
            logger.info("No interrupted evaluations found")
        return recovered

    def _detect_stuck(
        self,
        repo: EvaluationRepository,
        evaluation_id: str,
        now: dt.datetime,
    ) -> Optional[tuple[str, str]]:
        evaluation = repo.get_evaluation(evaluation_id)
        if evaluation is None or evaluation.status != EvaluationStatus.RUNNING:
            return None

        launched_at = evaluation.process_started_at or evaluation.started_at
        if launched_at is not None and launched_at < self.settings.process_started_at:
            return ObservedStatus.STUCK.value, RESTARTED_REASON

        if evaluation.last_heartbeat is not None:
            minutes_since = (now - evaluation.last_heartbeat).total_seconds() / 60
            if minutes_since > self.settings.heartbeat_stale_minutes:
                return ObservedStatus.STUCK.value, f"No progress for {round(minutes_since)} minutes"

        if evaluation.timeout_at is not None and now > evaluation.timeout_at:
            return ObservedStatus.TIMEOUT.value, TIMEOUT_REASON
        return None

    # -- pass management ------------------------------------------------

    def _launch(self, evaluation_id: str, *, resume: bool) -> str:
        job_id = str(uuid.uuid4())

        def _job():
            return self._run_pass(evaluation_id, resume=resume)

        self.runner.run(job_id, _job, job_key=evaluation_id)
        return job_id

    async def _run_pass(self, evaluation_id: str, *, resume: bool) -> None:
        evaluation_pass = EvaluationPass(
            evaluation_id,
            resume=resume,
            adapter=self.adapter,
            throttle=self.throttle,
            writer=self.writer,
            broadcaster=self.broadcaster,
            settings=self.settings,
            session_factory=self.session_factory,
        )
        try:
            await evaluation_pass.run()
        except Exception as exc:
            await self._mark_failed(evaluation_id, str(exc) or type(exc).__name__)
            raise

    async def _mark_failed(self, evaluation_id: str, reason: str) -> None:
        now = dt.datetime.utcnow()

        def _fail(repo: EvaluationRepository) -> Optional[dict[str, Any]]:
            evaluation = repo.update_status(
                evaluation_id,
                EvaluationStatus.FAILED,
                {"completed_at": now, "can_resume": True, "failure_reason": reason},
            )
            return repo.build_evaluation_payload(evaluation) if evaluation is not None else None

        snapshot = await self._write(_fail)
        logger.error("Evaluation %s failed: %s", evaluation_id, reason)
        if snapshot is not None:
            self.broadcaster.publish_snapshot(evaluation_id, snapshot)

    async def wait_for_pass(self, evaluation_id: str) -> None:
        await self.runner.wait(evaluation_id)


def build_evaluation_service(settings: Optional[EngineSettings] = None) -> EvaluationService:
    settings = settings or load_settings()
    adapter = ModelInvocationAdapter(
        settings.llm_api_key,
        base_url=settings.llm_base_url,
        timeout_ms=settings.llm_timeout_ms,
    )
    return EvaluationService(settings=settings, adapter=adapter)


_service: Optional[EvaluationService] = None


def get_evaluation_service() -> EvaluationService:
    global _service
    if _service is None:
        _service = build_evaluation_service()
    return _service
