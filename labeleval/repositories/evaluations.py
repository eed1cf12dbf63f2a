from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from sqlalchemy import delete, func, or_, update
from sqlalchemy.orm import Session

from labeleval.core.enums import EvaluationStatus
from labeleval.models.dataset import Dataset, DatasetMessage
from labeleval.models.evaluation import Evaluation
from labeleval.models.evaluation_result import EvaluationResult
from labeleval.models.prompt import Prompt
from labeleval.repositories.prompts import dump_stop_sequences, parse_stop_sequences
from labeleval.services.label_scoring import ScoringRow

# Columns the engine may write through update_status().
_STATUS_FIELDS = {
    "started_at",
    "completed_at",
    "last_heartbeat",
    "timeout_at",
    "process_started_at",
    "can_resume",
    "failure_reason",
    "processed_messages",
    "correct_predictions",
    "incorrect_predictions",
    "error_count",
    "accuracy",
    "total_time_ms",
}


class EvaluationRepository:
    def __init__(self, db: Session):
        self.db = db

    def create_evaluation(
        self,
        *,
        name: str,
        prompt_id: str,
        dataset_id: str,
        total_messages: int,
        created_by: str,
        description: Optional[str] = None,
        stop_sequences: Optional[list[str]] = None,
    ) -> Evaluation:
        evaluation = Evaluation(
            name=(name or "").strip(),
            description=description,
            prompt_id=prompt_id,
            dataset_id=dataset_id,
            status=EvaluationStatus.PENDING,
            total_messages=max(0, int(total_messages)),
            stop_sequences_json=dump_stop_sequences(stop_sequences),
            created_by=str(created_by),
        )
        self.db.add(evaluation)
        self.db.flush()
        return evaluation

    def get_evaluation(self, evaluation_id: str) -> Optional[Evaluation]:
        return self.db.get(Evaluation, evaluation_id)

    def rename(self, evaluation_id: str, name: str) -> Optional[Evaluation]:
        evaluation = self.get_evaluation(evaluation_id)
        if evaluation is None:
            return None
        evaluation.name = (name or "").strip()
        return evaluation

    def delete_evaluation(self, evaluation_id: str) -> bool:
        evaluation = self.get_evaluation(evaluation_id)
        if evaluation is None:
            return False
        self.delete_results(evaluation_id)
        self.db.delete(evaluation)
        self.db.flush()
        return True

    def update_status(
        self,
        evaluation_id: str,
        status: EvaluationStatus,
        fields: Optional[dict[str, Any]] = None,
    ) -> Optional[Evaluation]:
        evaluation = self.get_evaluation(evaluation_id)
        if evaluation is None:
            return None
        evaluation.status = status
        for key, value in (fields or {}).items():
            if key not in _STATUS_FIELDS:
                raise ValueError(f"Unsupported evaluation field: {key}")
            setattr(evaluation, key, value)
        self._clamp_processed(evaluation)
        self.db.flush()
        return evaluation

    def update_progress(self, evaluation_id: str, processed_messages: int, total_time_ms: int) -> Optional[Evaluation]:
        evaluation = self.get_evaluation(evaluation_id)
        if evaluation is None:
            return None
        evaluation.processed_messages = int(processed_messages)
        evaluation.total_time_ms = int(total_time_ms)
        self._clamp_processed(evaluation)
        self.db.flush()
        return evaluation

    def touch_heartbeat(self, evaluation_id: str, at: Optional[dt.datetime] = None) -> None:
        evaluation = self.get_evaluation(evaluation_id)
        if evaluation is None:
            return
        evaluation.last_heartbeat = at or dt.datetime.utcnow()

    def mark_running_resumable(self, reason: str, process_started_at: dt.datetime) -> int:
        """Flag runs left ``running`` by an earlier process; returns how many."""
        stmt = (
            update(Evaluation)
            .where(Evaluation.status == EvaluationStatus.RUNNING)
            .where(
                or_(
                    Evaluation.process_started_at.is_(None),
                    Evaluation.process_started_at < process_started_at,
                )
            )
            .values(can_resume=True, failure_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return int(self.db.execute(stmt).rowcount or 0)

    def reset_to_pending(self, evaluation_id: str) -> Optional[Evaluation]:
        self.delete_results(evaluation_id)
        return self.update_status(
            evaluation_id,
            EvaluationStatus.PENDING,
            {
                "processed_messages": 0,
                "correct_predictions": None,
                "incorrect_predictions": 0,
                "error_count": None,
                "accuracy": None,
                "total_time_ms": 0,
                "started_at": None,
                "completed_at": None,
                "last_heartbeat": None,
                "timeout_at": None,
                "process_started_at": None,
                "can_resume": False,
                "failure_reason": None,
            },
        )

    def insert_result(
        self,
        *,
        evaluation_id: str,
        dataset_message_id: str,
        llm_label: Optional[bool],
        llm_full_response: Optional[str],
        response_time_ms: int,
        error_message: Optional[str],
        retry_count: int,
    ) -> EvaluationResult:
        result = EvaluationResult(
            evaluation_id=evaluation_id,
            dataset_message_id=dataset_message_id,
            llm_label=llm_label,
            llm_full_response=llm_full_response,
            response_time_ms=max(0, int(response_time_ms or 0)),
            error_message=error_message,
            retry_count=max(0, int(retry_count)),
        )
        self.db.add(result)
        self.db.flush()
        return result

    def delete_results(self, evaluation_id: str, *, error_only: bool = False) -> int:
        stmt = delete(EvaluationResult).where(EvaluationResult.evaluation_id == evaluation_id)
        if error_only:
            stmt = stmt.where(EvaluationResult.error_message.is_not(None))
        outcome = self.db.execute(stmt)
        return int(outcome.rowcount or 0)

    def count_results(self, evaluation_id: str, *, error_only: bool = False) -> int:
        query = self.db.query(func.count(EvaluationResult.id)).filter(EvaluationResult.evaluation_id == evaluation_id)
        if error_only:
            query = query.filter(EvaluationResult.error_message.is_not(None))
        return int(query.scalar() or 0)

    def list_result_message_ids(self, evaluation_id: str) -> set[str]:
        rows = (
            self.db.query(EvaluationResult.dataset_message_id)
            .filter(EvaluationResult.evaluation_id == evaluation_id)
            .all()
        )
        return {str(row[0]) for row in rows}

    def list_scoring_rows(self, evaluation_id: str) -> list[ScoringRow]:
        rows = (
            self.db.query(
                EvaluationResult.llm_label,
                EvaluationResult.error_message,
                DatasetMessage.label,
            )
            .outerjoin(DatasetMessage, DatasetMessage.id == EvaluationResult.dataset_message_id)
            .filter(EvaluationResult.evaluation_id == evaluation_id)
            .all()
        )
        return [
            ScoringRow(llm_label=llm_label, error_message=error_message, expected_label=expected_label)
            for llm_label, error_message, expected_label in rows
        ]

    def list_results(self, evaluation_id: str, *, offset: int = 0, limit: int = 50) -> list[dict[str, Any]]:
        rows = (
            self.db.query(EvaluationResult, DatasetMessage)
            .outerjoin(DatasetMessage, DatasetMessage.id == EvaluationResult.dataset_message_id)
            .filter(EvaluationResult.evaluation_id == evaluation_id)
            .order_by(DatasetMessage.ordinal.asc(), EvaluationResult.created_at.asc())
            .offset(max(0, int(offset)))
            .limit(max(1, int(limit)))
            .all()
        )
        return [self.build_result_payload(result, message) for result, message in rows]

    def stop_sequences_for(self, evaluation: Evaluation) -> list[str]:
        return parse_stop_sequences(evaluation.stop_sequences_json)

    def build_result_payload(self, result: EvaluationResult, message: Optional[DatasetMessage]) -> dict[str, Any]:
        return {
            "id": result.id,
            "evaluationId": result.evaluation_id,
            "datasetMessageId": result.dataset_message_id,
            "messageContent": message.message_content if message is not None else None,
            "expectedLabel": message.label if message is not None else None,
            "llmLabel": result.llm_label,
            "llmFullResponse": result.llm_full_response,
            "responseTimeMs": result.response_time_ms,
            "errorMessage": result.error_message,
            "retryCount": result.retry_count,
            "createdAt": result.created_at,
        }

    def build_evaluation_payload(self, evaluation: Evaluation) -> dict[str, Any]:
        prompt = self.db.get(Prompt, evaluation.prompt_id)
        dataset = self.db.get(Dataset, evaluation.dataset_id)
        processed = int(evaluation.processed_messages or 0)
        return {
            "id": evaluation.id,
            "name": evaluation.name,
            "description": evaluation.description,
            "promptId": evaluation.prompt_id,
            "promptName": prompt.name if prompt is not None else None,
            "modelId": prompt.model_id if prompt is not None else None,
            "datasetId": evaluation.dataset_id,
            "datasetName": dataset.name if dataset is not None else None,
            "status": evaluation.status.value,
            "totalMessages": evaluation.total_messages,
            "processedMessages": processed,
            "correctPredictions": evaluation.correct_predictions,
            "incorrectPredictions": evaluation.incorrect_predictions,
            "errorCount": evaluation.error_count,
            "accuracy": evaluation.accuracy,
            "totalTimeMs": evaluation.total_time_ms,
            "avgTimePerMessageMs": round(evaluation.total_time_ms / processed, 2) if processed > 0 else 0,
            "stopSequences": self.stop_sequences_for(evaluation),
            "startedAt": evaluation.started_at,
            "completedAt": evaluation.completed_at,
            "lastHeartbeat": evaluation.last_heartbeat,
            "timeoutAt": evaluation.timeout_at,
            "canResume": bool(evaluation.can_resume),
            "failureReason": evaluation.failure_reason,
            "createdBy": evaluation.created_by,
            "createdAt": evaluation.created_at,
        }

    def _clamp_processed(self, evaluation: Evaluation) -> None:
        total = max(0, int(evaluation.total_messages or 0))
        processed = int(evaluation.processed_messages or 0)
        evaluation.processed_messages = min(max(0, processed), total)
