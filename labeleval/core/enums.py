from __future__ import annotations

from enum import Enum


class EvaluationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class ObservedStatus(str, Enum):
    """Diagnostic states computed on read; never stored."""

    STUCK = "stuck"
    TIMEOUT = "timeout"


class EventType(str, Enum):
    EVALUATION = "evaluation"
    COMPLETE = "complete"
    LLM_CALL_START = "llm_call_start"
    LLM_CALL_COMPLETE = "llm_call_complete"
    LLM_BATCH_START = "llm_batch_start"
    ERROR = "error"


TERMINAL_STATUSES = (EvaluationStatus.COMPLETED, EvaluationStatus.FAILED)
