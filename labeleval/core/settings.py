from __future__ import annotations

import datetime as dt
import math
import os
from dataclasses import dataclass, field

_PROCESS_STARTED_AT = dt.datetime.utcnow()


def _env_int(key: str, default: int) -> int:
    raw_value = str(os.getenv(key, "")).strip()
    if not raw_value:
        return default
    try:
        parsed = int(raw_value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _env_float(key: str, default: float) -> float:
    raw_value = str(os.getenv(key, "")).strip()
    if not raw_value:
        return default
    try:
        parsed = float(raw_value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _env_datetime(key: str, default: dt.datetime) -> dt.datetime:
    raw_value = str(os.getenv(key, "")).strip()
    if not raw_value:
        return default
    try:
        parsed = dt.datetime.fromisoformat(raw_value.replace("Z", "+00:00"))
    except ValueError:
        return default
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(dt.timezone.utc).replace(tzinfo=None)
    return parsed


def _normalize_url(value: str) -> str:
    return str(value or "").strip().rstrip("/")


@dataclass(frozen=True)
class EngineSettings:
    max_concurrent: int = 5
    concurrency_ratio: float = 0.8
    retry_attempts: int = 3
    retry_delay_ms: int = 500
    llm_error_delay_ms: int = 5000
    llm_timeout_ms: int = 300000
    timeout_hours: float = 2.0
    heartbeat_stale_minutes: float = 5.0
    progress_flush_every: int = 10
    backoff_decay_ms: int = 100
    backoff_floor_ms: int = 1000
    backoff_cap_ms: int = 60000
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: str | None = None
    process_started_at: dt.datetime = field(default_factory=lambda: _PROCESS_STARTED_AT)

    @property
    def effective_concurrency(self) -> int:
        return max(1, int(math.floor(self.max_concurrent * self.concurrency_ratio)))

    def public_payload(self) -> dict:
        return {
            "maxConcurrentLLMRequests": self.max_concurrent,
            "evaluationConcurrencyRatio": self.concurrency_ratio,
            "effectiveConcurrency": self.effective_concurrency,
            "llmRequestRetryAttempts": self.retry_attempts,
            "llmRequestRetryDelayMs": self.retry_delay_ms,
            "llmErrorDelayMs": self.llm_error_delay_ms,
            "evaluationTimeoutHours": self.timeout_hours,
        }


def resolve_llm_api_key() -> str | None:
    return (os.getenv("LABELEVAL_LLM_API_KEY") or os.getenv("OPENAI_API_KEY") or "").strip() or None


def load_settings() -> EngineSettings:
    return EngineSettings(
        max_concurrent=_env_int("MAX_CONCURRENT_LLM_REQUESTS", 5),
        concurrency_ratio=_env_float("EVALUATION_CONCURRENCY_RATIO", 0.8),
        retry_attempts=_env_int("LLM_REQUEST_RETRY_ATTEMPTS", 3),
        retry_delay_ms=_env_int("LLM_REQUEST_RETRY_DELAY_MS", 500),
        llm_error_delay_ms=_env_int("LLM_ERROR_DELAY_MS", 5000),
        llm_timeout_ms=_env_int("LLM_TIMEOUT_MS", 300000),
        timeout_hours=_env_float("EVALUATION_TIMEOUT_HOURS", 2.0),
        heartbeat_stale_minutes=_env_float("EVALUATION_HEARTBEAT_STALE_MINUTES", 5.0),
        progress_flush_every=_env_int("EVALUATION_PROGRESS_FLUSH_EVERY", 10),
        llm_base_url=_normalize_url(os.getenv("LABELEVAL_LLM_BASE_URL", "")) or "https://api.openai.com/v1",
        llm_api_key=resolve_llm_api_key(),
        process_started_at=_env_datetime("SERVER_START_TIME", _PROCESS_STARTED_AT),
    )
