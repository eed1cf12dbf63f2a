from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp
from sqlalchemy.orm import Session

from labeleval.adapters.model_invocation_adapter import ModelInvocationAdapter
from labeleval.core.enums import EventType
from labeleval.core.settings import EngineSettings
from labeleval.jobs.llm_throttle import LlmThrottle
from labeleval.jobs.store_writer import StoreWriter
from labeleval.repositories.evaluations import EvaluationRepository
from labeleval.services.event_broadcaster import EventBroadcaster
from labeleval.services.label_scoring import extract_label

logger = logging.getLogger(__name__)

MESSAGE_PLACEHOLDER = "{{messageContent}}"
DEFAULT_MAX_TOKENS = 4096
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 0.9


@dataclass(frozen=True)
class PromptSnapshot:
    model_id: str
    prompt_text: str
    opening_tag: str
    closing_tag: str
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stop_sequences: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MessageSnapshot:
    id: str
    message_content: str
    label: bool


@dataclass(frozen=True)
class MessageOutcome:
    message_id: str
    success: bool
    response_time_ms: int
    error: Optional[BaseException] = None


def render_prompt(template: str, message_content: str) -> str:
    # Only the first placeholder is substituted.
    return str(template or "").replace(MESSAGE_PLACEHOLDER, str(message_content or ""), 1)


def resolve_generation_params(prompt: PromptSnapshot, captured_stop_sequences: Optional[list[str]]) -> dict[str, Any]:
    stop_sequences = list(captured_stop_sequences or []) or list(prompt.stop_sequences or [])
    return {
        "max_tokens": prompt.max_tokens if prompt.max_tokens is not None else DEFAULT_MAX_TOKENS,
        "temperature": prompt.temperature if prompt.temperature is not None else DEFAULT_TEMPERATURE,
        "top_p": prompt.top_p if prompt.top_p is not None else DEFAULT_TOP_P,
        "stop_sequences": stop_sequences,
    }


class MessageProcessor:
    """Runs the attempt loop for single messages of one evaluation pass."""

    def __init__(
        self,
        evaluation_id: str,
        prompt: PromptSnapshot,
        *,
        captured_stop_sequences: Optional[list[str]],
        adapter: ModelInvocationAdapter,
        session: aiohttp.ClientSession,
        throttle: LlmThrottle,
        writer: StoreWriter,
        broadcaster: EventBroadcaster,
        settings: EngineSettings,
    ):
        self.evaluation_id = evaluation_id
        self.prompt = prompt
        self.params = resolve_generation_params(prompt, captured_stop_sequences)
        self.adapter = adapter
        self.session = session
        self.throttle = throttle
        self.writer = writer
        self.broadcaster = broadcaster
        self.retry_attempts = max(1, int(settings.retry_attempts))
        self.retry_delay_sec = max(0, int(settings.retry_delay_ms)) / 1000

    async def process(self, message: MessageSnapshot) -> MessageOutcome:
        self.broadcaster.publish(
            self.evaluation_id,
            EventType.LLM_CALL_START,
            {"messageId": message.id},
        )
        prompt_text = render_prompt(self.prompt.prompt_text, message.message_content)

        last_error: Optional[BaseException] = None
        attempts_used = 0
        for attempt in range(self.retry_attempts):
            try:
                await self.throttle.wait_for_cooldown()
                response = await self.adapter.invoke(self.session, self.prompt.model_id, prompt_text, self.params)
            except Exception as exc:
                self.throttle.record_error()
                last_error = exc
                attempts_used = attempt + 1
                logger.warning("Attempt %d failed for message %s: %s", attempts_used, message.id, exc)
                if attempt < self.retry_attempts - 1:
                    await asyncio.sleep(self.retry_delay_sec)
                continue

            label = extract_label(response.content, self.prompt.opening_tag, self.prompt.closing_tag)
            if label is None and attempt == 0 and self.retry_attempts > 1:
                logger.info("Missing tags in response for message %s, retrying immediately", message.id)
                continue

            await self._save(
                message.id,
                llm_label=label,
                llm_full_response=response.content,
                response_time_ms=response.response_time_ms,
                error_message=None,
                retry_count=attempt,
            )
            self.broadcaster.publish(
                self.evaluation_id,
                EventType.LLM_CALL_COMPLETE,
                {"messageId": message.id, "success": True},
            )
            return MessageOutcome(message_id=message.id, success=True, response_time_ms=response.response_time_ms)

        error_message = str(last_error) if last_error is not None and str(last_error) else "Unknown error"
        logger.error("All %d attempts failed for message %s: %s", attempts_used, message.id, error_message)
        await self._save(
            message.id,
            llm_label=None,
            llm_full_response=None,
            response_time_ms=0,
            error_message=error_message,
            retry_count=attempts_used,
        )
        self.broadcaster.publish(
            self.evaluation_id,
            EventType.LLM_CALL_COMPLETE,
            {"messageId": message.id, "success": False, "error": error_message},
        )
        return MessageOutcome(message_id=message.id, success=False, response_time_ms=0, error=last_error)

    async def _save(
        self,
        message_id: str,
        *,
        llm_label: Optional[bool],
        llm_full_response: Optional[str],
        response_time_ms: int,
        error_message: Optional[str],
        retry_count: int,
    ) -> None:
        evaluation_id = self.evaluation_id

        def _write(db: Session) -> str:
            result = EvaluationRepository(db).insert_result(
                evaluation_id=evaluation_id,
                dataset_message_id=message_id,
                llm_label=llm_label,
                llm_full_response=llm_full_response,
                response_time_ms=response_time_ms,
                error_message=error_message,
                retry_count=retry_count,
            )
            return result.id

        result_id = await self.writer.submit(_write)
        logger.debug("Saved result %s for message %s", result_id, message_id)
