from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, Optional

import aiohttp

from labeleval.core.errors import ModelInvocationError, ModelRateLimitError, is_rate_limit_error

DEFAULT_BASE_URL = "https://api.openai.com/v1"


def build_chat_payload(model: str, prompt_text: str, params: Dict[str, Any]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "model": model,
        "messages": [{"role": "user", "content": prompt_text}],
    }
    if params.get("max_tokens") is not None:
        payload["max_tokens"] = int(params["max_tokens"])
    if params.get("temperature") is not None:
        payload["temperature"] = float(params["temperature"])
    if params.get("top_p") is not None:
        payload["top_p"] = float(params["top_p"])
    stop_sequences = [str(item) for item in (params.get("stop_sequences") or []) if str(item)]
    if stop_sequences:
        payload["stop"] = stop_sequences
    return payload


def extract_chat_output_text(resp_json: Dict[str, Any]) -> str:
    choices = (resp_json or {}).get("choices") or []
    chunks: list[str] = []
    if isinstance(choices, list):
        for choice in choices:
            if not isinstance(choice, dict):
                continue
            message = choice.get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                chunks.append(message["content"])
            elif isinstance(choice.get("text"), str):
                chunks.append(choice["text"])
    return "".join(chunks)


def _extract_error_message(body: str) -> str:
    try:
        parsed = json.loads(body)
    except Exception:
        return body[:250]
    error = parsed.get("error") if isinstance(parsed, dict) else None
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"][:250]
    return body[:250]


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


async def chat_completion_once(
    session: aiohttp.ClientSession,
    api_key: Optional[str],
    model: str,
    prompt_text: str,
    params: Dict[str, Any],
    *,
    base_url: str = DEFAULT_BASE_URL,
    timeout_sec: float = 300.0,
) -> tuple[str, int]:
    """Send one chat-completions request and return ``(text, response_time_ms)``.

    HTTP 429 and rate-limit wording in an error body raise
    ``ModelRateLimitError``; every other failure raises ``ModelInvocationError``.
    """
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    url = f"{str(base_url or DEFAULT_BASE_URL).rstrip('/')}/chat/completions"
    payload = build_chat_payload(model, prompt_text, params)

    started = time.perf_counter()
    try:
        async with session.post(
            url,
            headers=headers,
            json=payload,
            timeout=aiohttp.ClientTimeout(total=timeout_sec),
        ) as resp:
            body = await resp.text()
            if resp.status != 200:
                message = f"Model HTTP {resp.status}: {_extract_error_message(body)}"
                if resp.status == 429 or is_rate_limit_error(ModelInvocationError(message)):
                    raise ModelRateLimitError(message, response_time_ms=_elapsed_ms(started), code="RateLimit")
                raise ModelInvocationError(message, response_time_ms=_elapsed_ms(started), code=f"HTTP{resp.status}")
            parsed = json.loads(body)
    except asyncio.TimeoutError as exc:
        raise ModelInvocationError(
            f"Model timeout({int(timeout_sec)}s)",
            response_time_ms=_elapsed_ms(started),
            code="Timeout",
        ) from exc
    except aiohttp.ClientError as exc:
        raise ModelInvocationError(
            f"Model error: {type(exc).__name__}: {str(exc)[:200]}",
            response_time_ms=_elapsed_ms(started),
            code=type(exc).__name__,
        ) from exc
    except json.JSONDecodeError as exc:
        raise ModelInvocationError(
            "Model response is not JSON",
            response_time_ms=_elapsed_ms(started),
            code="InvalidResponse",
        ) from exc

    return extract_chat_output_text(parsed), _elapsed_ms(started)
