from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import aiohttp

from labeleval.lib.chat_completion_client import DEFAULT_BASE_URL, chat_completion_once


@dataclass(frozen=True)
class ModelResponse:
    content: str
    response_time_ms: int


class ModelInvocationAdapter:
    def __init__(self, api_key: Optional[str], base_url: str = DEFAULT_BASE_URL, timeout_ms: int = 300000):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout_sec = max(1.0, float(timeout_ms or 1000) / 1000.0)

    async def invoke(
        self,
        session: aiohttp.ClientSession,
        model_id: str,
        prompt_text: str,
        params: dict[str, Any],
    ) -> ModelResponse:
        content, response_time_ms = await chat_completion_once(
            session,
            self.api_key,
            model_id,
            prompt_text,
            params,
            base_url=self.base_url,
            timeout_sec=self.timeout_sec,
        )
        return ModelResponse(content=content, response_time_ms=response_time_ms)
