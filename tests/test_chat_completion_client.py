from __future__ import annotations

import asyncio

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from labeleval.adapters.model_invocation_adapter import ModelInvocationAdapter
from labeleval.core.errors import ModelInvocationError, ModelRateLimitError
from labeleval.lib.chat_completion_client import build_chat_payload, extract_chat_output_text


def test_build_chat_payload_maps_generation_params():
    payload = build_chat_payload(
        "test-model",
        "Classify: hello",
        {"max_tokens": 4096, "temperature": 0.0, "top_p": 0.9, "stop_sequences": ["</r>", ""]},
    )

    assert payload["model"] == "test-model"
    assert payload["messages"] == [{"role": "user", "content": "Classify: hello"}]
    assert payload["max_tokens"] == 4096
    assert payload["temperature"] == 0.0
    assert payload["top_p"] == 0.9
    assert payload["stop"] == ["</r>"]


def test_build_chat_payload_omits_empty_stop_sequences():
    payload = build_chat_payload("m", "p", {"max_tokens": 10, "stop_sequences": []})
    assert "stop" not in payload
    assert "temperature" not in payload


def test_extract_chat_output_text_reads_message_content():
    resp_json = {"choices": [{"message": {"role": "assistant", "content": "<r>true</r>"}}]}
    assert extract_chat_output_text(resp_json) == "<r>true</r>"
    assert extract_chat_output_text({"choices": [{"text": "legacy"}]}) == "legacy"
    assert extract_chat_output_text({}) == ""


def _run_against(handler, coro_factory):
    async def _scenario():
        app = web.Application()
        app.router.add_post("/v1/chat/completions", handler)
        server = TestServer(app)
        await server.start_server()
        try:
            async with aiohttp.ClientSession() as session:
                return await coro_factory(session, str(server.make_url("/v1")))
        finally:
            await server.close()

    return asyncio.run(_scenario())


def test_adapter_returns_content_and_response_time():
    seen = {}

    async def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = await request.json()
        return web.json_response({"choices": [{"message": {"content": "<r>false</r>"}}]})

    async def _invoke(session, base_url):
        adapter = ModelInvocationAdapter("secret", base_url=base_url, timeout_ms=5000)
        return await adapter.invoke(session, "test-model", "Classify: x", {"max_tokens": 5})

    response = _run_against(handler, _invoke)

    assert response.content == "<r>false</r>"
    assert response.response_time_ms >= 0
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["model"] == "test-model"


def test_adapter_maps_http_429_to_rate_limit_error():
    async def handler(request):
        return web.json_response({"error": {"message": "Too many requests"}}, status=429)

    async def _invoke(session, base_url):
        adapter = ModelInvocationAdapter("secret", base_url=base_url, timeout_ms=5000)
        return await adapter.invoke(session, "test-model", "Classify: x", {})

    with pytest.raises(ModelRateLimitError) as exc_info:
        _run_against(handler, _invoke)
    assert exc_info.value.is_rate_limit


def test_adapter_maps_server_error_to_invocation_error():
    async def handler(request):
        return web.json_response({"error": {"message": "model overloaded"}}, status=500)

    async def _invoke(session, base_url):
        adapter = ModelInvocationAdapter(None, base_url=base_url, timeout_ms=5000)
        return await adapter.invoke(session, "test-model", "Classify: x", {})

    with pytest.raises(ModelInvocationError) as exc_info:
        _run_against(handler, _invoke)
    assert not exc_info.value.is_rate_limit
    assert "model overloaded" in str(exc_info.value)
