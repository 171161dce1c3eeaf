import asyncio
import json

import httpx
import pytest

from mastobot.llm.gemini_client import GeminiClient, to_gemini_payload
from mastobot.llm.openai_compat_client import OpenAICompatClient

MESSAGES = [
    {"role": "system", "content": "SYS"},
    {"role": "user", "content": "hi"},
    {"role": "assistant", "content": "hello"},
    {"role": "user", "content": [
        {"type": "text", "text": "what is this?"},
        {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,QUJD"}},
    ]},
]


def test_gemini_payload_mapping():
    system, contents = to_gemini_payload(MESSAGES)
    assert system == {"parts": [{"text": "SYS"}]}
    assert [c["role"] for c in contents] == ["user", "model", "user"]
    assert contents[2]["parts"] == [
        {"text": "what is this?"},
        {"inline_data": {"mime_type": "image/jpeg", "data": "QUJD"}},
    ]


def test_gemini_requires_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    with pytest.raises(RuntimeError):
        GeminiClient()


def test_gemini_generate_chat():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "candidates": [{"content": {"parts": [{"text": "a cat"}]}}],
            "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 2, "totalTokenCount": 5},
        })

    async def run():
        c = GeminiClient(api_key="k", transport=httpx.MockTransport(handler))
        try:
            return await c.generate_chat(MESSAGES, model="gemini-x", temperature=1.8, max_tokens=1024)
        finally:
            await c.aclose()

    out = asyncio.run(run())
    assert out["text"] == "a cat"
    assert out["usage"]["total_tokens"] == 5
    assert seen["url"].endswith("/models/gemini-x:generateContent")
    assert seen["key"] == "k"
    assert seen["body"]["generationConfig"] == {"temperature": 1.8, "maxOutputTokens": 1024}


def test_gemini_rate_limit_surfaces_status():
    transport = httpx.MockTransport(lambda r: httpx.Response(429, text="Resource has been exhausted"))

    async def run():
        c = GeminiClient(api_key="k", transport=transport)
        try:
            await c.generate_chat(MESSAGES, model="gemini-x")
        finally:
            await c.aclose()

    with pytest.raises(RuntimeError, match="429"):
        asyncio.run(run())


def test_openai_generate_chat():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "choices": [{"message": {"content": " ok "}}],
            "usage": {"prompt_tokens": 4, "completion_tokens": 1, "total_tokens": 5},
        })

    async def run():
        c = OpenAICompatClient(api_key="sk", transport=httpx.MockTransport(handler))
        try:
            return await c.generate_chat(MESSAGES, model="gpt-4o")
        finally:
            await c.aclose()

    out = asyncio.run(run())
    assert out["text"] == "ok"
    assert seen["url"] == "https://api.openai.com/v1/chat/completions"
    assert seen["auth"] == "Bearer sk"
    assert seen["body"]["model"] == "gpt-4o"


def test_openai_not_found_surfaces_status():
    transport = httpx.MockTransport(lambda r: httpx.Response(404, text="model not found"))

    async def run():
        c = OpenAICompatClient(transport=transport)
        try:
            await c.generate_chat(MESSAGES, model="gone")
        finally:
            await c.aclose()

    with pytest.raises(RuntimeError, match="404"):
        asyncio.run(run())


def test_server_errors_make_a_single_request():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        return httpx.Response(503, text="overloaded")

    async def run(client):
        try:
            await client.generate_chat(MESSAGES, model="m")
        finally:
            await client.aclose()

    with pytest.raises(RuntimeError, match="Gemini HTTP error 503"):
        asyncio.run(run(GeminiClient(api_key="k", transport=httpx.MockTransport(handler))))
    with pytest.raises(RuntimeError, match="OpenAI HTTP error 503"):
        asyncio.run(run(OpenAICompatClient(transport=httpx.MockTransport(handler))))
    # retrying is left to the completion engine
    assert len(calls) == 2


def test_transport_errors_become_runtime_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async def run():
        c = OpenAICompatClient(transport=httpx.MockTransport(handler))
        try:
            await c.generate_chat(MESSAGES, model="m")
        finally:
            await c.aclose()

    with pytest.raises(RuntimeError, match="transport error"):
        asyncio.run(run())
