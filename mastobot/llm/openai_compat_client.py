from __future__ import annotations

from typing import Optional, Sequence

import httpx

from .base import LLMClient
from ..logger_factory import get_logger
from ..utils.logfmt import fmt


def chat_completions_url(base_url: str) -> str:
    """Accept ``.../v1`` or the full ``.../v1/chat/completions`` endpoint."""
    u = base_url.rstrip("/")
    if u.endswith("/chat/completions"):
        return u
    if u.endswith("/v1"):
        return f"{u}/chat/completions"
    return f"{u}/v1/chat/completions"


def _reply_text(data: dict) -> str:
    content = data["choices"][0]["message"]["content"]
    if isinstance(content, list):
        # some servers answer with content parts
        return "\n".join(
            str(p["text"]) for p in content if isinstance(p, dict) and p.get("type") == "text" and p.get("text")
        ).strip()
    return (content or "").strip()


class OpenAICompatClient(LLMClient):
    """OpenAI chat-completions over httpx; also fits compatible servers (llama.cpp, vLLM, LM Studio).

    The API key is optional since local servers usually run without auth. One
    HTTP request per call; the completion engine owns retries.
    """

    def __init__(
        self,
        *,
        base_url: str = "https://api.openai.com/v1",
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.log = get_logger("OpenAICompat")
        self.chat_url = chat_completions_url(base_url)
        self.api_key = api_key
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def _post(self, payload: dict, headers: dict) -> dict:
        try:
            r = await self._client.post(self.chat_url, json=payload, headers=headers)
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RuntimeError(f"OpenAI HTTP error {e.response.status_code}: {e.response.text[:500]}") from e
        except httpx.HTTPError as e:
            raise RuntimeError(f"OpenAI transport error: {e!r}") from e
        return r.json()

    async def generate_chat(
        self,
        messages: list[dict],
        *,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        stop: Optional[Sequence[str]] = None,
        context_fields: Optional[dict] = None,
    ) -> dict:
        payload: dict = {"model": model, "messages": messages}
        for key, value in (("temperature", temperature), ("top_p", top_p), ("max_tokens", max_tokens)):
            if value is not None:
                payload[key] = value
        if stop:
            payload["stop"] = list(stop)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        data = await self._post(payload, headers)
        try:
            text = _reply_text(data)
        except (AttributeError, KeyError, IndexError, TypeError) as e:
            raise RuntimeError(f"OpenAI-compatible response parse error: {data}") from e

        usage = data.get("usage") or {}
        cf = context_fields or {}
        self.log.debug(f"[llm-provider-finish] {fmt('provider', 'openai')} {fmt('model', model)} {fmt('correlation', cf.get('correlation'))}")
        return {
            "text": text,
            "usage": {
                "input_tokens": usage.get("prompt_tokens"),
                "output_tokens": usage.get("completion_tokens"),
                "total_tokens": usage.get("total_tokens"),
            },
            "provider": "openai",
            "model": model,
        }

    async def aclose(self):
        await self._client.aclose()
