from __future__ import annotations

import os
import re
from typing import Optional, Sequence

import httpx

from .base import LLMClient
from ..logger_factory import get_logger
from ..utils.logfmt import fmt

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)


def _image_part(part: dict) -> dict | None:
    url = part.get("image_url")
    if isinstance(url, dict):
        url = url.get("url")
    m = _DATA_URL_RE.match(str(url or ""))
    if not m:
        return None
    return {"inline_data": {"mime_type": m.group("mime"), "data": m.group("data")}}


def to_gemini_payload(messages: list[dict]) -> tuple[dict | None, list[dict]]:
    """Split OpenAI-style messages into (systemInstruction, contents)."""
    system_texts: list[str] = []
    contents: list[dict] = []
    for m in messages:
        role = m.get("role", "user")
        content = m.get("content")
        if role == "system":
            if isinstance(content, str) and content:
                system_texts.append(content)
            continue
        parts: list[dict] = []
        if isinstance(content, list):
            for it in content:
                if not isinstance(it, dict):
                    continue
                if it.get("type") == "text" and it.get("text"):
                    parts.append({"text": str(it["text"])})
                elif it.get("type") in ("image_url", "image"):
                    ip = _image_part(it)
                    if ip is not None:
                        parts.append(ip)
        elif content:
            parts.append({"text": str(content)})
        if not parts:
            continue
        contents.append({"role": "model" if role == "assistant" else "user", "parts": parts})
    system = {"parts": [{"text": "\n\n".join(system_texts)}]} if system_texts else None
    return system, contents
class GeminiClient(LLMClient):
    """Google Generative Language API (``models/{model}:generateContent``) over httpx.

    One HTTP request per call: retries and model switching belong to the
    completion engine, which sees the status code in the raised error.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.log = get_logger("Gemini")
        self.api_key = api_key or os.getenv("GEMINI_API_KEY")
        if not self.api_key:
            raise RuntimeError("Missing GEMINI_API_KEY in environment or constructor")
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

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
        if not model:
            raise RuntimeError("Gemini request without a model name")
        system, contents = to_gemini_payload(messages)
        generation: dict = {}
        if temperature is not None:
            generation["temperature"] = temperature
        if top_p is not None:
            generation["topP"] = top_p
        if max_tokens is not None:
            generation["maxOutputTokens"] = max_tokens
        if stop:
            generation["stopSequences"] = list(stop)
        payload: dict = {"contents": contents}
        if system is not None:
            payload["systemInstruction"] = system
        if generation:
            payload["generationConfig"] = generation

        url = f"{self.base_url}/models/{model}:generateContent"
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        try:
            r = await self._client.post(url, json=payload, headers=headers)
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RuntimeError(f"Gemini HTTP error {e.response.status_code}: {e.response.text[:500]}") from e
        except httpx.HTTPError as e:
            raise RuntimeError(f"Gemini transport error: {e!r}") from e
        data = r.json()

        try:
            candidates = data.get("candidates") or []
            parts = ((candidates[0].get("content") or {}).get("parts") or []) if candidates else []
            text = "".join(str(p.get("text", "")) for p in parts if isinstance(p, dict)).strip()
        except (AttributeError, TypeError, IndexError) as e:
            raise RuntimeError(f"Gemini response parse error: {data}") from e
        usage = data.get("usageMetadata") or {}
        cf = context_fields or {}
        self.log.debug(f"[llm-provider-finish] {fmt('provider', 'gemini')} {fmt('model', model)} {fmt('correlation', cf.get('correlation'))}")
        return {
            "text": text,
            "usage": {
                "input_tokens": usage.get("promptTokenCount"),
                "output_tokens": usage.get("candidatesTokenCount"),
                "total_tokens": usage.get("totalTokenCount"),
            },
            "provider": "gemini",
            "model": model,
        }

    async def aclose(self):
        await self._client.aclose()
