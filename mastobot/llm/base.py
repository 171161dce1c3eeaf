from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Sequence


class LLMClient(ABC):
    """One completion backend.

    ``messages`` are OpenAI-style dicts with roles system/user/assistant;
    a user ``content`` may be a list of parts (``text`` / ``image_url``).
    Implementations return ``{"text": str, "usage": {...}}`` and raise
    ``RuntimeError`` carrying the HTTP status on failure so callers can
    classify it.
    """

    @abstractmethod
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
        ...

    async def aclose(self) -> None:
        return None
