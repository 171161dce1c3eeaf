from __future__ import annotations

import re
from typing import Callable, Iterable, Optional

# Phrases typical of prompt-injection attempts. "システム" / "プロンプト" are
# the Japanese words for "system" / "prompt".
BLOCKED_PATTERNS: tuple[str, ...] = (
    r"ignore previous instructions",
    r"ignore all instructions",
    r"ignore your instructions",
    r"system prompt",
    r"system instruction",
    r"you are a",
    r"act as",
    r"pretend to be",
    r"forget your previous instructions",
    r"disregard",
    r"システム",
    r"プロンプト",
)


class SafetyFilter:
    """Local, side-effect free checks on what goes into and comes out of the model.

    ``system_prompt`` is the text that must never be echoed back. ``date_line``
    returns the date sentence of the current system turn, which betrays a
    leaked system turn even when the prompt body itself is empty.
    """

    def __init__(
        self,
        *,
        error_message: str,
        system_prompt: str = "",
        date_line: Optional[Callable[[], str]] = None,
        extra_patterns: Iterable[str] = (),
    ):
        self.error_message = error_message
        self.system_prompt = system_prompt or ""
        self._date_line = date_line
        self._patterns = [re.compile(p, re.IGNORECASE) for p in (*BLOCKED_PATTERNS, *extra_patterns)]

    def is_input_safe(self, text: str | None) -> bool:
        if not text:
            return True
        return not any(p.search(text) for p in self._patterns)

    def filter_output(self, response: str) -> str:
        if not self.system_prompt:
            return response
        if self.system_prompt in response:
            return self.error_message
        if self._date_line is not None:
            line = self._date_line()
            if line and line in response:
                return self.error_message
        return response
