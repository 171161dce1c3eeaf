from __future__ import annotations

import asyncio
import re
import time
from typing import Iterable, Optional, Sequence

from .logger_factory import get_logger, is_full_enabled
from .model_router import ModelRouter
from .prompt_template_engine import PromptTemplateEngine
from .safety_filter import SafetyFilter
from .thread_resolver import SELF, Turn
from .utils.logfmt import fmt

INLINE_ATTEMPTS = 3
DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_CONTEXT_LENGTH = 10
IMAGE_ONLY_PROMPT = "Please describe and analyze this image."

# Matched against the lower-cased error message. These depend on how each
# backend words its errors, so both lists can be replaced from config.
RATE_LIMIT_PATTERNS: tuple[str, ...] = (r"rate limit", r"quota exceeded", r"too many requests", r"429")
NOT_FOUND_PATTERNS: tuple[str, ...] = (r"not found", r"404")


class EmptyResponseError(RuntimeError):
    pass


def _compile(patterns: Iterable[str]) -> list[re.Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


class CompletionEngine:
    """Produces one filtered reply per call, failing over across backends.

    Keeps the running message history of every conversation id. A non-empty
    ``prior_transcript`` replaces that history (fresh or re-rooted session);
    otherwise the new message is appended to what is already there.
    """

    def __init__(
        self,
        *,
        router: ModelRouter,
        safety: SafetyFilter,
        templates: PromptTemplateEngine,
        error_message: str,
        max_context_length: int = DEFAULT_MAX_CONTEXT_LENGTH,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        error_patterns: Optional[dict] = None,
        logger=None,
    ):
        self.router = router
        self.safety = safety
        self.templates = templates
        self.error_message = error_message
        self.max_context_length = max(1, int(max_context_length))
        self.timeout_seconds = float(timeout_seconds)
        self.max_tokens = max_tokens
        self.temperature = temperature
        pats = error_patterns or {}
        self._rate_limit = _compile(pats.get("rate_limit") or RATE_LIMIT_PATTERNS)
        self._not_found = _compile(pats.get("not_found") or NOT_FOUND_PATTERNS)
        self._histories: dict[str, list[dict]] = {}
        self.log = logger or get_logger("CompletionEngine")

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------
    def history(self, conversation_id: str) -> list[dict]:
        return [dict(m) for m in self._histories.get(conversation_id, [])]

    def forget(self, conversation_id: str) -> None:
        self._histories.pop(conversation_id, None)

    def _seed_history(self, conversation_id: str, message: str, prior_transcript: Sequence[Turn]) -> list[dict]:
        history = self._histories.setdefault(conversation_id, [])
        if prior_transcript:
            history[:] = [
                {"role": "assistant" if t.speaker == SELF else "user", "content": t.text}
                for t in prior_transcript
            ]
        if message:
            history.append({"role": "user", "content": message})
        return history

    def _record_failure(self, conversation_id: str) -> str:
        """Close a dangling user turn with the error text so user/assistant turns keep alternating."""
        history = self._histories.get(conversation_id)
        if history and history[-1].get("role") == "user":
            history.append({"role": "assistant", "content": self.error_message})
        return self.error_message

    @staticmethod
    def incoming_text(message: str, prior_transcript: Sequence[Turn] = ()) -> str:
        """The text this call answers: ``message``, or the newest non-self turn of a seeding transcript."""
        if message:
            return message
        for turn in reversed(prior_transcript or ()):
            if turn.speaker != SELF:
                return turn.text
        return ""

    # ------------------------------------------------------------------
    # Error classification
    # ------------------------------------------------------------------
    def classify_error(self, exc: BaseException) -> Optional[str]:
        """Return "rate_limit", "not_found" or None for everything else."""
        if isinstance(exc, asyncio.TimeoutError):
            return None
        msg = str(exc).lower()
        if any(p.search(msg) for p in self._rate_limit):
            return "rate_limit"
        if any(p.search(msg) for p in self._not_found):
            return "not_found"
        return None

    # ------------------------------------------------------------------
    # Prompt assembly
    # ------------------------------------------------------------------
    def _build_messages(
        self,
        history: list[dict],
        *,
        backend: str,
        system_prompt: str,
        speaker_name: str,
        message: str,
        image: Optional[str],
    ) -> list[dict]:
        speaker = speaker_name if (speaker_name and self.safety.is_input_safe(speaker_name)) else None
        system_turn = {
            "role": "system",
            "content": self.templates.render_system_turn(model=backend, body=system_prompt, speaker=speaker),
        }
        turns = [dict(m) for m in history[-self.max_context_length:]]
        if image and turns and turns[-1].get("role") == "user" and self.router.supports_images(backend):
            text = turns[-1].get("content") or message or IMAGE_ONLY_PROMPT
            turns[-1]["content"] = [
                {"type": "text", "text": text},
                {"type": "image_url", "image_url": {"url": image}},
            ]
        return [system_turn, *turns]

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------
    async def _call_backend(self, backend: str, messages: list[dict], cf: dict) -> str:
        client = self.router.get_client(backend)
        result = await asyncio.wait_for(
            client.generate_chat(
                messages,
                model=backend,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                context_fields=cf,
            ),
            timeout=self.timeout_seconds,
        )
        text = result.get("text") if isinstance(result, dict) else result
        if not isinstance(text, str) or not text.strip():
            raise EmptyResponseError("Missing response text")
        return text

    async def _attempt_backend(self, backend: str, messages: list[dict], cf: dict) -> tuple[Optional[str], bool]:
        """Up to three inline attempts on ``backend``; returns ``(text, switched)``."""
        for i in range(INLINE_ATTEMPTS):
            start = time.monotonic()
            try:
                text = await self._call_backend(backend, messages, cf)
            except Exception as e:
                kind = self.classify_error(e)
                last = i == INLINE_ATTEMPTS - 1
                self.log.error(
                    f"[llm-error] {fmt('model', backend)} {fmt('attempt', f'{i + 1}/{INLINE_ATTEMPTS}')} "
                    f"{fmt('kind', kind or type(e).__name__)} {fmt('error', e)} {fmt('correlation', cf.get('correlation'))}"
                )
                if last or kind:
                    if self.router.advance():
                        return None, True
                    if last:
                        break
                continue
            dur_ms = int((time.monotonic() - start) * 1000)
            self.log.info(
                f"[llm-finish] {fmt('model', backend)} {fmt('attempt', i + 1)} {fmt('duration_ms', dur_ms)} "
                f"{fmt('correlation', cf.get('correlation'))}"
            )
            return text, False
        return None, False

    async def complete(
        self,
        system_prompt: str,
        conversation_id: str,
        speaker_name: str,
        message: str,
        prior_transcript: Sequence[Turn] = (),
        image: Optional[str] = None,
        correlation: Optional[str] = None,
    ) -> str:
        """Reply text for ``message``; the configured error text when no usable reply exists."""
        if not self.safety.is_input_safe(self.incoming_text(message, prior_transcript)):
            self.log.info(f"[llm-blocked-input] {fmt('conversation', conversation_id)} {fmt('correlation', correlation)}")
            return self.error_message
        try:
            return await self._complete(system_prompt, conversation_id, speaker_name, message, prior_transcript, image, correlation)
        except Exception as e:
            self.log.error(f"[llm-unexpected-error] {fmt('conversation', conversation_id)} {fmt('error', e)} {fmt('correlation', correlation)}")
            return self._record_failure(conversation_id)

    async def _complete(
        self,
        system_prompt: str,
        conversation_id: str,
        speaker_name: str,
        message: str,
        prior_transcript: Sequence[Turn],
        image: Optional[str],
        correlation: Optional[str],
    ) -> str:
        history = self._seed_history(conversation_id, message, prior_transcript)
        cf = {"conversation": conversation_id, "correlation": correlation, "has_images": bool(image)}
        retry_count = 0
        tried: set[str] = set()
        while True:
            if retry_count > len(tried) * INLINE_ATTEMPTS + 1:
                self.log.error(f"[llm-exhausted] {fmt('conversation', conversation_id)} {fmt('retries', retry_count)} {fmt('correlation', correlation)}")
                return self._record_failure(conversation_id)
            self.router.touch_usage()
            backend = self.router.current()
            tried.add(backend)
            messages = self._build_messages(
                history,
                backend=backend,
                system_prompt=system_prompt,
                speaker_name=speaker_name,
                message=message,
                image=image,
            )
            self.log.debug(
                f"[llm-start] {fmt('model', backend)} {fmt('turns', len(messages))} {fmt('retry', retry_count)} "
                f"{fmt('has_images', bool(image))} {fmt('correlation', correlation)}"
            )
            text, switched = await self._attempt_backend(backend, messages, cf)
            if text is not None:
                filtered = self.safety.filter_output(text)
                if filtered != text:
                    self.log.info(f"[llm-output-filtered] {fmt('model', backend)} {fmt('correlation', correlation)}")
                history.append({"role": "assistant", "content": filtered})
                if is_full_enabled():
                    self.log.info(f"[payload-out] reply={filtered[:1000]} correlation={correlation}")
                return filtered
            if not switched:
                return self._record_failure(conversation_id)
            retry_count += 1
