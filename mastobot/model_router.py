from __future__ import annotations

import re
import time
from threading import Lock
from typing import Callable, Dict, Optional, Sequence

from .llm.base import LLMClient
from .llm.gemini_client import GeminiClient
from .llm.openai_compat_client import OpenAICompatClient
from .logger_factory import get_logger
from .utils.logfmt import fmt

REVERT_AFTER_SECONDS = 60.0

# Default image-input heuristic, used only for backends missing from the
# configured capability table. It matches family/version fragments of the
# model name and can be wrong for names it has never seen.
IMAGE_CAPABLE_MARKERS: dict[str, re.Pattern] = {
    "gemini": re.compile(r"(vision|flash|pro)", re.IGNORECASE),
    "openai": re.compile(r"(vision|gpt-4o|gpt-4-turbo)", re.IGNORECASE),
}


def build_client_factory(config, provider: str) -> Callable[[str], LLMClient]:
    """Return a factory creating the provider's client; credentials come from ``config``.

    The factory raises ``RuntimeError`` when a mandatory credential is missing.
    """
    timeout = config.request_timeout_seconds()

    if provider == "gemini":
        def _gemini(_backend_id: str) -> LLMClient:
            key = config.gemini_api_key()
            if not key:
                raise RuntimeError("GEMINI_API_KEY is not set")
            return GeminiClient(api_key=key, timeout=timeout)
        return _gemini
    if provider == "openai":
        def _openai(_backend_id: str) -> LLMClient:
            return OpenAICompatClient(
                base_url=config.openai_base_url(),
                api_key=config.openai_api_key(),
                timeout=timeout,
            )
        return _openai
    raise RuntimeError(f"Unsupported LLM_PROVIDER: {provider}")


class ModelRouter:
    """Ordered backend candidates with failover and automatic return to the primary.

    ``candidates[0]`` is the primary. After a switch, the router stays on the
    fallback until ``revert_after_seconds`` pass without another switch; the
    next ``touch_usage()`` then moves it back to the primary.
    """

    def __init__(
        self,
        candidates: Sequence[str],
        *,
        provider: str = "gemini",
        client_factory: Callable[[str], LLMClient],
        capabilities: Optional[Dict[str, dict]] = None,
        revert_after_seconds: float = REVERT_AFTER_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        logger=None,
    ):
        names = [str(c).strip() for c in candidates if str(c).strip()]
        if not names:
            raise ValueError("ModelRouter requires at least one backend candidate")
        self.candidates = names
        self.provider = provider
        self.active_index = 0
        self._clock = clock
        self.last_switch_time = clock()
        self.revert_after_seconds = float(revert_after_seconds)
        self._factory = client_factory
        self._capabilities = dict(capabilities or {})
        self._clients: Dict[str, LLMClient] = {}
        self._clients_lock = Lock()
        self.log = logger or get_logger("ModelRouter")
        self.log.info(f"[router-init] {fmt('provider', provider)} {fmt('candidates', ','.join(names))} {fmt('active', names[0])}")

    def current(self) -> str:
        return self.candidates[self.active_index]

    def touch_usage(self) -> bool:
        now = self._clock()
        if self.active_index != 0 and now - self.last_switch_time >= self.revert_after_seconds:
            self.active_index = 0
            self.last_switch_time = now
            self.log.info(f"[router-revert] {fmt('model', self.current())}")
            return True
        return False

    def advance(self) -> bool:
        nxt = (self.active_index + 1) % len(self.candidates)
        if nxt == self.active_index:
            return False
        prev = self.current()
        self.active_index = nxt
        self.last_switch_time = self._clock()
        self.log.info(f"[router-switch] {fmt('from', prev)} {fmt('to', self.current())}")
        return True

    def get_client(self, backend_id: str) -> LLMClient:
        client = self._clients.get(backend_id)
        if client is not None:
            return client
        with self._clients_lock:
            # Re-check under the lock: another caller may have built it meanwhile
            client = self._clients.get(backend_id)
            if client is None:
                client = self._factory(backend_id)
                self._clients[backend_id] = client
                self.log.debug(f"[router-client-created] {fmt('model', backend_id)} {fmt('client', client.__class__.__name__)}")
        return client

    def supports_images(self, backend_id: str) -> bool:
        caps = self._capabilities.get(backend_id)
        if caps is not None and "images" in caps:
            return bool(caps["images"])
        marker = IMAGE_CAPABLE_MARKERS.get(self.provider)
        return bool(marker and marker.search(backend_id))

    async def aclose(self) -> None:
        with self._clients_lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for c in clients:
            try:
                await c.aclose()
            except Exception as e:
                self.log.debug(f"[router-client-close-error] {fmt('error', e)}")
