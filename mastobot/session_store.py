from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from threading import RLock
from typing import Awaitable, Callable, Dict, List, Optional

from .logger_factory import get_logger
from .thread_resolver import Turn
from .utils.logfmt import fmt

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_MAX_SESSIONS = 1000
DEFAULT_SWEEP_INTERVAL_SECONDS = 60 * 60


@dataclass
class ConversationSession:
    id: str
    conversant_id: str
    thread_root_id: str
    last_activity: float
    transcript: List[Turn] = field(default_factory=list)

    def touch(self, now: float) -> None:
        # never move backwards, even if the clock source does
        if now > self.last_activity:
            self.last_activity = now


def make_session_id(conversant_id: str, thread_root_id: str) -> str:
    return f"{conversant_id}-{thread_root_id}"


class SessionStore:
    """One active conversation per conversant, evicted by age and capacity.

    The map is guarded by an RLock: ``sweep()`` may run from a timer task or a
    different thread than the mention handler.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        clock: Callable[[], float] = time.monotonic,
        on_evict: Optional[Callable[[ConversationSession], None]] = None,
    ):
        self.ttl_seconds = float(ttl_seconds)
        self.max_sessions = max(0, int(max_sessions))
        self._clock = clock
        self._on_evict = on_evict
        self._lock = RLock()
        # dict order is insertion order; replaced entries are re-inserted at the end
        self._sessions: Dict[str, ConversationSession] = {}
        self.log = get_logger("SessionStore")

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get(self, conversant_id: str) -> ConversationSession | None:
        with self._lock:
            return self._sessions.get(str(conversant_id))

    def _evicted(self, sessions: List[ConversationSession]) -> None:
        if self._on_evict is None:
            return
        for s in sessions:
            try:
                self._on_evict(s)
            except Exception as e:
                self.log.error(f"[session-evict-hook-error] {fmt('session', s.id)} {fmt('error', e)}")

    async def get_or_create(
        self,
        conversant_id: str,
        thread_root_id: str,
        transcript_builder: Callable[[], Awaitable[List[Turn]]],
    ) -> tuple[ConversationSession, bool]:
        """Return ``(session, is_new_conversation)`` for a conversant in a given thread.

        Same root as the stored session: refresh it. No session, or a different
        root: await ``transcript_builder`` and store a fresh session in its place.
        """
        cid = str(conversant_id)
        root = str(thread_root_id)
        with self._lock:
            existing = self._sessions.get(cid)
            if existing is not None and existing.thread_root_id == root:
                existing.touch(self._clock())
                return existing, False

        # The builder does network I/O; never await while holding the lock.
        transcript = list(await transcript_builder() or [])

        session = ConversationSession(
            id=make_session_id(cid, root),
            conversant_id=cid,
            thread_root_id=root,
            last_activity=self._clock(),
            transcript=transcript,
        )
        with self._lock:
            replaced = self._sessions.pop(cid, None)
            self._sessions[cid] = session
        if replaced is not None and replaced.id != session.id:
            self.log.info(f"[session-replaced] {fmt('conversant', cid)} {fmt('old', replaced.id)} {fmt('new', session.id)}")
            self._evicted([replaced])
        else:
            self.log.info(f"[session-new] {fmt('conversant', cid)} {fmt('session', session.id)} {fmt('turns', len(transcript))}")
        return session, True

    def clear(self, conversant_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(str(conversant_id), None)
        if removed is not None:
            self.log.info(f"[session-cleared] {fmt('conversant', conversant_id)} {fmt('session', removed.id)}")
            self._evicted([removed])
        return removed is not None

    def sweep(self) -> int:
        """Drop expired sessions, then the least recently active ones until at capacity."""
        now = self._clock()
        with self._lock:
            expired = [cid for cid, s in self._sessions.items() if now - s.last_activity > self.ttl_seconds]
            removed = [self._sessions.pop(cid) for cid in expired]
            overflow = len(self._sessions) - self.max_sessions
            if overflow > 0:
                # sorted() is stable, so equal timestamps fall back to insertion order
                oldest = sorted(self._sessions.items(), key=lambda item: item[1].last_activity)[:overflow]
                removed.extend(self._sessions.pop(cid) for cid, _ in oldest)
            remaining = len(self._sessions)
        self.log.info(
            f"[session-sweep] {fmt('expired', len(expired))} {fmt('removed', len(removed))} {fmt('remaining', remaining)}"
        )
        self._evicted(removed)
        return len(removed)

    async def sweep_forever(self, interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS) -> None:
        while True:
            await asyncio.sleep(max(1.0, float(interval_seconds)))
            try:
                self.sweep()
            except Exception as e:
                self.log.error(f"[session-sweep-error] {fmt('error', e)}")
