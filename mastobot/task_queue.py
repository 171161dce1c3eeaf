from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable

from .logger_factory import get_logger
from .utils.logfmt import fmt
from .utils.time_utils import now_local


@dataclass
class PendingMention:
    notification: dict
    enqueued_at: datetime = field(default_factory=now_local)

    @property
    def status_id(self) -> str | None:
        return ((self.notification or {}).get("status") or {}).get("id")


class MentionsQueue:
    """FIFO of inbound mentions drained by a single worker.

    The stream reader keeps enqueueing while a mention is being handled; the
    worker handles one at a time in arrival order, which keeps replies to the
    same conversant ordered.
    """

    def __init__(self, max_size: int = 100):
        self._q: asyncio.Queue[PendingMention] = asyncio.Queue(maxsize=max_size)
        self.log = get_logger("MentionsQueue")

    def enqueue(self, item: PendingMention) -> bool:
        try:
            self._q.put_nowait(item)
        except asyncio.QueueFull:
            self.log.warning(f"[mention-dropped] {fmt('status', item.status_id)} {fmt('reason', 'queue-full')}")
            return False
        return True

    async def put_notification(self, notification: dict) -> None:
        self.enqueue(PendingMention(notification=notification))

    def size(self) -> int:
        return self._q.qsize()

    async def run(self, handler: Callable[[dict], Awaitable[None]]) -> None:
        while True:
            item = await self._q.get()
            try:
                await handler(item.notification)
            except Exception as e:
                self.log.error(f"[mention-handler-error] {fmt('status', item.status_id)} {fmt('error', e)}")
            finally:
                self._q.task_done()
