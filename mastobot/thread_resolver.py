from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from .logger_factory import get_logger
from .text_normalizer import normalize
from .utils.logfmt import fmt
from .utils.time_utils import parse_iso

SELF = "self"
OTHER = "other"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class Turn:
    speaker: str  # SELF | OTHER
    text: str


def _created_at(status: dict) -> datetime:
    return parse_iso(status.get("created_at")) or _EPOCH


def _sorted_ancestors(context: dict) -> list[dict]:
    ancestors = (context or {}).get("ancestors") or []
    # sorted() is stable: equal timestamps keep the server's order
    return sorted(ancestors, key=_created_at)


class ThreadResolver:
    """Walks a status' reply chain through the Mastodon context endpoint.

    ``client`` needs ``get_status_context(status_id) -> {"ancestors": [...]}``
    and ``get_status(status_id) -> status``. ``own_acct`` returns the bot's
    acct at call time, since it is only known once credentials are verified.
    """

    def __init__(self, client, own_acct: Callable[[], str], logger=None):
        self.client = client
        self._own_acct = own_acct
        self.log = logger or get_logger("ThreadResolver")

    def _speaker_of(self, status: dict) -> str:
        acct = ((status or {}).get("account") or {}).get("acct")
        me = self._own_acct()
        return SELF if (me and acct == me) else OTHER

    async def resolve_root(self, status_id: str, has_parent: bool = True) -> str:
        """Return the id of the earliest status in the chain (the status itself when it has no parent)."""
        if not has_parent:
            return str(status_id)
        try:
            context = await self.client.get_status_context(status_id)
        except Exception as e:
            self.log.error(f"[thread-root-error] {fmt('status', status_id)} {fmt('error', e)}")
            return str(status_id)
        ancestors = _sorted_ancestors(context)
        if not ancestors:
            return str(status_id)
        root_id = str(ancestors[0].get("id") or status_id)
        self.log.debug(f"[thread-root] {fmt('status', status_id)} {fmt('root', root_id)} {fmt('depth', len(ancestors))}")
        return root_id

    async def build_transcript(self, status_id: str) -> list[Turn]:
        """Ordered turns for the chain ending at ``status_id``; ``[]`` when the thread can't be fetched."""
        try:
            context = await self.client.get_status_context(status_id)
            current: Optional[dict] = await self.client.get_status(status_id)
        except Exception as e:
            self.log.error(f"[transcript-error] {fmt('status', status_id)} {fmt('error', e)}")
            return []
        turns = [
            Turn(speaker=self._speaker_of(a), text=normalize(a.get("content")))
            for a in _sorted_ancestors(context)
        ]
        if current:
            turns.append(Turn(speaker=self._speaker_of(current), text=normalize(current.get("content"))))
        self.log.debug(f"[transcript-built] {fmt('status', status_id)} {fmt('turns', len(turns))}")
        return turns
