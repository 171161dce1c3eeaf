from __future__ import annotations

import re
from typing import Optional

from .chat_commands import ChatCommands, is_chat_command, is_command
from .completion_engine import CompletionEngine
from .logger_factory import get_logger
from .preference_store import PreferenceStore
from .prompt_library import PromptLibrary, render_past_posts
from .session_store import SessionStore
from .text_normalizer import normalize
from .thread_resolver import ThreadResolver
from .utils.correlation import make_correlation_id
from .utils.logfmt import fmt
from .vision_utils import extract_image_urls


class MentionDispatcher:
    """Turns one mention notification into at most one reply status.

    Own identity (``me_acct``/``me_id``) must be set from verify_credentials
    before the first mention is handled; ``domain`` is the instance host used
    in fully qualified handles.
    """

    def __init__(
        self,
        client,
        *,
        resolver: ThreadResolver,
        sessions: SessionStore,
        engine: CompletionEngine,
        commands: ChatCommands,
        prefs: PreferenceStore,
        prompts: PromptLibrary,
        domain: str,
        include_past_posts: bool = True,
        past_posts_limit: int = 20,
    ):
        self.client = client
        self.resolver = resolver
        self.sessions = sessions
        self.engine = engine
        self.commands = commands
        self.prefs = prefs
        self.prompts = prompts
        self.domain = domain
        self.include_past_posts = include_past_posts
        self.past_posts_limit = past_posts_limit
        self.me_acct = ""
        self.me_id: Optional[str] = None
        self.log = get_logger("MentionDispatcher")

    def set_identity(self, acct: str, account_id: Optional[str]) -> None:
        self.me_acct = acct or ""
        self.me_id = str(account_id) if account_id is not None else None

    # ---------- skip marker ----------
    def _skip_markers(self) -> tuple[str, str]:
        return (f"@{self.me_acct} !", f"@{self.me_acct}@{self.domain} !")

    def has_skip_marker(self, content: str) -> bool:
        if not self.me_acct:
            return False
        return any(m in content for m in self._skip_markers())

    def _strip_own_handles(self, content: str) -> str:
        return content.replace(f"@{self.me_acct}@{self.domain}", "", 1).replace(f"@{self.me_acct}", "", 1).strip()

    # ---------- reply ----------
    def compose_reply(self, text: str, target_acct: str) -> str:
        """Drop the bot's own handles from ``text`` and address it to ``target_acct``."""
        cleaned = text
        if self.me_acct:
            me = re.escape(self.me_acct)
            cleaned = re.sub(rf"@{me}@{re.escape(self.domain)}", self.me_acct, cleaned)
            cleaned = re.sub(rf"@{me}(?![@\w])", self.me_acct, cleaned)
        if cleaned.startswith(f"@{target_acct}"):
            return cleaned
        return f"@{target_acct} {cleaned}"

    async def post_reply(self, status: dict, text: str) -> None:
        acct = ((status.get("account") or {}).get("acct")) or ""
        visibility = status.get("visibility") or "unlisted"
        body = self.compose_reply(text, acct)
        try:
            posted = await self.client.post_status(body, in_reply_to_id=status.get("id"), visibility=visibility)
        except Exception as e:
            self.log.error(f"[reply-error] {fmt('status', status.get('id'))} {fmt('error', e)}")
            return
        self.log.info(
            f"[reply-posted] {fmt('in_reply_to', status.get('id'))} {fmt('id', (posted or {}).get('id'))} "
            f"{fmt('visibility', visibility)}"
        )

    # ---------- context ----------
    async def _past_posts(self) -> str:
        if not self.include_past_posts or not self.me_id:
            return ""
        try:
            statuses = await self.client.get_account_statuses(self.me_id, limit=self.past_posts_limit)
        except Exception as e:
            self.log.error(f"[past-posts-error] {fmt('error', e)}")
            return ""
        return render_past_posts((normalize(s.get("content")) for s in statuses or []), limit=self.past_posts_limit)

    async def _first_image(self, status: dict) -> Optional[str]:
        urls = extract_image_urls(status)
        if not urls:
            return None
        try:
            return await self.client.fetch_image_data_url(urls[0])
        except Exception as e:
            self.log.error(f"[image-fetch-error] {fmt('status', status.get('id'))} {fmt('url', urls[0])} {fmt('error', e)}")
            return None

    # ---------- entry point ----------
    async def handle_mention(self, notification: dict) -> None:
        status = (notification or {}).get("status")
        if not isinstance(status, dict) or not status.get("id"):
            self.log.warning(f"[mention-without-status] {fmt('notification', (notification or {}).get('id'))}")
            return
        account = status.get("account") or {}
        account_id = str(account.get("id") or "")
        acct = str(account.get("acct") or "")
        status_id = str(status["id"])
        correlation = make_correlation_id(status_id, account_id)
        content = normalize(status.get("content"))
        self.log.info(f"[mention] {fmt('acct', acct)} {fmt('status', status_id)} {fmt('correlation', correlation)}")

        if self.has_skip_marker(content):
            message = self._strip_own_handles(content)
            if is_command(message) and is_chat_command(message):
                await self.post_reply(status, self.commands.handle(message, acct, account_id))
            else:
                self.log.debug(f"[mention-skipped] {fmt('status', status_id)} {fmt('correlation', correlation)}")
            return

        image = await self._first_image(status)
        root = await self.resolver.resolve_root(status_id, has_parent=status.get("in_reply_to_id") is not None)
        session, is_new = await self.sessions.get_or_create(
            account_id, root, lambda: self.resolver.build_transcript(status_id)
        )
        past_posts = await self._past_posts()
        system_prompt = self.prompts.read(self.prefs.get_system_prompt(acct), past_posts)
        speaker = account.get("display_name") or account.get("username") or acct
        # a fresh transcript already ends with this mention
        seeded = is_new and bool(session.transcript)
        reply = await self.engine.complete(
            system_prompt,
            session.id,
            speaker,
            "" if seeded else content,
            session.transcript if seeded else (),
            image=image,
            correlation=correlation,
        )
        await self.post_reply(status, reply)
