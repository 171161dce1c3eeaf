from __future__ import annotations

import asyncio
import base64
import json
from typing import Awaitable, Callable, Optional

import httpx
import websockets

from .logger_factory import get_logger
from .utils.logfmt import fmt

NotificationHandler = Callable[[dict], Awaitable[None]]


class MastodonClient:
    """Thin async wrapper over the Mastodon REST endpoints the bot needs."""

    def __init__(
        self,
        server: str,
        access_token: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server = server.rstrip("/")
        self.access_token = access_token
        self.domain = self.server.split("://", 1)[1] if "://" in self.server else self.server
        self._client = httpx.AsyncClient(
            base_url=self.server,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=timeout,
            transport=transport,
        )
        # media often lives on another host; never send the token there
        self._media = httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True)
        self.log = get_logger("Mastodon")

    async def _get(self, path: str, params: Optional[dict] = None):
        r = await self._client.get(path, params=params)
        r.raise_for_status()
        return r.json()

    async def verify_credentials(self) -> dict:
        return await self._get("/api/v1/accounts/verify_credentials")

    async def get_status(self, status_id: str) -> dict:
        return await self._get(f"/api/v1/statuses/{status_id}")

    async def get_status_context(self, status_id: str) -> dict:
        return await self._get(f"/api/v1/statuses/{status_id}/context")

    async def get_account_statuses(self, account_id: str, limit: int = 20) -> list[dict]:
        return await self._get(f"/api/v1/accounts/{account_id}/statuses", params={"limit": limit})

    async def post_status(self, text: str, *, in_reply_to_id: Optional[str] = None, visibility: str = "unlisted") -> dict:
        payload: dict = {"status": text, "visibility": visibility}
        if in_reply_to_id:
            payload["in_reply_to_id"] = in_reply_to_id
        r = await self._client.post("/api/v1/statuses", json=payload)
        r.raise_for_status()
        return r.json()

    async def fetch_image_data_url(self, url: str) -> str:
        """Download ``url`` (absolute, possibly on a media host) and return a base64 data URL."""
        r = await self._media.get(url)
        if r.status_code >= 400:
            raise RuntimeError(f"Failed to fetch image: HTTP {r.status_code}")
        content_type = (r.headers.get("content-type") or "image/png").split(";", 1)[0].strip()
        return f"data:{content_type};base64,{base64.b64encode(r.content).decode('ascii')}"

    def streaming_url(self) -> str:
        if self.server.startswith("https://"):
            base = "wss://" + self.server[len("https://"):]
        elif self.server.startswith("http://"):
            base = "ws://" + self.server[len("http://"):]
        else:
            base = "wss://" + self.server
        return f"{base}/api/v1/streaming?stream=user"

    async def aclose(self) -> None:
        await self._client.aclose()
        await self._media.aclose()


class MastodonStream:
    """User stream subscription with a fixed-delay reconnect loop.

    Connection errors and server-side closes both lead to a reconnect after
    ``reconnect_delay`` seconds, indefinitely, until ``stop()`` is called.
    """

    def __init__(
        self,
        client: MastodonClient,
        on_notification: NotificationHandler,
        *,
        reconnect_delay: float = 5.0,
        connect: Callable = websockets.connect,
    ):
        self.client = client
        self.on_notification = on_notification
        self.reconnect_delay = float(reconnect_delay)
        self._connect = connect
        self._ws = None
        self._running = False
        self.log = get_logger("MastodonStream")

    def _open(self):
        headers = {"Authorization": f"Bearer {self.client.access_token}"}
        return self._connect(self.client.streaming_url(), additional_headers=headers)

    async def run(self) -> None:
        self._running = True
        while self._running:
            try:
                self.log.info(f"[stream-connecting] {fmt('server', self.client.server)}")
                async with self._open() as ws:
                    self._ws = ws
                    self.log.info("[stream-connected]")
                    async for raw in ws:
                        await self._dispatch(raw)
                self.log.info("[stream-closed]")
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.log.error(f"[stream-error] {fmt('error', e)}")
            finally:
                self._ws = None
            if self._running:
                self.log.info(f"[stream-reconnect] {fmt('delay_s', self.reconnect_delay)}")
                await asyncio.sleep(self.reconnect_delay)

    async def _dispatch(self, raw) -> None:
        try:
            frame = json.loads(raw)
            if frame.get("event") != "notification":
                return
            payload = frame.get("payload")
            notification = json.loads(payload) if isinstance(payload, str) else payload
        except (json.JSONDecodeError, TypeError, AttributeError):
            self.log.warning(f"[stream-bad-frame] {fmt('raw', str(raw)[:100])}")
            return
        if not isinstance(notification, dict) or notification.get("type") != "mention":
            return
        try:
            await self.on_notification(notification)
        except Exception as e:
            self.log.error(f"[stream-handler-error] {fmt('error', e)}")

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
