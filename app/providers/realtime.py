"""Supabase Realtime change feed (Phoenix channel protocol over websockets).

Only ``postgres_changes`` notifications for one table are consumed. The
payload is passed through untouched; consumers treat every message as "the
collection changed" and re-fetch.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, AsyncIterator, Callable
from urllib.parse import urlencode

import websockets

from app.providers.supabase import StoreError

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 25.0  # seconds, server drops idle sockets after ~60s

# first message of every feed, once the server confirmed the join
SUBSCRIBED = "subscribed"


class RealtimeChangeFeed:
    """Yields one message per insert/update/delete on a table."""

    def __init__(
        self,
        url: str,
        anon_key: str,
        table: str,
        *,
        schema: str = "public",
        access_token: Callable[[], str | None] | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._anon_key = anon_key
        self._table = table
        self._schema = schema
        self._access_token = access_token or (lambda: None)
        self._refs = itertools.count(1)
        self.join_ref: str | None = None

    @property
    def topic(self) -> str:
        return f"realtime:{self._schema}:{self._table}"

    def socket_url(self) -> str:
        base = self._url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        query = urlencode({"apikey": self._anon_key, "vsn": "1.0.0"})
        return f"{base}/realtime/v1/websocket?{query}"

    def _message(self, topic: str, event: str, payload: dict[str, Any], ref: str | None = None) -> str:
        ref = ref or str(next(self._refs))
        return json.dumps({"topic": topic, "event": event, "payload": payload, "ref": ref, "join_ref": ref})

    def join_message(self) -> str:
        """The ``phx_join`` frame. Replies to it carry ``self.join_ref``."""
        self.join_ref = str(next(self._refs))
        return self._message(
            self.topic,
            "phx_join",
            {
                "config": {
                    "broadcast": {"self": False},
                    "presence": {"key": ""},
                    "postgres_changes": [
                        {"event": "*", "schema": self._schema, "table": self._table}
                    ],
                },
                "access_token": self._access_token() or self._anon_key,
            },
            ref=self.join_ref,
        )

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(HEARTBEAT_INTERVAL)
            await ws.send(self._message("phoenix", "heartbeat", {}))

    async def changes(self) -> AsyncIterator[dict[str, Any]]:
        """Connect, join the table channel and yield change payloads until closed.

        The first yielded message is ``{"event": "subscribed"}``, sent once the
        server has confirmed the join.
        """
        async with websockets.connect(self.socket_url()) as ws:
            await ws.send(self.join_message())
            heartbeat = asyncio.create_task(self._heartbeat(ws))
            try:
                async for raw in ws:
                    message = json.loads(raw)
                    if message.get("topic") != self.topic:
                        continue
                    event = message.get("event")
                    payload = message.get("payload") or {}
                    if event == "phx_reply" and message.get("ref") == self.join_ref:
                        if payload.get("status") != "ok":
                            raise StoreError(f"Realtime join rejected: {payload.get('response')}")
                        logger.info(f"Joined realtime channel {self.topic}")
                        yield {"event": SUBSCRIBED}
                    elif event in ("phx_close", "phx_error"):
                        logger.info(f"Realtime channel {self.topic} closed by server ({event})")
                        return
                    elif event == "postgres_changes":
                        yield payload.get("data") or payload
            except websockets.ConnectionClosed as e:
                logger.warning(f"Realtime connection for {self.topic} closed: {e}")
            finally:
                heartbeat.cancel()
