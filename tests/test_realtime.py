"""Tests for realtime.py message framing and the change stream."""

import json
from urllib.parse import parse_qs, urlparse

import pytest
import websockets

from app.providers.realtime import RealtimeChangeFeed
from app.providers.supabase import StoreError

TOPIC = "realtime:public:content_items"


class FakeSocket:
    """Websocket double. ``script`` builds the server frames once the join ref is known."""

    def __init__(self, feed, script):
        self.feed = feed
        self.script = script
        self.sent: list[dict] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def send(self, raw):
        self.sent.append(json.loads(raw))

    async def __aiter__(self):
        for frame in self.script(self.feed.join_ref):
            if isinstance(frame, Exception):
                raise frame
            yield json.dumps(frame)


def _reply(ref, status="ok", response=None):
    return {"topic": TOPIC, "event": "phx_reply", "ref": ref, "payload": {"status": status, "response": response or {}}}


def _change(record_id):
    return {
        "topic": TOPIC,
        "event": "postgres_changes",
        "ref": None,
        "payload": {"data": {"type": "INSERT", "record": {"id": record_id}}},
    }


@pytest.fixture
def feed():
    return RealtimeChangeFeed("https://project.supabase.co", "anon", "content_items")


@pytest.fixture
def connect(monkeypatch, feed):
    sockets = []

    def install(script):
        def fake_connect(url):
            socket = FakeSocket(feed, script)
            sockets.append(socket)
            return socket

        monkeypatch.setattr("app.providers.realtime.websockets.connect", fake_connect)
        return sockets

    return install


async def _collect(feed):
    return [message async for message in feed.changes()]


class TestRealtimeChangeFeed:
    def test_topic(self):
        feed = RealtimeChangeFeed("https://project.supabase.co", "anon", "content_items")
        assert feed.topic == "realtime:public:content_items"

    def test_socket_url(self):
        feed = RealtimeChangeFeed("https://project.supabase.co/", "anon", "content_items")
        url = urlparse(feed.socket_url())

        assert url.scheme == "wss"
        assert url.netloc == "project.supabase.co"
        assert url.path == "/realtime/v1/websocket"
        assert parse_qs(url.query) == {"apikey": ["anon"], "vsn": ["1.0.0"]}

    def test_join_message_uses_session_token(self):
        feed = RealtimeChangeFeed(
            "https://project.supabase.co", "anon", "content_items", access_token=lambda: "token-1"
        )
        message = json.loads(feed.join_message())

        assert message["event"] == "phx_join"
        assert message["topic"] == "realtime:public:content_items"
        assert message["payload"]["access_token"] == "token-1"
        assert message["payload"]["config"]["postgres_changes"] == [
            {"event": "*", "schema": "public", "table": "content_items"}
        ]

    def test_join_message_falls_back_to_anon_key(self):
        feed = RealtimeChangeFeed("https://project.supabase.co", "anon", "content_items")
        message = json.loads(feed.join_message())
        assert message["payload"]["access_token"] == "anon"

    def test_refs_increase(self):
        feed = RealtimeChangeFeed("https://project.supabase.co", "anon", "content_items")
        first = json.loads(feed.join_message())["ref"]
        second = json.loads(feed.join_message())["ref"]
        assert int(second) == int(first) + 1
        assert feed.join_ref == second


class TestChanges:
    @pytest.mark.asyncio
    async def test_subscribed_after_join_then_changes(self, feed, connect):
        sockets = connect(
            lambda ref: [
                _reply(ref),
                _change("1"),
                {"topic": "phoenix", "event": "phx_reply", "ref": "9", "payload": {"status": "ok"}},
                {"topic": "realtime:public:other", "event": "postgres_changes", "payload": {"data": {}}},
                _change("2"),
                {"topic": TOPIC, "event": "phx_close", "ref": ref, "payload": {}},
                _change("3"),
            ]
        )

        messages = await _collect(feed)

        assert messages == [
            {"event": "subscribed"},
            {"type": "INSERT", "record": {"id": "1"}},
            {"type": "INSERT", "record": {"id": "2"}},
        ]
        assert sockets[0].sent[0]["event"] == "phx_join"
        assert sockets[0].sent[0]["ref"] == feed.join_ref

    @pytest.mark.asyncio
    async def test_changes_before_join_reply_are_still_delivered(self, feed, connect):
        connect(lambda ref: [_change("1"), _reply(ref)])

        messages = await _collect(feed)

        assert messages == [{"type": "INSERT", "record": {"id": "1"}}, {"event": "subscribed"}]

    @pytest.mark.asyncio
    async def test_rejected_join_raises(self, feed, connect):
        connect(lambda ref: [_reply(ref, status="error", response={"reason": "unauthorized"})])

        with pytest.raises(StoreError, match="join rejected"):
            await _collect(feed)

    @pytest.mark.asyncio
    async def test_server_error_ends_feed(self, feed, connect):
        connect(lambda ref: [_reply(ref), {"topic": TOPIC, "event": "phx_error", "ref": ref, "payload": {}}, _change("1")])

        assert await _collect(feed) == [{"event": "subscribed"}]

    @pytest.mark.asyncio
    async def test_connection_closed_ends_quietly(self, feed, connect):
        connect(lambda ref: [_reply(ref), _change("1"), websockets.ConnectionClosed(None, None)])

        messages = await _collect(feed)

        assert messages == [{"event": "subscribed"}, {"type": "INSERT", "record": {"id": "1"}}]
