from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import httpx

from notifi_printer.adapters.twitch_eventsub import (
    DEFAULT_ENDPOINT,
    ChannelInfo,
    StreamOnlineEvent,
    StreamSession,
    StreamState,
    TwitchEventSubAdapter,
    build_live_job,
)
from notifi_printer.cancellation import CancellationToken
from notifi_printer.metrics import MetricsRegistry

HELIX = "https://api.twitch.test/helix"
REDIRECT = "wss://redirect.twitch.test/ws"


def _frame(message_type: str, payload: dict | None = None) -> str:
    return json.dumps(
        {
            "metadata": {
                "message_id": "m-1",
                "message_type": message_type,
                "message_timestamp": "2024-03-15T13:05:09.123456789Z",
            },
            "payload": payload or {},
        }
    )


def _welcome(session_id: str = "sess-1") -> str:
    return _frame("session_welcome", {"session": {"id": session_id, "status": "connected", "reconnect_url": None}})


def _online(broadcaster_id: str = "123") -> str:
    return _frame(
        "notification",
        {
            "subscription": {"type": "stream.online", "version": "1"},
            "event": {
                "broadcaster_user_id": broadcaster_id,
                "broadcaster_user_login": "streamer",
                "broadcaster_user_name": "Streamer",
                "type": "live",
                "started_at": "2024-03-15T13:05:09Z",
            },
        },
    )


class _FakeSocket:
    def __init__(self, frames: list, on_idle=None) -> None:
        self.frames = list(frames)
        self.closed = False
        self.on_idle = on_idle

    async def recv(self):
        if self.frames:
            frame = self.frames.pop(0)
            if isinstance(frame, BaseException):
                raise frame
            return frame
        if self.on_idle is not None:
            self.on_idle()
            self.on_idle = None
        await asyncio.Event().wait()

    async def close(self) -> None:
        self.closed = True


class _Helix:
    def __init__(self, channel_status: int = 200) -> None:
        self.subscriptions: list[dict] = []
        self.headers: list[httpx.Headers] = []
        self.channel_status = channel_status

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/eventsub/subscriptions"):
            self.subscriptions.append(json.loads(request.content))
            self.headers.append(request.headers)
            return httpx.Response(202, json={"data": []})
        if request.url.path.endswith("/channels"):
            if self.channel_status != 200:
                return httpx.Response(self.channel_status)
            return httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "broadcaster_id": request.url.params["broadcaster_id"],
                            "broadcaster_name": "Streamer",
                            "title": "Playing games",
                            "game_name": "Indie",
                            "tags": ["chill", "co-op"],
                        }
                    ]
                },
            )
        return httpx.Response(404)


def _adapter(helix: _Helix, sockets: list, **config) -> tuple[TwitchEventSubAdapter, list[str]]:
    urls: list[str] = []
    scripted = list(sockets)
    adapter: TwitchEventSubAdapter | None = None

    async def connect(url: str):
        urls.append(url)
        if not scripted:
            adapter.cancel.cancel()
            await asyncio.Event().wait()
        item = scripted.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    adapter = TwitchEventSubAdapter(
        {
            "oauth_token": "oauth:tok",
            "client_id": "cid",
            "broadcaster_ids": ["123", "456"],
            "helix_url": HELIX,
            "reconnect_base_delay_seconds": 0.001,
            **config,
        },
        connect=connect,
        client=httpx.AsyncClient(transport=httpx.MockTransport(helix)),
        cancel=CancellationToken(),
        jobs=asyncio.Queue(maxsize=16),
        metrics=MetricsRegistry(),
    )
    return adapter, urls


async def test_welcome_subscribes_and_notification_prints_channel_metadata():
    helix = _Helix()
    socket = _FakeSocket([_welcome("sess-1"), _online("123")])
    adapter, urls = _adapter(helix, [socket])

    task = asyncio.create_task(adapter.run())
    job = await asyncio.wait_for(adapter.jobs.get(), timeout=1)

    assert adapter.state == StreamState.STREAMING
    assert adapter.session is not None and adapter.session.subscribed == {"123", "456"}
    adapter.cancel.cancel()
    await asyncio.wait_for(task, timeout=1)
    await adapter.client.aclose()

    assert urls == [DEFAULT_ENDPOINT]
    assert [body["condition"]["broadcaster_user_id"] for body in helix.subscriptions] == ["123", "456"]
    assert all(body["transport"] == {"method": "websocket", "session_id": "sess-1"} for body in helix.subscriptions)
    assert all(body["type"] == "stream.online" and body["version"] == "1" for body in helix.subscriptions)
    assert helix.headers[0]["Client-Id"] == "cid"
    assert helix.headers[0]["Authorization"] == "Bearer tok"

    assert job.title == "Streamer is Live"
    assert job.subtitle == "Playing games"
    assert "Category: Indie" in job.message
    assert "Tags: chill, co-op" in job.message
    assert job.timestamp == datetime(2024, 3, 15, 13, 5, 9, tzinfo=timezone.utc)
    assert socket.closed
    assert adapter.state == StreamState.CLOSED


async def test_inactivity_closes_socket_and_reconnects_with_fresh_session():
    helix = _Helix()
    first = _FakeSocket([_welcome("sess-1")])
    second = _FakeSocket([_welcome("sess-2")])
    adapter, urls = _adapter(helix, [first, second], inactivity_timeout_seconds=0.05)

    await asyncio.wait_for(adapter.run(), timeout=2)
    await adapter.client.aclose()

    assert urls == [DEFAULT_ENDPOINT] * 3
    assert first.closed and second.closed
    assert [body["transport"]["session_id"] for body in helix.subscriptions] == ["sess-1", "sess-1", "sess-2", "sess-2"]
    assert adapter.metrics.get("twitch.reconnects") == 2


async def test_session_reconnect_follows_redirect_without_resubscribing():
    helix = _Helix()
    reconnect = _frame(
        "session_reconnect",
        {"session": {"id": "sess-1", "status": "reconnecting", "reconnect_url": REDIRECT}},
    )
    subscribed_after_redirect: list[set[str]] = []
    first = _FakeSocket([_welcome("sess-1"), reconnect])
    second = _FakeSocket(
        [_welcome("sess-1")],
        on_idle=lambda: subscribed_after_redirect.append(set(adapter.session.subscribed)),
    )
    adapter, urls = _adapter(helix, [first, second], inactivity_timeout_seconds=0.05)

    await asyncio.wait_for(adapter.run(), timeout=2)
    await adapter.client.aclose()

    assert urls == [DEFAULT_ENDPOINT, REDIRECT, DEFAULT_ENDPOINT]
    assert first.closed and second.closed
    assert len(helix.subscriptions) == 2
    assert subscribed_after_redirect == [{"123", "456"}]


async def test_connect_failures_and_bad_welcomes_back_off_and_retry():
    helix = _Helix()
    not_json = _FakeSocket(["definitely not json"])
    wrong_first_frame = _FakeSocket([_frame("session_keepalive")])
    adapter, urls = _adapter(helix, [OSError("refused"), not_json, wrong_first_frame])

    await asyncio.wait_for(adapter.run(), timeout=2)
    await adapter.client.aclose()

    assert len(urls) == 4
    assert not_json.closed and wrong_first_frame.closed
    assert helix.subscriptions == []
    assert adapter.jobs.empty()


async def test_frames_inside_a_session():
    helix = _Helix(channel_status=500)
    adapter, _ = _adapter(helix, [])
    session = StreamSession(session_id="sess-1", subscribed={"123", "456"})

    revocation = _frame(
        "revocation",
        {"subscription": {"id": "sub-1", "status": "authorization_revoked", "condition": {"broadcaster_user_id": "123"}}},
    )
    assert await adapter.handle_frame(_frame("session_keepalive"), session)
    assert await adapter.handle_frame(revocation, session)
    assert await adapter.handle_frame(_frame("mystery"), session)
    assert await adapter.handle_frame("{broken", session)
    assert await adapter.handle_frame(_online("456"), session)
    await adapter.client.aclose()

    assert session.subscribed == {"456"}
    assert adapter.metrics.get("events.ignored") == 1
    assert adapter.metrics.get("events.skipped") == 1

    job = adapter.jobs.get_nowait()
    assert job.title == "Streamer is Live"
    assert job.subtitle is None
    assert job.message is None


def test_live_job_omits_empty_channel_fields():
    event = StreamOnlineEvent(broadcaster_user_id="9", broadcaster_user_login="someone")
    channel = ChannelInfo(broadcaster_id="9", broadcaster_name="Someone", title="  ", game_name="Chess", tags=[])
    stamp = datetime(2024, 1, 1, tzinfo=timezone.utc)

    job = build_live_job(event, channel, stamp)

    assert job.title == "Someone is Live"
    assert job.subtitle is None
    assert job.message == "Category: Chess"
    assert build_live_job(event, None, stamp).title == "someone is Live"


async def test_slow_consumer_does_not_count_as_inactivity():
    helix = _Helix()
    socket = _FakeSocket([_welcome("sess-1"), _online("123"), _online("456")])
    adapter, urls = _adapter(helix, [socket], inactivity_timeout_seconds=0.1)
    adapter.jobs = asyncio.Queue(maxsize=1)
    adapter.jobs.put_nowait(
        build_live_job(StreamOnlineEvent(broadcaster_user_id="0", broadcaster_user_name="busy printer"), None, datetime.now(timezone.utc))
    )

    task = asyncio.create_task(adapter.run())
    # Hold the queue full for well past the inactivity window.
    await asyncio.sleep(0.3)
    titles = [(await asyncio.wait_for(adapter.jobs.get(), timeout=1)).title for _ in range(3)]
    adapter.cancel.cancel()
    await asyncio.wait_for(task, timeout=1)
    await adapter.client.aclose()

    assert titles == ["busy printer is Live", "Streamer is Live", "Streamer is Live"]
    assert socket.frames == []
    assert urls == [DEFAULT_ENDPOINT]
    assert adapter.metrics.get("twitch.reconnects") == 0
