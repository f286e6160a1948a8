"""Twitch EventSub websocket adapter for stream.online notifications."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import httpx
import websockets
from pydantic import BaseModel, ConfigDict
from websockets.exceptions import ConnectionClosed, WebSocketException

from notifi_printer.adapters.base import PayloadError, SourceAdapter, parse_payload, parse_response, parse_timestamp
from notifi_printer.cancellation import OperationCancelled
from notifi_printer.contract import PrintJob
from notifi_printer.retry import backoff_delay_seconds

logger = logging.getLogger(__name__)

# Server keepalives every 30s keep a healthy session well inside the inactivity window.
DEFAULT_ENDPOINT = "wss://eventsub.wss.twitch.tv/ws?keepalive_timeout_seconds=30"
HELIX_URL = "https://api.twitch.tv/helix"
INACTIVITY_TIMEOUT_SECONDS = 40.0
MAX_RECONNECT_DELAY_SECONDS = 60.0


class StreamState(str, Enum):
    CONNECTING = "connecting"
    AWAITING_WELCOME = "awaiting_welcome"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class _Model(BaseModel):
    model_config = ConfigDict(extra="ignore")


class MessageMetadata(_Model):
    message_type: str
    message_id: str = ""
    message_timestamp: str = ""
    subscription_type: str = ""


class EventSubMessage(_Model):
    metadata: MessageMetadata
    payload: dict[str, Any] = {}


class SessionInfo(_Model):
    id: str
    status: str = ""
    reconnect_url: str | None = None


class SessionPayload(_Model):
    session: SessionInfo


class StreamOnlineEvent(_Model):
    broadcaster_user_id: str
    broadcaster_user_login: str = ""
    broadcaster_user_name: str = ""
    started_at: str = ""


class NotificationPayload(_Model):
    event: StreamOnlineEvent


class RevocationSubscription(_Model):
    id: str = ""
    status: str = ""
    condition: dict[str, Any] = {}


class RevocationPayload(_Model):
    subscription: RevocationSubscription


class ChannelInfo(_Model):
    broadcaster_id: str
    broadcaster_name: str = ""
    title: str = ""
    game_name: str = ""
    tags: list[str] = []


class ChannelInfoList(_Model):
    data: list[ChannelInfo]


class EventSocket(Protocol):
    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[EventSocket]]


@dataclass
class StreamSession:
    """Per-connection state; a new one is built on every reconnect."""

    session_id: str
    subscribed: set[str] = field(default_factory=set)
    deadline: float = 0.0

    def touch(self, now: float, timeout: float) -> None:
        self.deadline = now + timeout


def decode_message(raw: str | bytes) -> EventSubMessage:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise PayloadError(f"frame is not JSON: {exc}") from exc
    return parse_payload(EventSubMessage, data)


def build_live_job(event: StreamOnlineEvent, channel: ChannelInfo | None, timestamp: datetime) -> PrintJob:
    name = (
        (channel.broadcaster_name if channel else "")
        or event.broadcaster_user_name
        or event.broadcaster_user_login
        or event.broadcaster_user_id
    )
    subtitle = None
    message = None
    if channel is not None:
        subtitle = channel.title.strip() or None
        lines = []
        if channel.game_name:
            lines.append(f"Category: {channel.game_name}")
        if channel.tags:
            lines.append(f"Tags: {', '.join(channel.tags)}")
        message = "\n".join(lines) or None
    return PrintJob(title=f"{name} is Live", subtitle=subtitle, message=message, timestamp=timestamp)


class TwitchEventSubAdapter(SourceAdapter):
    """Announce tracked broadcasters going live.

    Every outer iteration walks Connecting -> AwaitingWelcome -> (Subscribing)
    -> Streaming on a fresh socket and session. Streaming ends on inactivity,
    a ``session_reconnect`` message or a close frame, after which the loop
    starts over. Only the cancellation token ends the adapter.

    A ``session_reconnect`` redirect is honored: the old socket is closed, the
    next iteration connects to the redirect endpoint and skips subscribing,
    since subscriptions move with the session. If that connection fails, the
    redirect is dropped and the next iteration starts a fresh session.
    """

    name = "twitch"

    def __init__(self, config: dict[str, Any], *, connect: Connector | None = None, **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        self.endpoint = str(config.get("endpoint") or DEFAULT_ENDPOINT)
        self.helix_url = str(config.get("helix_url") or HELIX_URL).rstrip("/")
        self.broadcaster_ids = [str(x) for x in config.get("broadcaster_ids") or []]
        self.inactivity_timeout_seconds = float(config.get("inactivity_timeout_seconds", INACTIVITY_TIMEOUT_SECONDS))
        self.reconnect_base_delay_seconds = float(config.get("reconnect_base_delay_seconds", 1.0))
        self.connect: Connector = connect or websockets.connect
        self.state = StreamState.CONNECTING
        self.session: StreamSession | None = None
        self.redirect_url: str | None = None
        self._failures = 0
        self._migrated_subscriptions: set[str] = set()

    def _helix_headers(self) -> dict[str, str]:
        token = str(self.config.get("oauth_token") or "")
        if token.startswith("oauth:"):
            token = token[len("oauth:"):]
        return {"Client-Id": str(self.config.get("client_id") or ""), "Authorization": f"Bearer {token}"}

    async def run(self) -> None:
        try:
            while not self.cancel.is_cancelled():
                await self.run_once()
        except OperationCancelled:
            pass
        self.state = StreamState.CLOSED
        logger.debug("Cancel signal caught! Stopping service adapter=%s", self.name)

    async def run_once(self) -> None:
        redirected = self.redirect_url is not None
        url = self.redirect_url or self.endpoint
        self.redirect_url = None
        self.session = None
        migrated = self._migrated_subscriptions if redirected else set()
        self._migrated_subscriptions = set()

        self.state = StreamState.CONNECTING
        try:
            socket = await self.cancel.wait_for(self.connect(url))
        except (OSError, WebSocketException) as exc:
            logger.error("Unable to connect adapter=%s url=%s error=%s", self.name, url, exc)
            await self._backoff()
            return

        welcomed = False
        try:
            self.state = StreamState.AWAITING_WELCOME
            try:
                session = await self._await_welcome(socket)
            except (PayloadError, ConnectionClosed, asyncio.TimeoutError) as exc:
                logger.error("No valid welcome message adapter=%s url=%s error=%s", self.name, url, exc)
            else:
                welcomed = True
                self._failures = 0
                self.session = session
                logger.info(
                    "Connected adapter=%s session_id=%s redirected=%s", self.name, session.session_id, redirected
                )
                if redirected:
                    # Subscriptions move with the session on a server-initiated reconnect.
                    session.subscribed.update(migrated)
                else:
                    self.state = StreamState.SUBSCRIBING
                    await self.subscribe_all(session)

                self.state = StreamState.STREAMING
                await self._stream(socket, session)
                self.state = StreamState.RECONNECTING
                self.metrics.inc("twitch.reconnects")
        finally:
            await self._close(socket)
            if self.redirect_url is not None and self.session is not None:
                self._migrated_subscriptions = set(self.session.subscribed)
            self.session = None

        if not welcomed:
            await self._backoff()

    async def _backoff(self) -> None:
        self._failures += 1
        delay = backoff_delay_seconds(
            self._failures,
            base=self.reconnect_base_delay_seconds,
            cap=MAX_RECONNECT_DELAY_SECONDS,
        )
        self.state = StreamState.RECONNECTING
        logger.info("Reconnecting adapter=%s attempt=%s delay=%.1fs", self.name, self._failures, delay)
        await self.cancel.sleep(delay)

    async def _recv(self, socket: EventSocket, timeout: float) -> str | bytes:
        return await self.cancel.wait_for(asyncio.wait_for(socket.recv(), timeout=max(0.0, timeout)))

    async def _await_welcome(self, socket: EventSocket) -> StreamSession:
        # Ping/pong control frames are answered by the websocket layer, so the
        # first application frame must be the welcome.
        raw = await self._recv(socket, self.inactivity_timeout_seconds)
        message = decode_message(raw)
        if message.metadata.message_type != "session_welcome":
            raise PayloadError(f"expected session_welcome, got {message.metadata.message_type}")
        payload = parse_payload(SessionPayload, message.payload)
        return StreamSession(session_id=payload.session.id)

    async def subscribe_all(self, session: StreamSession) -> None:
        for broadcaster_id in self.broadcaster_ids:
            body = {
                "type": "stream.online",
                "version": "1",
                "condition": {"broadcaster_user_id": broadcaster_id},
                "transport": {"method": "websocket", "session_id": session.session_id},
            }
            try:
                response = await self.client.post(
                    f"{self.helix_url}/eventsub/subscriptions",
                    headers=self._helix_headers(),
                    json=body,
                )
            except httpx.HTTPError as exc:
                logger.error("Subscription failed adapter=%s broadcaster_id=%s error=%s", self.name, broadcaster_id, exc)
                continue
            logger.debug("Subscription status: broadcaster_id=%s status=%s", broadcaster_id, response.status_code)
            if response.status_code in {200, 202}:
                session.subscribed.add(broadcaster_id)
            else:
                logger.warning(
                    "Subscription rejected adapter=%s broadcaster_id=%s status=%s body=%s",
                    self.name,
                    broadcaster_id,
                    response.status_code,
                    response.text[:200],
                )

    async def _stream(self, socket: EventSocket, session: StreamSession) -> None:
        loop = asyncio.get_running_loop()
        session.touch(loop.time(), self.inactivity_timeout_seconds)
        while True:
            try:
                raw = await self._recv(socket, session.deadline - loop.time())
            except asyncio.TimeoutError:
                logger.warning(
                    "No frame for %.0fs, treating connection as dead adapter=%s session_id=%s",
                    self.inactivity_timeout_seconds,
                    self.name,
                    session.session_id,
                )
                return
            except ConnectionClosed as exc:
                logger.info("Twitch ended websocket connection adapter=%s detail=%s", self.name, exc)
                return
            session.touch(loop.time(), self.inactivity_timeout_seconds)
            if not await self.handle_frame(raw, session):
                return
            # Frame handling time, such as waiting on a full queue, is not inactivity.
            session.touch(loop.time(), self.inactivity_timeout_seconds)

    async def handle_frame(self, raw: str | bytes, session: StreamSession) -> bool:
        """Handle one inbound frame; returns False when streaming should end."""
        try:
            message = decode_message(raw)
        except PayloadError as exc:
            self.skip("frame", exc)
            return True

        message_type = message.metadata.message_type
        if message_type == "session_keepalive":
            logger.debug("Keepalive message got")
        elif message_type == "session_reconnect":
            try:
                payload = parse_payload(SessionPayload, message.payload)
            except PayloadError as exc:
                self.skip("session_reconnect", exc)
            else:
                self.redirect_url = payload.session.reconnect_url
            logger.info("Server requested reconnect adapter=%s redirect=%s", self.name, self.redirect_url)
            return False
        elif message_type == "notification":
            await self._handle_notification(message)
        elif message_type == "revocation":
            self._handle_revocation(message, session)
        else:
            self.metrics.inc("events.ignored")
            logger.info("Ignoring message adapter=%s message_type=%s", self.name, message_type)
        return True

    async def _handle_notification(self, message: EventSubMessage) -> None:
        try:
            payload = parse_payload(NotificationPayload, message.payload)
        except PayloadError as exc:
            self.skip("notification", exc)
            return
        event = payload.event
        timestamp = _first_timestamp(event.started_at, message.metadata.message_timestamp)
        channel = await self.fetch_channel(event.broadcaster_user_id)
        await self.emit(build_live_job(event, channel, timestamp))

    def _handle_revocation(self, message: EventSubMessage, session: StreamSession) -> None:
        try:
            payload = parse_payload(RevocationPayload, message.payload)
        except PayloadError as exc:
            self.skip("revocation", exc)
            return
        broadcaster_id = str(payload.subscription.condition.get("broadcaster_user_id") or "")
        session.subscribed.discard(broadcaster_id)
        logger.warning(
            "Subscription revoked adapter=%s broadcaster_id=%s status=%s",
            self.name,
            broadcaster_id,
            payload.subscription.status,
        )

    async def fetch_channel(self, broadcaster_id: str) -> ChannelInfo | None:
        try:
            response = await self.client.get(
                f"{self.helix_url}/channels",
                params={"broadcaster_id": broadcaster_id},
                headers=self._helix_headers(),
            )
            response.raise_for_status()
            channels = parse_response(ChannelInfoList, response)
        except (httpx.HTTPError, PayloadError) as exc:
            logger.warning("Unable to fetch channel info adapter=%s broadcaster_id=%s error=%s", self.name, broadcaster_id, exc)
            return None
        return channels.data[0] if channels.data else None

    async def _close(self, socket: EventSocket) -> None:
        try:
            await socket.close()
        except (OSError, WebSocketException) as exc:
            logger.debug("Error closing socket adapter=%s error=%s", self.name, exc)


def _first_timestamp(*candidates: str) -> datetime:
    for candidate in candidates:
        if not candidate:
            continue
        try:
            return parse_timestamp(candidate)
        except PayloadError:
            continue
    return datetime.now().astimezone()
