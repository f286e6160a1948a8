"""Bluesky notifications adapter with session lifecycle handling."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from notifi_printer.adapters.base import PayloadError, SourceAdapter, parse_payload, parse_response, parse_timestamp
from notifi_printer.cancellation import OperationCancelled
from notifi_printer.contract import PrintJob

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_URL = "https://bsky.social"
DEFAULT_PUBLIC_URL = "https://public.api.bsky.app"
CREATE_SESSION_PATH = "/xrpc/com.atproto.server.createSession"
REFRESH_SESSION_PATH = "/xrpc/com.atproto.server.refreshSession"
LIST_NOTIFICATIONS_PATH = "/xrpc/app.bsky.notification.listNotifications"
UPDATE_SEEN_PATH = "/xrpc/app.bsky.notification.updateSeen"
GET_PROFILE_PATH = "/xrpc/app.bsky.actor.getProfile"

DEFAULT_SUPPRESSED_REASONS = ("like",)
TOKEN_ERRORS = frozenset({"ExpiredToken", "InvalidToken"})
_POST_TITLES = {
    "reply": ("Bsky: New reply", "said"),
    "mention": ("Bsky: New mention", "mentioned you"),
    "quote": ("Bsky: New quote", "quoted you"),
}


class BskyTokenExpired(Exception):
    """The access token was rejected; the session must be refreshed."""


class BskyRequestError(Exception):
    def __init__(self, operation: str, status_code: int, body: str = "") -> None:
        super().__init__(f"{operation} failed status={status_code} body={body[:200]}")
        self.operation = operation
        self.status_code = status_code


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class BskySession(_Model):
    access_jwt: str = Field(..., alias="accessJwt", min_length=1)
    refresh_jwt: str = Field(..., alias="refreshJwt", min_length=1)


class BskyAuthor(_Model):
    did: str
    handle: str
    display_name: str = Field("", alias="displayName")


class BskyRecord(_Model):
    created_at: str = Field(..., alias="createdAt")
    text: str = ""


class BskyNotification(_Model):
    uri: str = ""
    reason: str
    is_read: bool = Field(True, alias="isRead")
    indexed_at: str = Field("", alias="indexedAt")
    author: BskyAuthor
    record: BskyRecord


class BskyNotificationList(_Model):
    notifications: list[dict[str, Any]]


class BskyProfile(_Model):
    did: str
    handle: str
    display_name: str = Field("", alias="displayName")
    description: str = ""
    followers_count: int = Field(0, alias="followersCount")
    follows_count: int = Field(0, alias="followsCount")
    posts_count: int = Field(0, alias="postsCount")


def _iso_millis(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class BskyNotificationsAdapter(SourceAdapter):
    """Print unread Bluesky notifications.

    Session states: no refresh token means the adapter never logged in; an
    absent access token with a retained refresh token means the session
    expired and is refreshed before the next listing. A failed refresh drops
    the refresh token so the following iteration logs in from scratch.
    """

    name = "bsky"

    def __init__(self, config: dict[str, Any], **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        self.service_url = str(config.get("service_url") or DEFAULT_SERVICE_URL).rstrip("/")
        self.public_url = str(config.get("public_url") or DEFAULT_PUBLIC_URL).rstrip("/")
        self.poll_interval_seconds = float(config.get("poll_interval_seconds", 10))
        reasons = config.get("suppressed_reasons")
        if not isinstance(reasons, (list, tuple)):
            reasons = DEFAULT_SUPPRESSED_REASONS
        self.suppressed_reasons = frozenset(str(reason).strip() for reason in reasons if str(reason).strip())
        self.access_jwt: str | None = None
        self.refresh_jwt: str | None = None
        self.pending_seen_at: datetime | None = None

    async def run(self) -> None:
        try:
            await self._loop()
        except OperationCancelled:
            pass
        logger.debug("Cancel signal caught! Stopping service adapter=%s", self.name)

    async def _loop(self) -> None:
        while not self.cancel.is_cancelled():
            if self.refresh_jwt is None:
                if not await self.create_session():
                    if await self.cancel.sleep(self.poll_interval_seconds):
                        return
                    continue
            elif self.access_jwt is None:
                if not await self.refresh_session():
                    logger.error("Unable to refresh session! Going to remake session from scratch...")
                    self.refresh_jwt = None
                    continue

            listed_at = datetime.now(timezone.utc)
            try:
                unread = await self.list_unread()
            except BskyTokenExpired:
                logger.info("Access token expired adapter=%s", self.name)
                self.access_jwt = None
                continue
            except (httpx.HTTPError, BskyRequestError, PayloadError) as exc:
                logger.error("Unable to list notifications adapter=%s error=%s", self.name, exc)
                unread = None

            if unread:
                await self._process(unread, listed_at)
            elif unread is not None and self.pending_seen_at is not None:
                await self._mark_seen(self.pending_seen_at)

            if await self.cancel.sleep(self.poll_interval_seconds):
                return

    def _auth(self, token: str | None) -> dict[str, str]:
        return {"Authorization": f"Bearer {token or ''}"}

    async def create_session(self) -> bool:
        try:
            response = await self.client.post(
                f"{self.service_url}{CREATE_SESSION_PATH}",
                json={"identifier": self.config.get("identifier") or "", "password": self.config.get("password") or ""},
            )
            if response.status_code != 200:
                raise BskyRequestError("createSession", response.status_code, response.text)
            session = parse_response(BskySession, response)
        except (httpx.HTTPError, BskyRequestError, PayloadError) as exc:
            logger.error("Unable to create session adapter=%s error=%s", self.name, exc)
            return False
        self.access_jwt = session.access_jwt
        self.refresh_jwt = session.refresh_jwt
        logger.info("Session created adapter=%s", self.name)
        return True

    async def refresh_session(self) -> bool:
        logger.debug("Refreshing session token")
        try:
            response = await self.client.post(
                f"{self.service_url}{REFRESH_SESSION_PATH}",
                headers=self._auth(self.refresh_jwt),
            )
            if response.status_code != 200:
                raise BskyRequestError("refreshSession", response.status_code, response.text)
            session = parse_response(BskySession, response)
        except (httpx.HTTPError, BskyRequestError, PayloadError) as exc:
            logger.error("Session refresh failed adapter=%s error=%s", self.name, exc)
            return False
        self.access_jwt = session.access_jwt
        self.refresh_jwt = session.refresh_jwt
        logger.info("Session token refreshed!")
        return True

    async def list_unread(self) -> list[BskyNotification]:
        response = await self.client.get(
            f"{self.service_url}{LIST_NOTIFICATIONS_PATH}",
            headers=self._auth(self.access_jwt),
        )
        if _is_token_error(response):
            raise BskyTokenExpired()
        if response.status_code != 200:
            raise BskyRequestError("listNotifications", response.status_code, response.text)
        envelope = parse_response(BskyNotificationList, response)
        unread: list[BskyNotification] = []
        for raw in envelope.notifications:
            try:
                notification = parse_payload(BskyNotification, raw)
            except PayloadError as exc:
                self.skip("notification", exc)
                continue
            if not notification.is_read:
                unread.append(notification)
        return unread

    async def _process(self, unread: list[BskyNotification], listed_at: datetime) -> None:
        already_printed = self.pending_seen_at
        for notification in unread:
            if already_printed is not None and _indexed_before(notification, already_printed):
                logger.debug("Skipping already printed notification uri=%s", notification.uri)
                continue
            logger.info("Notif: reason=%s author=%s", notification.reason, notification.author.handle)
            await self.handle_notification(notification)
        await self._mark_seen(listed_at)

    async def handle_notification(self, notification: BskyNotification) -> None:
        reason = notification.reason
        if reason in self.suppressed_reasons:
            # Too spammy for paper.
            self.metrics.inc("events.suppressed")
            return
        try:
            if reason == "follow":
                job = await self._follow_job(notification)
            elif reason in _POST_TITLES:
                job = self._post_job(notification)
            else:
                self.metrics.inc("events.ignored")
                logger.error("Unknown notification reason caught: %s", reason)
                return
        except PayloadError as exc:
            self.skip(reason, exc)
            return
        except (httpx.HTTPError, BskyRequestError, BskyTokenExpired) as exc:
            logger.warning("Unable to build job adapter=%s reason=%s error=%s", self.name, reason, exc)
            return
        await self.emit(job)

    async def _follow_job(self, notification: BskyNotification) -> PrintJob:
        timestamp = parse_timestamp(notification.record.created_at)
        profile = await self.get_profile(notification.author.did)
        return PrintJob(
            title="Bsky: New follower",
            message=(
                f"{profile.display_name} ({profile.handle}) followed you\n"
                f"{profile.description}\n"
                f"{profile.follows_count} Following | {profile.followers_count} Followers"
            ),
            timestamp=timestamp,
        )

    def _post_job(self, notification: BskyNotification) -> PrintJob:
        title, verb = _POST_TITLES[notification.reason]
        author = notification.author
        return PrintJob(
            title=title,
            message=f"{author.display_name} ({author.handle}) {verb}:\n{notification.record.text}",
            timestamp=parse_timestamp(notification.record.created_at),
        )

    async def get_profile(self, actor: str) -> BskyProfile:
        response = await self.client.get(
            f"{self.public_url}{GET_PROFILE_PATH}",
            params={"actor": actor},
            headers=self._auth(self.access_jwt),
        )
        if response.status_code == 401:
            raise BskyTokenExpired()
        if response.status_code != 200:
            raise BskyRequestError("getProfile", response.status_code, response.text)
        return parse_response(BskyProfile, response)

    async def _mark_seen(self, seen_at: datetime) -> None:
        try:
            response = await self.client.post(
                f"{self.service_url}{UPDATE_SEEN_PATH}",
                headers=self._auth(self.access_jwt),
                json={"seenAt": _iso_millis(seen_at)},
            )
            if response.status_code != 200:
                raise BskyRequestError("updateSeen", response.status_code, response.text)
        except (httpx.HTTPError, BskyRequestError) as exc:
            logger.error("Unable to update last read notifications: %s", exc)
            self.pending_seen_at = seen_at
            return
        self.pending_seen_at = None


def _indexed_before(notification: BskyNotification, cutoff: datetime) -> bool:
    try:
        indexed = parse_timestamp(notification.indexed_at)
    except PayloadError:
        return False
    return indexed <= cutoff


def _is_token_error(response: httpx.Response) -> bool:
    """An expired or invalid token is reported as 401, or as 400 with an XRPC token error."""
    if response.status_code == 401:
        return True
    if response.status_code != 400:
        return False
    try:
        body = response.json()
    except ValueError:
        return False
    return isinstance(body, dict) and body.get("error") in TOKEN_ERRORS
