"""GitHub notifications long-poll adapter."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel

from notifi_printer.adapters.base import PayloadError, SourceAdapter, parse_payload, parse_response, parse_timestamp
from notifi_printer.cancellation import OperationCancelled
from notifi_printer.contract import PrintJob

logger = logging.getLogger(__name__)

NOTIFICATIONS_URL = "https://api.github.com/notifications"
API_VERSION = "2022-11-28"
DEFAULT_POLL_INTERVAL_SECONDS = 60
MIN_POLL_INTERVAL_SECONDS = 1
COMMENT_REASONS = frozenset({"comment", "mention", "team_mention", "author"})
_TITLE_BY_SUBJECT_TYPE = {
    "Issue": "New Issue Comment",
    "PullRequest": "New Pull Request Comment",
    "Discussion": "New Discussion Comment",
}


class GitHubSubject(BaseModel):
    title: str
    type: str = "Issue"
    url: str | None = None
    latest_comment_url: str | None = None


class GitHubRepository(BaseModel):
    full_name: str


class GitHubNotification(BaseModel):
    id: str
    reason: str
    updated_at: str
    url: str
    subject: GitHubSubject
    repository: GitHubRepository


class GitHubUser(BaseModel):
    login: str


class GitHubComment(BaseModel):
    user: GitHubUser
    body: str = ""


class GitHubNotificationsAdapter(SourceAdapter):
    """Poll the notifications endpoint, honoring Last-Modified and X-Poll-Interval.

    Each cycle sends ``If-Modified-Since`` with the previous ``Last-Modified``
    value, as GitHub recommends for notification polling, and then waits the
    server-advised interval before polling again.
    """

    name = "github"

    def __init__(self, config: dict[str, Any], **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        self.endpoint = str(config.get("endpoint") or NOTIFICATIONS_URL)
        self.retry_delay_seconds = float(config.get("retry_delay_seconds", 5))
        self.last_modified: str | None = None
        # Thread id -> updated_at of printed threads whose mark-read failed.
        self.unacknowledged: dict[str, str] = {}
        self.poll_interval_seconds = DEFAULT_POLL_INTERVAL_SECONDS

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.get('token') or ''}",
            "Accept": "application/vnd.github.v3+json",
            "X-GitHub-Api-Version": API_VERSION,
        }

    async def run(self) -> None:
        try:
            await self._poll_forever()
        except OperationCancelled:
            pass
        logger.info("Stopping service due to cancel token adapter=%s", self.name)

    async def _poll_forever(self) -> None:
        while not self.cancel.is_cancelled():
            headers = self._headers()
            if self.last_modified:
                logger.debug("Using last modified time: %s", self.last_modified)
                headers["If-Modified-Since"] = self.last_modified

            try:
                response = await self.client.get(self.endpoint, headers=headers)
            except httpx.HTTPError as exc:
                logger.error("Error on sending HTTP request adapter=%s error=%s", self.name, exc)
                if await self.cancel.sleep(self.retry_delay_seconds):
                    return
                continue

            self.poll_interval_seconds = _poll_interval(response)
            status = response.status_code
            if status == 429 or status >= 500:
                logger.warning("Notifications poll failed adapter=%s status=%s; retrying", self.name, status)
                if await self.cancel.sleep(self.retry_delay_seconds):
                    return
                continue

            last_modified = response.headers.get("Last-Modified")
            if last_modified:
                logger.debug("Next request using Last-Modified header: %s", last_modified)
                self.last_modified = last_modified

            if status == 304:
                logger.debug("No new notifications adapter=%s", self.name)
            elif status >= 400:
                logger.error("Notifications poll rejected adapter=%s status=%s", self.name, status)
            else:
                await self._handle_batch(response)

            if await self.cancel.sleep(self.poll_interval_seconds):
                return

    async def _handle_batch(self, response: httpx.Response) -> None:
        try:
            items = response.json()
        except ValueError as exc:
            self.skip("notifications_body", exc)
            return
        if not isinstance(items, list):
            self.skip("notifications_body", PayloadError(f"expected list, got {type(items).__name__}"))
            return
        for item in items:
            await self.handle_notification(item)

    async def handle_notification(self, raw: Any) -> None:
        try:
            notification = parse_payload(GitHubNotification, raw)
        except PayloadError as exc:
            self.skip("notification", exc)
            return

        if notification.reason not in COMMENT_REASONS:
            self.metrics.inc("events.ignored")
            logger.info("Ignoring notification adapter=%s reason=%s id=%s", self.name, notification.reason, notification.id)
            return

        if self.unacknowledged.get(notification.id) == notification.updated_at:
            logger.debug("Already printed, retrying mark-read adapter=%s id=%s", self.name, notification.id)
            await self._mark_read(notification)
            return

        comment_url = notification.subject.latest_comment_url
        if not comment_url:
            self.skip("notification", PayloadError(f"notification {notification.id} has no latest_comment_url"))
            return

        try:
            timestamp = parse_timestamp(notification.updated_at)
            comment = await self._fetch_comment(comment_url)
        except PayloadError as exc:
            self.skip("comment", exc)
            return
        except httpx.HTTPError as exc:
            logger.warning("Unable to fetch comment adapter=%s id=%s error=%s", self.name, notification.id, exc)
            return

        job = PrintJob(
            title=_TITLE_BY_SUBJECT_TYPE.get(notification.subject.type, "New Issue Comment"),
            subtitle=f"{notification.repository.full_name}\n{notification.subject.title}",
            message=f"{comment.user.login}:\n{comment.body}",
            timestamp=timestamp,
        )
        await self.emit(job)
        await self._mark_read(notification)

    async def _fetch_comment(self, url: str) -> GitHubComment:
        response = await self.client.get(url, headers=self._headers())
        response.raise_for_status()
        return parse_response(GitHubComment, response)

    async def _mark_read(self, notification: GitHubNotification) -> None:
        try:
            response = await self.client.patch(notification.url, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.error("Unable to mark notification read adapter=%s id=%s error=%s", self.name, notification.id, exc)
            self.unacknowledged[notification.id] = notification.updated_at
            return
        if response.status_code != 205:
            logger.error(
                "Unexpected mark-read status adapter=%s id=%s status=%s",
                self.name,
                notification.id,
                response.status_code,
            )
            self.unacknowledged[notification.id] = notification.updated_at
            return
        self.unacknowledged.pop(notification.id, None)


def _poll_interval(response: httpx.Response) -> int:
    raw = response.headers.get("X-Poll-Interval")
    if raw is None:
        return DEFAULT_POLL_INTERVAL_SECONDS
    try:
        return max(MIN_POLL_INTERVAL_SECONDS, int(raw.strip()))
    except ValueError:
        logger.warning("Invalid X-Poll-Interval header value=%r", raw)
        return DEFAULT_POLL_INTERVAL_SECONDS
