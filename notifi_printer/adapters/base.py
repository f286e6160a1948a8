"""Adapter interfaces."""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from notifi_printer.cancellation import CancellationToken
from notifi_printer.contract import PrintJob
from notifi_printer.metrics import MetricsRegistry

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


class PayloadError(Exception):
    """An upstream item did not match the expected shape; skip just that item."""


def parse_payload(model: type[ModelT], data: Any) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise PayloadError(f"{model.__name__}: {exc.error_count()} validation error(s): {exc}") from exc


def parse_response(model: type[ModelT], response: httpx.Response) -> ModelT:
    try:
        data = response.json()
    except ValueError as exc:
        raise PayloadError(f"{model.__name__}: response body is not JSON") from exc
    return parse_payload(model, data)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp into local time."""
    text = (value or "").strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _EXCESS_FRACTION.sub(r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise PayloadError(f"invalid timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        raise PayloadError(f"timestamp has no offset: {value!r}")
    return parsed.astimezone()


class SourceAdapter(ABC):
    """One upstream notification source feeding the shared job queue.

    Each adapter runs as its own task. It holds the shared cancellation token
    and a handle on the bounded queue; ``run`` only returns once the token is
    cancelled.
    """

    name = "source"

    def __init__(
        self,
        config: dict[str, Any],
        *,
        client: httpx.AsyncClient,
        cancel: CancellationToken,
        jobs: asyncio.Queue[PrintJob],
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.cancel = cancel
        self.jobs = jobs
        self.metrics = metrics or MetricsRegistry()

    @abstractmethod
    async def run(self) -> None:
        """Produce jobs until the cancellation token fires."""

    async def emit(self, job: PrintJob) -> None:
        """Enqueue a job, suspending while the queue is full.

        Raises ``OperationCancelled`` if shutdown is requested while waiting.
        """
        await self.cancel.wait_for(self.jobs.put(job))
        self.metrics.inc("jobs.enqueued")
        logger.info("Enqueued job adapter=%s title=%r", self.name, job.title)

    def skip(self, reason: str, exc: Exception) -> None:
        self.metrics.inc("events.skipped")
        logger.warning("Skipping malformed item adapter=%s reason=%s error=%s", self.name, reason, exc)
