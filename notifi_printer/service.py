"""Notifi-printer service orchestration."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any

import httpx

from notifi_printer.adapters.base import SourceAdapter
from notifi_printer.adapters.bsky_notifications import BskyNotificationsAdapter
from notifi_printer.adapters.github_notifications import GitHubNotificationsAdapter
from notifi_printer.adapters.twitch_eventsub import TwitchEventSubAdapter
from notifi_printer.cancellation import CancellationToken
from notifi_printer.config import NotifiConfig
from notifi_printer.contract import PrintJob
from notifi_printer.metrics import MetricsRegistry
from notifi_printer.net import build_http_client
from notifi_printer.printer.dispatcher import PrinterDispatcher, PrinterStream, PrinterWriteError, open_printer
from notifi_printer.retry import backoff_delay_seconds

logger = logging.getLogger(__name__)

_ADAPTER_TYPES: dict[str, type[SourceAdapter]] = {
    "github": GitHubNotificationsAdapter,
    "bsky": BskyNotificationsAdapter,
    "twitch": TwitchEventSubAdapter,
}


class NotifiPrinterService:
    """Starts the dispatcher and every enabled adapter around one queue and one token.

    Shutdown is cooperative: ``stop`` fires the shared token and waits for
    every task to finish on its own. A dispatcher failure is treated as a
    shutdown trigger for the whole service.
    """

    def __init__(
        self,
        *,
        config: NotifiConfig,
        metrics: MetricsRegistry | None = None,
        client: httpx.AsyncClient | None = None,
        stream: PrinterStream | None = None,
        adapters: dict[str, SourceAdapter] | None = None,
    ) -> None:
        self.config = config
        self.metrics = metrics or MetricsRegistry()
        self.cancel = CancellationToken()
        self.jobs: asyncio.Queue[PrintJob] = asyncio.Queue(maxsize=config.queue_capacity)
        self.client = client
        self._owns_client = client is None
        self.stream = stream
        self.adapters: dict[str, SourceAdapter] = dict(adapters or {})
        self.dispatcher: PrinterDispatcher | None = None
        self.adapter_restart_base_seconds = 5.0
        self._dispatcher_task: asyncio.Task[None] | None = None
        self._tasks: list[asyncio.Task[None]] = []

    def _adapter_settings(self, name: str) -> dict[str, Any]:
        if name == "github":
            return self.config.github_settings()
        if name == "bsky":
            return self.config.bsky_settings()
        return self.config.twitch_settings()

    def _build_adapters(self) -> None:
        if self.adapters:
            return
        assert self.client is not None
        for name in self.config.enabled_sources:
            adapter_type = _ADAPTER_TYPES[name]
            self.adapters[name] = adapter_type(
                self._adapter_settings(name),
                client=self.client,
                cancel=self.cancel,
                jobs=self.jobs,
                metrics=self.metrics,
            )

    async def start(self) -> None:
        if self.stream is None:
            self.stream = await open_printer(self.config.printer_addr)
        if self.client is None:
            self.client = build_http_client()
        self._build_adapters()

        self.dispatcher = PrinterDispatcher(stream=self.stream, jobs=self.jobs, cancel=self.cancel, metrics=self.metrics)
        self._dispatcher_task = asyncio.create_task(self.dispatcher.run(), name="notifi-dispatcher")
        self._tasks.append(self._dispatcher_task)
        for name, adapter in self.adapters.items():
            self._tasks.append(asyncio.create_task(self._supervise(name, adapter), name=f"notifi-adapter-{name}"))
        logger.info("Notifi-printer started adapters=%s", ",".join(sorted(self.adapters.keys())) or "-")

    async def _supervise(self, name: str, adapter: SourceAdapter) -> None:
        failures = 0
        while not self.cancel.is_cancelled():
            try:
                await adapter.run()
                return
            except Exception:
                failures += 1
                self.metrics.inc("adapter.restarts")
                delay = backoff_delay_seconds(
                    failures,
                    base=self.adapter_restart_base_seconds,
                    cap=300.0,
                    jitter=self.adapter_restart_base_seconds / 2,
                )
                logger.exception("Adapter crashed name=%s restarts=%s delay=%.1fs", name, failures, delay)
                if await self.cancel.sleep(delay):
                    return

    async def run(self, shutdown: Awaitable[Any]) -> None:
        """Run until ``shutdown`` resolves or the dispatcher dies.

        Raises ``PrinterWriteError`` after draining if the dispatcher failed.
        """
        if self._dispatcher_task is None:
            await self.start()
        assert self._dispatcher_task is not None
        shutdown_task = asyncio.ensure_future(shutdown)
        try:
            await asyncio.wait({shutdown_task, self._dispatcher_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not shutdown_task.done():
                shutdown_task.cancel()
        if shutdown_task.done() and not shutdown_task.cancelled():
            logger.info("Shutdown signal caught! Stopping all tasks...")
        failure = self._dispatcher_failure()
        await self.stop()
        if failure is not None:
            raise failure

    def _dispatcher_failure(self) -> BaseException | None:
        task = self._dispatcher_task
        if task is None or not task.done() or task.cancelled():
            return None
        exc = task.exception()
        if exc is not None:
            logger.error("Printer dispatcher failed; shutting down error=%s", exc)
        return exc

    async def stop(self) -> None:
        self.cancel.cancel()
        if self._tasks:
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
            for task, result in zip(self._tasks, results):
                if isinstance(result, BaseException) and not isinstance(result, PrinterWriteError):
                    logger.error("Task ended with error task=%s error=%r", task.get_name(), result)
            self._tasks.clear()
        if self.client is not None and self._owns_client:
            await self.client.aclose()
        close = getattr(self.stream, "close", None)
        if callable(close):
            close()
            wait_closed = getattr(self.stream, "wait_closed", None)
            if callable(wait_closed):
                try:
                    await wait_closed()
                except OSError as exc:
                    logger.debug("Printer stream close error=%s", exc)
        logger.info("All tasks closed. Goodbye o/ %s", self.metrics.summary())

    async def print_once(self, job: PrintJob) -> None:
        """Print a single job through the dispatcher path, outside the run loop."""
        if self.stream is None:
            self.stream = await open_printer(self.config.printer_addr)
        dispatcher = PrinterDispatcher(stream=self.stream, jobs=self.jobs, cancel=self.cancel, metrics=self.metrics)
        await dispatcher.print_job(job)
