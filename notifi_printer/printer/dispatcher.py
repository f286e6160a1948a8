"""Single-writer printer dispatcher."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from notifi_printer.cancellation import CancellationToken, OperationCancelled
from notifi_printer.contract import PrintJob
from notifi_printer.metrics import MetricsRegistry
from notifi_printer.printer.escpos import CLOSING_TRAILER, encode

logger = logging.getLogger(__name__)

DEFAULT_PRINTER_PORT = 9100


class PrinterWriteError(Exception):
    """The printer stream rejected a write; the dispatcher cannot continue."""


class PrinterUnavailableError(Exception):
    """The printer could not be reached at startup."""


class PrinterStream(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...


def parse_printer_addr(addr: str) -> tuple[str, int]:
    raw = (addr or "").strip()
    if not raw:
        raise ValueError("printer address is empty")
    host, sep, port_text = raw.rpartition(":")
    if not sep:
        return raw, DEFAULT_PRINTER_PORT
    if not host.strip("[]"):
        raise ValueError(f"printer host missing in {raw!r}")
    try:
        port = int(port_text)
    except ValueError as exc:
        raise ValueError(f"invalid printer port in {raw!r}") from exc
    if not 0 < port < 65536:
        raise ValueError(f"printer port out of range in {raw!r}")
    return host.strip("[]"), port


async def open_printer(addr: str, *, timeout_seconds: float = 10.0) -> asyncio.StreamWriter:
    host, port = parse_printer_addr(addr)
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout_seconds)
    except (OSError, asyncio.TimeoutError) as exc:
        raise PrinterUnavailableError(f"unable to connect to printer at {host}:{port}: {exc}") from exc
    logger.debug("Opened printer stream host=%s port=%s", host, port)
    return writer


class PrinterDispatcher:
    """Sole consumer of the job queue and sole owner of the printer stream.

    Jobs are written strictly one after another: the encoded job and the
    closing trailer are fully drained before the next job is dequeued, which
    is what keeps at most one print in flight.
    """

    def __init__(
        self,
        *,
        stream: PrinterStream,
        jobs: asyncio.Queue[PrintJob],
        cancel: CancellationToken,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.stream = stream
        self.jobs = jobs
        self.cancel = cancel
        self.metrics = metrics or MetricsRegistry()

    async def run(self) -> None:
        while True:
            try:
                job = await self.cancel.wait_for(self.jobs.get())
            except OperationCancelled:
                logger.debug("Cancel signal caught; stopping dispatcher pending=%s", self.jobs.qsize())
                return
            try:
                await self.print_job(job)
            finally:
                self.jobs.task_done()

    async def print_job(self, job: PrintJob) -> None:
        try:
            await self._write(encode(job))
            await self._write(CLOSING_TRAILER)
        except (OSError, ConnectionError) as exc:
            logger.error("Printer write failed title=%r error=%s", job.title, exc)
            raise PrinterWriteError(str(exc)) from exc
        self.metrics.inc("jobs.printed")
        logger.info("Printed job title=%r", job.title)

    async def _write(self, data: bytes) -> None:
        self.stream.write(data)
        await self.stream.drain()
