"""Notifi-printer entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from datetime import datetime

from dotenv import load_dotenv

from notifi_printer.config import NotifiConfig, load_config
from notifi_printer.contract import PrintJob
from notifi_printer.logging import configure_logging
from notifi_printer.metrics import MetricsRegistry
from notifi_printer.printer.dispatcher import PrinterUnavailableError, PrinterWriteError
from notifi_printer.service import NotifiPrinterService

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RUNTIME_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="notifi-printer", description="Print notifications on a receipt printer.")
    parser.add_argument("--config", default=None, help="YAML config path (default: NOTIFI_CONFIG_PATH or config/config.yaml)")
    parser.add_argument("command", nargs="?", choices=("run", "smoke"), default="run")
    return parser.parse_args(argv)


def smoke_job() -> PrintJob:
    return PrintJob(
        title="Notifi-printer",
        subtitle="Smoke test",
        message="If you can read this,\nthe printer link works.",
        timestamp=datetime.now().astimezone(),
    )


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, shutdown: asyncio.Event) -> None:
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, shutdown.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops only deliver SIGINT as KeyboardInterrupt.
            logger.debug("Signal handler not supported signal=%s", signum)


async def _run(config: NotifiConfig) -> int:
    shutdown = asyncio.Event()
    _install_signal_handlers(asyncio.get_running_loop(), shutdown)
    service = NotifiPrinterService(config=config, metrics=MetricsRegistry())
    logger.info("Starting Notifi-printer...")
    try:
        await service.start()
    except PrinterUnavailableError as exc:
        logger.error("%s", exc)
        return EXIT_RUNTIME_FAILURE
    try:
        await service.run(shutdown.wait())
    except PrinterWriteError:
        return EXIT_RUNTIME_FAILURE
    return EXIT_OK


async def _smoke(config: NotifiConfig) -> int:
    service = NotifiPrinterService(config=config)
    try:
        await service.print_once(smoke_job())
    except (PrinterUnavailableError, PrinterWriteError) as exc:
        logger.error("Smoke print failed: %s", exc)
        return EXIT_RUNTIME_FAILURE
    finally:
        await service.stop()
    logger.info("Smoke print sent to %s", config.printer_addr)
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    configure_logging()
    args = _parse_args(argv)
    try:
        config = load_config(args.config)
    except (OSError, ValueError) as exc:
        logger.error("Unable to load config: %s", exc)
        return EXIT_CONFIG_ERROR

    if args.command == "smoke":
        problems = config.printer_problems()
        if problems:
            for problem in problems:
                logger.error("Config error: %s", problem)
            return EXIT_CONFIG_ERROR
        return asyncio.run(_smoke(config))

    problems = config.validate()
    if problems:
        for problem in problems:
            logger.error("Config error: %s", problem)
        return EXIT_CONFIG_ERROR
    return asyncio.run(_run(config))


if __name__ == "__main__":
    raise SystemExit(main())
