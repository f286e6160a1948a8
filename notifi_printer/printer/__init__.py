"""Printer protocol encoding and the single-writer dispatcher."""

from .dispatcher import (
    PrinterDispatcher,
    PrinterUnavailableError,
    PrinterWriteError,
    open_printer,
    parse_printer_addr,
)
from .escpos import CLOSING_TRAILER, encode

__all__ = [
    "CLOSING_TRAILER",
    "PrinterDispatcher",
    "PrinterUnavailableError",
    "PrinterWriteError",
    "encode",
    "open_printer",
    "parse_printer_addr",
]
