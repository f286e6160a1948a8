"""ESC/POS control codes and print job encoding."""

from __future__ import annotations

from datetime import datetime

from notifi_printer.contract import PrintJob

ESC = 0x1B
GS = 0x1D
LF = 0x0A
FF = 0x0C

INITIALIZE = bytes([ESC, ord("@")])
FONT_SMOOTHING_ON = bytes([GS, ord("b"), 0x01])
FONT_CONDENSED = bytes([ESC, ord("M"), 0x01])
FONT_DEFAULT = bytes([ESC, ord("M"), 0x00])

JUSTIFY_LEFT = bytes([ESC, ord("a"), 0x00])
JUSTIFY_CENTER = bytes([ESC, ord("a"), 0x01])
JUSTIFY_RIGHT = bytes([ESC, ord("a"), 0x02])

SIZE_NORMAL = bytes([GS, ord("!"), 0x00])
SIZE_DOUBLE = bytes([GS, ord("!"), 0x11])
SIZE_TRIPLE = bytes([GS, ord("!"), 0x22])

FULL_CUT = bytes([ESC, ord("i")])
# Print and return to standard mode when the printer is in page mode.
FORM_FEED = bytes([FF])

SEPARATOR_WIDTH = 48
# Printer firmware default code page.
TEXT_ENCODING = "cp437"

# On the target printer ESC d 0 advances one line and ESC d 1 advances two.
FEED_ONE = bytes([ESC, ord("d"), 0x00])
FEED_TWO = bytes([ESC, ord("d"), 0x01])


def feed_lines(count: int) -> bytes:
    if not 0 <= count <= 255:
        raise ValueError(f"feed count out of range: {count}")
    return bytes([ESC, ord("d"), count])


# Applied by the dispatcher after every job. The auto cutter sits about two
# lines behind the print head, so six fed lines leave roughly four of margin.
CLOSING_TRAILER = feed_lines(6) + bytes([LF]) + FULL_CUT + FORM_FEED


def _text(value: str) -> bytes:
    return value.encode(TEXT_ENCODING, errors="replace")


def normalize_message(message: str) -> str:
    """Trim, then turn every whitespace character except a plain space into a line feed."""
    return "".join("\n" if ch.isspace() and ch != " " else ch for ch in message.strip())


def format_timestamp(timestamp: datetime) -> str:
    """Render as ``Month Day, hh:mm:ss AM/PM`` with a space padded day."""
    return f"{timestamp:%B} {timestamp.day:>2}, {timestamp:%I:%M:%S %p}"


def encode(job: PrintJob) -> bytes:
    """Serialize a job to printer bytes, without the closing trailer."""
    out = bytearray(INITIALIZE)
    out += FONT_SMOOTHING_ON
    out += FONT_CONDENSED

    out += JUSTIFY_CENTER
    out += SIZE_DOUBLE
    out += _text(job.title)
    out.append(LF)

    out += FEED_ONE
    out += FONT_DEFAULT
    out += SIZE_NORMAL
    out += JUSTIFY_LEFT

    if job.subtitle is not None:
        out += FEED_ONE
        out += _text(job.subtitle)
        out.append(LF)
        out += b"-" * SEPARATOR_WIDTH
        out.append(LF)

    if job.message is not None:
        out += FEED_TWO
        out += _text(normalize_message(job.message))
        out.append(LF)

    out += FEED_TWO
    out += _text(f"Timestamp: {format_timestamp(job.timestamp)}")
    out.append(LF)
    return bytes(out)
