"""Parsing of mbox ``From `` envelope lines and their ctime timestamps."""

from __future__ import annotations

from dataclasses import dataclass

from lib.cursor import Cursor
from lib.span import ByteSpan

FROM_SPACE = b"From "

WEEKDAYS = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")
MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


@dataclass(frozen=True)
class EnvelopeTime:
    """Broken-down timestamp from an envelope line.

    ``weekday`` counts from Sunday (0) and ``month`` from January (1).
    ``second`` is ``None`` when the envelope only carried ``hh:mm``.
    """

    weekday: int
    month: int
    day: int
    hour: int
    minute: int
    second: int | None
    year: int
    zone: str | None = None

    @property
    def weekday_name(self) -> str:
        return WEEKDAYS[self.weekday]

    @property
    def month_name(self) -> str:
        return MONTHS[self.month - 1]


@dataclass(frozen=True)
class Envelope:
    """A parsed ``From <sender> <date>`` line."""

    sender: ByteSpan
    time: EnvelopeTime
    line: ByteSpan | None = None

    @property
    def sender_text(self) -> str:
        return self.sender.tobytes().decode("latin-1")


def parse_ctime(cursor: Cursor) -> EnvelopeTime | None:
    """Parse ``www mmm dd hh:mm[:ss] [zone] yy[yy] [zone]`` at the cursor.

    For example ``Mon Apr  1 12:34:56 2008`` or ``Wed May 15 11:37 PDT 1996``.
    The cursor is left untouched when the text does not match.
    """

    start = cursor.mark()
    result = _parse_ctime(cursor)
    if result is None:
        cursor.move_to(start)
    return result


def _parse_ctime(cursor: Cursor) -> EnvelopeTime | None:
    weekday = _keyword(cursor, WEEKDAYS)
    if weekday is None or cursor.const_char(b" ") is None:
        return None

    month = _keyword(cursor, MONTHS)
    if month is None or cursor.const_char(b" ") is None:
        return None

    # Single digit days are usually padded with a second space
    cursor.const_char(b" ")
    day = _digits(cursor, 1, 2)
    if day is None or cursor.const_char(b" ") is None:
        return None

    hour = _digits(cursor, 2, 2)
    if hour is None or cursor.const_char(b":") is None:
        return None
    minute = _digits(cursor, 2, 2)
    if minute is None:
        return None
    second = None
    if cursor.const_char(b":") is not None:
        second = _digits(cursor, 2, 2)
        if second is None:
            return None

    if cursor.const_char(b" ") is None:
        return None

    zone = None
    if _starts_zone(cursor.peek()):
        token = _token(cursor)
        if cursor.const_char(b" ") is None:
            return None
        zone = token

    year = _year(cursor)
    if year is None:
        return None

    if zone is None:
        before_zone = cursor.mark()
        cursor.spaces()
        if _starts_zone(cursor.peek()) or _is_digit(cursor.peek()):
            zone = _token(cursor)
        else:
            cursor.move_to(before_zone)

    return EnvelopeTime(
        weekday=weekday,
        month=month + 1,
        day=day,
        hour=hour,
        minute=minute,
        second=second,
        year=year,
        zone=zone,
    )


def parse_envelope(cursor: Cursor) -> Envelope | None:
    """Parse a complete envelope line including its terminator.

    Anything after the timestamp (``remote from ...`` and similar uucp-era
    trailers) is accepted and kept in the raw line.
    """

    start = cursor.mark()
    if cursor.const_string(FROM_SPACE) is None:
        return None

    sender = _sender(cursor)
    cursor.spaces()
    time = parse_ctime(cursor)
    if time is None:
        cursor.move_to(start)
        return None

    cursor.until_newline()
    if cursor.newline() is None:
        cursor.move_to(start)
        return None

    return Envelope(sender=sender, time=time, line=cursor.capture(start))


def format_ctime(time: EnvelopeTime) -> str:
    """Render ``time`` in the classic ``www mmm dd hh:mm:ss yyyy`` form."""

    second = time.second if time.second is not None else 0
    return (
        f"{time.weekday_name} {time.month_name} {time.day:2d} "
        f"{time.hour:02d}:{time.minute:02d}:{second:02d} {time.year:4d}"
    )


def format_envelope(sender: bytes, time: EnvelopeTime) -> bytes:
    return FROM_SPACE + sender + b" " + format_ctime(time).encode("ascii") + b"\n"


def rfc822_date(time: EnvelopeTime) -> str:
    """Render ``time`` as an RFC 822 date, keeping any numeric zone."""

    second = time.second if time.second is not None else 0
    text = (
        f"{time.weekday_name}, {time.day:2d} {time.month_name} {time.year:4d} "
        f"{time.hour:02d}:{time.minute:02d}:{second:02d}"
    )
    if time.zone:
        text = f"{text} {time.zone}"
    return text


def _keyword(cursor: Cursor, keywords: tuple[str, ...]) -> int | None:
    for index, keyword in enumerate(keywords):
        if cursor.const_string(keyword.encode("ascii")) is not None:
            return index
    return None


def _digits(cursor: Cursor, minimum: int, maximum: int) -> int | None:
    start = cursor.mark()
    count = 0
    while count < maximum and _is_digit(cursor.peek()):
        cursor.char()
        count += 1
    if count < minimum:
        cursor.move_to(start)
        return None
    return int(cursor.capture(start).tobytes())


def _year(cursor: Cursor) -> int | None:
    start = cursor.mark()
    value = _digits(cursor, 2, 4)
    if value is None:
        return None
    width = cursor.position - start
    if width == 3:
        cursor.move_to(start)
        return None
    if width == 2:
        value += 1900 if value >= 70 else 2000
    return value


def _sender(cursor: Cursor) -> ByteSpan:
    start = cursor.mark()
    while True:
        current = cursor.peek()
        if current is None or current in b" \t\r\n":
            break
        cursor.char()
    return cursor.capture(start)


def _token(cursor: Cursor) -> str:
    start = cursor.mark()
    while True:
        current = cursor.peek()
        if current is None or current in b" \t\r\n":
            break
        cursor.char()
    return cursor.capture(start).tobytes().decode("latin-1")


def _starts_zone(value: int | None) -> bool:
    if value is None:
        return False
    return 0x41 <= value <= 0x5A or 0x61 <= value <= 0x7A or value in b"+-"


def _is_digit(value: int | None) -> bool:
    return value is not None and 0x30 <= value <= 0x39


__all__ = [
    "FROM_SPACE",
    "Envelope",
    "EnvelopeTime",
    "format_ctime",
    "format_envelope",
    "parse_ctime",
    "parse_envelope",
    "rfc822_date",
]
