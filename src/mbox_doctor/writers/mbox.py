"""Helpers for writing messages and mailboxes back out in mbox form."""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parseaddr, parsedate_to_datetime
from pathlib import Path
from typing import BinaryIO, Iterable

from mbox_doctor.message import Message
from mbox_doctor.readers.envelope import format_envelope


def _resolve_sender(from_header: str | None) -> str:
    name, address = parseaddr(from_header or "")
    if address:
        return address
    if from_header:
        return from_header.strip().replace(" ", "_")
    return "MAILER-DAEMON"


def _resolve_timestamp(date_header: str | None) -> datetime:
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
            if parsed is not None:
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                return parsed.astimezone()
        except (TypeError, ValueError):
            pass
    return datetime.now(timezone.utc).astimezone()


def format_mbox_from_line(from_header: str | None, date_header: str | None) -> bytes:
    """Return a ``From `` line derived from a message's From and Date headers."""

    sender = _resolve_sender(from_header)
    timestamp = _resolve_timestamp(date_header)
    formatted = timestamp.strftime("%a %b %d %H:%M:%S %Y")
    return f"From {sender} {formatted}\n".encode("latin-1", "replace")


def format_envelope_line(message: Message) -> bytes:
    """Return the envelope line for ``message``.

    The parsed line is reused verbatim; an envelope without one is rebuilt
    from its fields, and a message with no envelope at all gets one made up
    from its headers.
    """

    envelope = message.envelope
    if envelope is not None:
        if envelope.line is not None:
            return envelope.line.tobytes()
        return format_envelope(envelope.sender.tobytes(), envelope.time)
    return format_mbox_from_line(_text(message.header(b"From")), _text(message.header(b"Date")))


def format_message(message: Message) -> bytes:
    """Serialize one message without its trailing separator.

    A message that was parsed and never changed is written back exactly as
    it was read.
    """

    if message.data is not None and not message.dirty:
        return message.data.tobytes()
    return (
        format_envelope_line(message)
        + message.headers.to_bytes()
        + b"\n"
        + message.body.tobytes()
    )


def write_messages(handle: BinaryIO, messages: Iterable[Message]) -> int:
    """Write ``messages`` one after another; returns the number written.

    Each message is followed by its own separator, and a line break is
    forced between two messages that would otherwise run together.
    """

    count = 0
    ends_with_newline = True
    for message in messages:
        if not ends_with_newline:
            handle.write(b"\n")
        data = format_message(message)
        handle.write(data)
        tail = data
        if message.separator:
            handle.write(message.separator)
            tail = message.separator
        ends_with_newline = tail.endswith((b"\n", b"\r")) or not tail
        count += 1
    return count


def write_message_file(message: Message, target: Path) -> Path:
    """Write a single message to ``target`` so it can be edited by hand."""

    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("wb") as handle:
        handle.write(format_message(message))
    return target


def _text(value: bytes | None) -> str | None:
    if value is None:
        return None
    return value.decode("latin-1")


__all__ = [
    "format_envelope_line",
    "format_mbox_from_line",
    "format_message",
    "write_message_file",
    "write_messages",
]
