"""Consistency check, and optional repair, of every message in a mailbox."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Callable

from tqdm import tqdm

from lib.cursor import Cursor
from lib.span import ByteSpan
from mbox_doctor.context import RunContext
from mbox_doctor.message import CONTENT_LENGTH, MESSAGE_ID, Message
from mbox_doctor.readers.envelope import rfc822_date
from mbox_doctor.readers.segmenter import repair_corruption
from mbox_doctor.store import Mailbox

SYNTHETIC_ID_SUFFIX = "@synthesized-by-mbox-doctor"

# Header values that go into a synthesized Message-ID, besides the body
ID_HEADER_KEYS = (b"Cc", b"Date", b"From", b"Sender", b"Subject", b"To")

Ask = Callable[[Message, str], str]


@dataclass(frozen=True)
class CheckReport:
    """Summary of one check (or repair) pass."""

    checked: int
    problems: int
    repairs: int
    stopped: bool = False


class _RepairState:
    def __init__(self, repair: bool, ask: Ask | None) -> None:
        self.repair = repair
        self.ask = ask
        self.auto_choice = "" if ask is not None else "y"
        self.quit = False
        self.repairs = 0

    @property
    def repairing_all(self) -> bool:
        return self.repair and self.auto_choice == "y"

    def should_repair(self, message: Message, problem: str) -> bool:
        if not self.repair:
            return False
        choice = self.auto_choice
        if not choice:
            choice = (self.ask(message, problem) if self.ask is not None else "y") or "y"
        if choice.isupper():
            choice = choice.lower()
            self.auto_choice = choice
        self.quit = choice == "q"
        if choice == "y":
            self.repairs += 1
            return True
        return False


def synthesize_message_id(message: Message) -> bytes:
    """Return a stable ``<md5@...>`` id built from a message's identifying parts."""

    digest = hashlib.md5()
    for header in message.headers:
        if any(header.key.equals(key) for key in ID_HEADER_KEYS):
            digest.update(header.value.tobytes())
    digest.update(message.body.tobytes())
    return f"<{digest.hexdigest()}{SYNTHETIC_ID_SUFFIX}>".encode("ascii")


def check_mailbox(
    mailbox: Mailbox,
    ctx: RunContext,
    *,
    repair: bool = False,
    ask: Ask | None = None,
    show_progress: bool = False,
) -> CheckReport:
    """Check every message of ``mailbox`` and repair what ``ask`` allows.

    ``ask`` receives the message and a short problem description and answers
    ``y``, ``n`` or ``q``; an uppercase answer applies to every later
    question. Without ``ask`` all repairs are made.
    """

    state = _RepairState(repair, ask)
    checked = 0
    problems_before = ctx.warnings

    progress = None
    if show_progress and len(mailbox):
        progress = tqdm(total=len(mailbox), desc="Checking", unit="msg")

    for message in mailbox:
        if state.quit:
            break
        checked += 1
        _check_message(message, ctx, state)
        if progress:
            progress.update(1)

    if progress:
        progress.close()

    return CheckReport(
        checked=checked,
        problems=ctx.warnings - problems_before,
        repairs=state.repairs,
        stopped=state.quit,
    )


def _check_message(message: Message, ctx: RunContext, state: _RepairState) -> None:
    _check_content_length(message, ctx, state)
    if state.quit:
        return
    _check_message_id(message, ctx, state)
    if state.quit or not ctx.strict:
        return
    for check in (_check_quoted_from, _check_from, _check_date):
        check(message, ctx, state)
        if state.quit:
            return
    _check_header_characters(message, ctx)


def _check_content_length(message: Message, ctx: RunContext, state: _RepairState) -> None:
    value = message.headers.get(CONTENT_LENGTH)
    declared = message.content_length
    actual = message.body_length
    if declared == actual or (value is None and not ctx.strict):
        return

    suffix = " (repairing)" if state.repairing_all else ""
    if message.corruption:
        ctx.warn(
            'Message %s: Corrupted by the "From " header-insertion bug (%s)%s',
            message.tag,
            message.corruption.describe(),
            suffix,
        )
        if state.should_repair(message, "header-insertion corruption"):
            repair_corruption(message, ctx)
        return

    if value is None:
        ctx.warn("Message %s: Missing Content-Length:, should be %d%s", message.tag, actual, suffix)
    else:
        ctx.warn(
            "Message %s: Incorrect Content-Length: %s, should be %d%s",
            message.tag,
            value.tobytes().decode("latin-1"),
            actual,
            suffix,
        )
    if state.should_repair(message, "Content-Length"):
        message.set_header(CONTENT_LENGTH, str(actual).encode("ascii"))


def _check_message_id(message: Message, ctx: RunContext, state: _RepairState) -> None:
    for key in (MESSAGE_ID, b"X-Message-ID"):
        value = message.headers.get(key)
        if value is not None and len(value):
            return

    synthetic = synthesize_message_id(message)
    ctx.warn(
        "Message %s: Missing Message-ID: header, %s with %s",
        message.tag,
        "replacing" if state.repairing_all else "could replace",
        synthetic.decode("ascii"),
    )
    if state.should_repair(message, "Message-ID"):
        message.set_header(MESSAGE_ID, synthetic)


def _check_quoted_from(message: Message, ctx: RunContext, state: _RepairState) -> None:
    header = next((header for header in message.headers if header.is_quoted_from), None)
    if header is None:
        return
    ctx.warn(
        'Message %s: Bogus ">From " line in the headers: %r%s',
        message.tag,
        header.to_bytes().rstrip(b"\r\n"),
        " (removing)" if state.repairing_all else "",
    )
    if state.should_repair(message, '">From " header'):
        message.delete_header(b">From ")


def _check_from(message: Message, ctx: RunContext, state: _RepairState) -> None:
    if message.headers.get(b"From") is not None:
        return

    source, value = None, None
    for key in (b"X-From", b"Sender", b"Return-Path"):
        found = message.headers.get(key)
        if found is not None:
            source, value = key.decode("ascii"), found.tobytes()
            break
    if value is None and message.envelope is not None and len(message.envelope.sender):
        source, value = "envelope sender", message.envelope.sender.tobytes()

    _fill_missing(message, ctx, state, b"From", source, value)


def _check_date(message: Message, ctx: RunContext, state: _RepairState) -> None:
    if message.headers.get(b"Date") is not None:
        return

    source, value = None, None
    found = message.headers.get(b"X-Date")
    if found is not None:
        source, value = "X-Date", found.tobytes()
    if value is None:
        received = message.headers.get_last(b"Received")
        if received is not None:
            value = _received_date(received)
            source = "Received"
    if value is None and message.envelope is not None:
        source, value = "envelope date", rfc822_date(message.envelope.time).encode("ascii")

    _fill_missing(message, ctx, state, b"Date", source, value)


def _received_date(received: ByteSpan) -> bytes | None:
    cursor = Cursor(received)
    if cursor.until_char(b";") is None:
        return None
    cursor.char()
    cursor.spaces()
    date = cursor.until_end().tobytes()
    return date or None


def _fill_missing(
    message: Message,
    ctx: RunContext,
    state: _RepairState,
    key: bytes,
    source: str | None,
    value: bytes | None,
) -> None:
    name = key.decode("ascii")
    if value is None:
        ctx.warn("Message %s: Missing %s: header", message.tag, name)
        return
    ctx.warn(
        'Message %s: Missing %s: header, %s %s: "%s"',
        message.tag,
        name,
        "using" if state.repairing_all else "but could use",
        source,
        value.decode("latin-1"),
    )
    if state.should_repair(message, f"{name}: header"):
        message.set_header(key, value)


def _check_header_characters(message: Message, ctx: RunContext) -> None:
    for header in message.headers:
        raw = header.to_bytes()
        position = find_illegal_char(raw)
        if position >= 0:
            ctx.warn(
                "Message %s: Illegal character %r in header: %r",
                message.tag,
                raw[position : position + 1],
                raw.rstrip(b"\r\n"),
            )


def find_illegal_char(data: bytes, *, control_ok: bool = False, eight_bit_ok: bool = False) -> int:
    """Return the offset of the first control or 8-bit byte in ``data``, or -1."""

    for index, value in enumerate(data):
        if value in (0x09, 0x0A, 0x0D):
            continue
        if not control_ok and (value < 0x20 or value == 0x7F):
            return index
        if not eight_bit_ok and value > 0x7F:
            return index
    return -1


__all__ = [
    "SYNTHETIC_ID_SUFFIX",
    "CheckReport",
    "check_mailbox",
    "find_illegal_char",
    "synthesize_message_id",
]
