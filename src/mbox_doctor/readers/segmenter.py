"""Splitting an mbox buffer into messages and repairing broken boundaries.

Finding where a message ends is the hard part. The candidates are tried in
a fixed order and the first one that produces a believable boundary wins:

1. the declared ``Content-Length``;
2. the declared length plus the headers a buggy IMAP server inserted after a
   ``From `` line quoted inside the body;
3. the closing boundary of a multipart body;
4. the first fully grammatical envelope line after a single line break;
5. the end of the data.
"""

from __future__ import annotations

import re
from email import policy
from email.message import Message as EmailMessage
from typing import TYPE_CHECKING

from lib.cursor import Cursor
from lib.span import ByteSpan, join_spans
from mbox_doctor.message import CONTENT_LENGTH, Corruption, Message
from mbox_doctor.readers.envelope import FROM_SPACE, parse_envelope
from mbox_doctor.readers.headers import parse_headers

if TYPE_CHECKING:
    from mbox_doctor.context import RunContext


CONTENT_TYPE = b"Content-Type"

# Most specific first; the trailing blank line variants are the least likely.
SIGNATURES = (
    Corruption.XUID_KEYWORDS | Corruption.CONTENT_LENGTH | Corruption.STATUS,
    Corruption.XUID_KEYWORDS | Corruption.CONTENT_LENGTH,
    Corruption.XUID_KEYWORDS | Corruption.STATUS,
    Corruption.XUID_KEYWORDS,
    Corruption.XUID_KEYWORDS | Corruption.CONTENT_LENGTH | Corruption.STATUS | Corruption.BLANK_LINE,
    Corruption.XUID_KEYWORDS | Corruption.CONTENT_LENGTH | Corruption.BLANK_LINE,
    Corruption.XUID_KEYWORDS | Corruption.STATUS | Corruption.BLANK_LINE,
    Corruption.XUID_KEYWORDS | Corruption.BLANK_LINE,
)

_INSERTED_HEADERS = (
    (Corruption.CONTENT_LENGTH, b"Content-Length"),
    (Corruption.XUID_KEYWORDS, b"X-UID"),
    (Corruption.XUID_KEYWORDS, b"X-Keywords"),
    (Corruption.STATUS, b"Status"),
)

_FOLDING = re.compile(rb"\r?\n[ \t]")


def parse_messages(cursor: Cursor, ctx: "RunContext", *, first_number: int = 1) -> list[Message]:
    """Parse every message from the cursor to the end of its span.

    Bytes that cannot start a message are reported, never silently dropped.
    """

    messages: list[Message] = []
    number = first_number
    while True:
        before = cursor.position
        message = parse_message(cursor, ctx, number=number)
        if message is None:
            break
        message.separator = _separator(cursor, ctx, message)
        messages.append(message)
        number += 1
        if cursor.position == before:
            break

    if not cursor.at_end():
        ctx.warn(
            "Unparsable garbage at end of mailbox {@%d}: %r",
            cursor.position,
            cursor.remaining().tobytes()[:72],
            cursor=cursor,
        )
    return messages


def _separator(cursor: Cursor, ctx: "RunContext", message: Message) -> bytes:
    # Extra blank lines stay attached to the message so the mailbox can be
    # written back byte for byte.
    start = cursor.mark()
    if cursor.newline() is None:
        return b""
    extra = cursor.mark()
    while cursor.newline() is not None:
        pass
    if cursor.position > extra:
        ctx.warn("Unexpected newline(s) after message %s", message.tag)
    return cursor.capture(start).tobytes()


def parse_message(
    cursor: Cursor,
    ctx: "RunContext",
    *,
    number: int = 1,
    whole: bool = False,
) -> Message | None:
    """Parse one message starting at the cursor.

    With ``whole`` set, everything after the headers is taken as the body,
    which is how single-message files edited by hand are read back.
    """

    if cursor.newline() is not None:
        ctx.warn("Unexpected newline(s) before message %d {@%d}", number, cursor.position)
        while cursor.newline() is not None:
            pass

    if cursor.at_end():
        return None

    start = cursor.mark()
    tag = f"#{number} {{@{start}}}"

    envelope = parse_envelope(cursor)
    if envelope is None:
        ctx.warn('Could not find a valid "From " line for message %s', tag, cursor=cursor)
    elif len(envelope.sender) == 0:
        ctx.warn("Empty envelope sender for message %s", tag)

    headers = parse_headers(cursor, ctx, tag)
    message = Message(number=number, envelope=envelope, headers=headers, offset=start)

    body_start = cursor.mark()
    if whole:
        cursor.until_end()
    else:
        _move_to_end_of_message(cursor, message, ctx)

    message.body = cursor.capture(body_start)
    message.data = cursor.capture(start)
    return message


def _move_to_end_of_message(cursor: Cursor, message: Message, ctx: "RunContext") -> None:
    body_start = cursor.mark()
    declared_header = message.headers.get(CONTENT_LENGTH)
    declared = message.content_length

    if declared_header is not None and declared < 0:
        ctx.warn(
            "Message %s: Invalid Content-Length: %r",
            message.tag,
            declared_header.tobytes()[:40],
        )

    if declared >= 0 and cursor.move(declared):
        if _accept_declared_end(cursor, body_start):
            return
        ctx.debug(
            "Message %s: Content-Length %d does not reach a message boundary",
            message.tag,
            declared,
        )
        signature = _find_corruption(cursor, declared)
        if signature is not None:
            message.corruption = signature
            ctx.debug("Message %s: Found inserted %s lines", message.tag, signature.describe())
            return
        cursor.move_to(body_start)
    elif declared >= 0:
        ctx.debug(
            "Message %s: Content-Length %d runs past the end of the mailbox",
            message.tag,
            declared,
        )

    if _find_closing_boundary(cursor, message):
        return
    cursor.move_to(body_start)

    if _find_next_envelope(cursor):
        return

    # Last resort: the rest of the data minus one line break
    cursor.until_end()
    end = cursor.mark()
    if cursor.backup_newline() and cursor.position < body_start:
        cursor.move_to(end)


def _accept_declared_end(cursor: Cursor, body_start: int) -> bool:
    """Check for end of input or ``\\n[\\n]From `` right at the cursor.

    When the cursor sits on a ``From `` that is directly preceded by a line
    break the length was one short of the separator; the boundary is still
    accepted.
    """

    end = cursor.mark()
    if _at(cursor, FROM_SPACE):
        if cursor.backup_newline() and cursor.position >= body_start:
            if cursor.newline() is not None and _at(cursor, FROM_SPACE):
                cursor.move_to(end)
                return True
        cursor.move_to(end)
        return False

    if cursor.at_end():
        return True
    if cursor.newline() is not None:
        cursor.newline()
        if cursor.at_end() or _at(cursor, FROM_SPACE):
            cursor.move_to(end)
            return True
    cursor.move_to(end)
    return False


def until_envelope(cursor: Cursor, newlines: int) -> bool:
    """Advance to the line break(s) before the next ``From `` literal.

    The literal must be preceded by ``newlines`` line breaks, and the
    resulting position must lie after the starting point. On success the
    cursor sits before those line breaks; otherwise it does not move.
    """

    saved = cursor.mark()
    while cursor.until_string(FROM_SPACE) is not None:
        found = cursor.mark()
        count = 0
        while count < newlines and cursor.backup_newline():
            count += 1
        if count == newlines and cursor.position > saved:
            return True
        cursor.move_to(found + len(FROM_SPACE))
    cursor.move_to(saved)
    return False


def _scan_inserted_lines(
    cursor: Cursor,
    end: int,
    signature: Corruption,
    parts: list[ByteSpan] | None = None,
) -> int:
    """Measure (and optionally cut out) lines matching ``signature``.

    Any line break may precede a bogus envelope here, not just a blank line,
    because the offending servers were not particular about it. Returns the
    number of bytes the inserted lines take up. When ``parts`` is given it
    receives every stretch of the span that was *not* inserted.
    """

    inserted = 0
    part_start = cursor.mark()

    while True:
        if parse_envelope(cursor) is None:
            if cursor.until_newline() is None or cursor.position >= end:
                break
            cursor.newline()
            continue

        while not cursor.at_end():
            line_start = cursor.mark()
            if cursor.newline() is not None:
                if Corruption.BLANK_LINE in signature:
                    inserted += cursor.position - line_start
                    if parts is not None:
                        parts.append(cursor.slice(part_start, line_start))
                        part_start = cursor.position
                # The line break ending these headers may also lead into the
                # next envelope, so look at it again from the outer loop.
                cursor.move_to(line_start)
                break

            if _inserted_header(cursor, signature):
                inserted += cursor.position - line_start
                if parts is not None:
                    parts.append(cursor.slice(part_start, line_start))
                    part_start = cursor.position
            else:
                cursor.line()

    if parts is not None:
        cursor.until_end()
        parts.append(cursor.capture(part_start))
    return inserted


def _inserted_header(cursor: Cursor, signature: Corruption) -> bool:
    start = cursor.mark()
    for flag, name in _INSERTED_HEADERS:
        if flag not in signature:
            continue
        if cursor.const_string(name, same_case=False) is not None and cursor.const_char(b":"):
            cursor.line()
            return True
        cursor.move_to(start)
    return False


def _find_corruption(cursor: Cursor, declared: int) -> Corruption | None:
    """Try each known signature until one explains the declared length.

    The cursor is expected at ``body start + declared``. On success it is
    left at the real end of the message.
    """

    declared_end = cursor.mark()
    body_start = declared_end - declared

    for signature in SIGNATURES:
        cursor.move_to(body_start)
        inserted = _scan_inserted_lines(cursor, declared_end, signature)
        if inserted <= 0 or not cursor.move_to(declared_end + inserted):
            continue

        if cursor.peek() in (None, 0x46):
            # Possibly one short of the separator; look behind for a break.
            cursor.move(-1)
            if cursor.peek() != 0x0A:
                cursor.move(1)

        end = cursor.mark()
        if cursor.newline() is None:
            continue
        middle = cursor.mark()
        if cursor.newline() is not None:
            # A second break may have been added along with the headers
            end = middle
        if cursor.at_end() or parse_envelope(cursor) is not None:
            cursor.move_to(end)
            return signature

    cursor.move_to(declared_end)
    return None


def _find_closing_boundary(cursor: Cursor, message: Message) -> bool:
    content_type = message.headers.get(CONTENT_TYPE)
    if content_type is None:
        return False
    boundary = multipart_boundary(content_type.tobytes())
    if boundary is None:
        return False

    marker = b"--" + boundary + b"--"
    start = cursor.mark()
    while cursor.until_string(marker) is not None:
        found = cursor.mark()
        if cursor.peek_back() in (0x0A, 0x0D):
            cursor.const_string(marker)
            if cursor.newline() is not None or cursor.at_end():
                return True
        cursor.move_to(found + 1)
    cursor.move_to(start)
    return False


def multipart_boundary(content_type: bytes) -> bytes | None:
    """Return the boundary parameter of a ``multipart/*`` content type."""

    value = _FOLDING.sub(b" ", content_type).decode("latin-1")
    holder = EmailMessage(policy=policy.compat32)
    holder["Content-Type"] = value
    if holder.get_content_maintype() != "multipart":
        return None
    boundary = holder.get_boundary()
    if not boundary:
        return None
    return boundary.encode("latin-1")


def _find_next_envelope(cursor: Cursor) -> bool:
    """Stop before the first grammatical envelope line in the body.

    The first body line counts too; the blank line ending the headers then
    doubles as the separator and the body is empty.
    """

    end = cursor.mark()
    while True:
        if parse_envelope(cursor) is not None:
            cursor.move_to(end)
            return True
        if not until_envelope(cursor, 1):
            return False
        end = cursor.mark()
        cursor.newline()


def repair_corruption(message: Message, ctx: "RunContext") -> bool:
    """Cut the inserted lines out of a tagged message's body.

    The Content-Length is rewritten to match the repaired body and the tag is
    cleared, so repairing twice changes nothing.
    """

    if message.corruption is Corruption.NONE:
        return False

    parts: list[ByteSpan] = []
    cursor = Cursor(message.body)
    _scan_inserted_lines(cursor, len(message.body), message.corruption, parts)
    message.corruption = Corruption.NONE
    message.set_body(join_spans(parts), update_length=False)

    declared = message.content_length
    actual = message.body_length
    if declared != actual:
        if declared != -1:
            warn_content_length(message, declared, actual, ctx)
        message.set_header(CONTENT_LENGTH, str(actual).encode("ascii"))
    return True


def warn_content_length(message: Message, declared: int, actual: int, ctx: "RunContext") -> None:
    delta = abs(declared - actual)
    if delta > 1 and declared > actual:
        ctx.warn("Message %s: Truncated, %d bytes missing", message.tag, declared - actual)
    elif delta > 1 and declared < actual:
        ctx.warn("Message %s: Oversized, %d bytes too many", message.tag, actual - declared)
    elif ctx.strict:
        ctx.warn(
            "Message %s: Incorrect Content-Length: %d; using %d",
            message.tag,
            declared,
            actual,
        )


def _at(cursor: Cursor, literal: bytes) -> bool:
    start = cursor.mark()
    found = cursor.const_string(literal) is not None
    cursor.move_to(start)
    return found


__all__ = [
    "SIGNATURES",
    "multipart_boundary",
    "parse_message",
    "parse_messages",
    "repair_corruption",
    "until_envelope",
    "warn_content_length",
]
