"""Header records and the header-block parser."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterator

from lib.cursor import Cursor
from lib.span import ByteSpan

if TYPE_CHECKING:
    from mbox_doctor.context import RunContext

FROM_SPACE_KEY = b"From "
QUOTED_FROM_KEY = b">From "


class Header:
    """A single header line.

    ``line`` holds the original bytes (including folding and the terminator)
    and is written back verbatim until the value is changed.
    """

    __slots__ = ("key", "value", "line")

    def __init__(self, key: ByteSpan, value: ByteSpan, line: ByteSpan | None = None) -> None:
        self.key = key
        self.value = value
        self.line = line

    def __repr__(self) -> str:
        return f"Header({self.key.tobytes()!r}, {self.value.tobytes()!r})"

    @property
    def is_quoted_from(self) -> bool:
        return self.key.equals(QUOTED_FROM_KEY)

    def matches(self, key: bytes) -> bool:
        return self.key.equals(key, same_case=False)

    def set_value(self, value: ByteSpan | bytes) -> None:
        if not isinstance(value, ByteSpan):
            value = ByteSpan.owned(value)
        self.value = value
        self.line = None

    def to_bytes(self) -> bytes:
        if self.line is not None:
            return self.line.tobytes()
        if self.is_quoted_from:
            return self.key.tobytes() + self.value.tobytes() + b"\n"
        return self.key.tobytes() + b": " + self.value.tobytes() + b"\n"

    def clone(self) -> "Header":
        return Header(
            ByteSpan.owned(self.key.tobytes()),
            ByteSpan.owned(self.value.tobytes()),
            None if self.line is None else ByteSpan.owned(self.line.tobytes()),
        )


class Headers:
    """Ordered header list; duplicate keys are allowed and order is preserved.

    Lookups are case-insensitive on the key. Any mutation flips
    :attr:`modified` so the owning message knows it has to be rewritten.
    """

    def __init__(self, items: list[Header] | None = None) -> None:
        self._items: list[Header] = list(items or [])
        self.modified = False

    def __iter__(self) -> Iterator[Header]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"Headers({self._items!r})"

    def find(self, key: bytes) -> Header | None:
        for header in self._items:
            if header.matches(key):
                return header
        return None

    def find_last(self, key: bytes) -> Header | None:
        for header in reversed(self._items):
            if header.matches(key):
                return header
        return None

    def get(self, key: bytes) -> ByteSpan | None:
        header = self.find(key)
        return None if header is None else header.value

    def get_last(self, key: bytes) -> ByteSpan | None:
        header = self.find_last(key)
        return None if header is None else header.value

    def get_all(self, key: bytes) -> list[ByteSpan]:
        return [header.value for header in self._items if header.matches(key)]

    def set(self, key: bytes, value: ByteSpan | bytes) -> None:
        """Replace the first ``key`` header's value, or append one."""

        header = self.find(key)
        if header is None:
            self.append(key, value)
            return
        header.set_value(value)
        self.modified = True

    def append(self, key: bytes, value: ByteSpan | bytes) -> None:
        if not isinstance(value, ByteSpan):
            value = ByteSpan.owned(value)
        self._items.append(Header(ByteSpan.owned(key), value))
        self.modified = True

    def delete(self, key: bytes, *, all_matches: bool = False) -> int:
        removed = 0
        kept: list[Header] = []
        for header in self._items:
            if header.matches(key) and (all_matches or removed == 0):
                removed += 1
                continue
            kept.append(header)
        if removed:
            self._items = kept
            self.modified = True
        return removed

    def clone(self) -> "Headers":
        return Headers([header.clone() for header in self._items])

    def to_bytes(self) -> bytes:
        return b"".join(header.to_bytes() for header in self._items)


def parse_header(cursor: Cursor, ctx: "RunContext", tag: str = "") -> Header | None:
    """Parse one (possibly folded) header at the cursor.

    Returns ``None`` without moving the cursor when the line turns out to be
    a ``From `` envelope so the caller can treat it as a message boundary.
    A ``>From `` line is accepted as a pseudo-header with a warning.
    """

    start = cursor.mark()
    first = cursor.peek()
    if first is not None and not _is_alnum(first) and not _at(cursor, QUOTED_FROM_KEY):
        ctx.warn(
            "Message %s: Header starts with illegal character %r {@%d}",
            tag,
            bytes((first,)),
            start,
            cursor=cursor,
        )

    key: ByteSpan | None = None
    while True:
        current = cursor.peek()
        if current is None or current in b"\r\n":
            # No colon on this line: keep the whole line as the key
            key = cursor.capture(start).strip()
            ctx.warn(
                "Message %s: Malformed header line without a colon {@%d}",
                tag,
                start,
                cursor=cursor,
            )
            break
        cursor.char()
        if current == 0x3A:
            key = cursor.slice(start, cursor.position - 1).strip()
            break
        if current == 0x20:
            so_far = cursor.capture(start)
            if so_far.equals(FROM_SPACE_KEY):
                cursor.move_to(start)
                ctx.warn(
                    'Encountered unexpected "From " line in headers {@%d}',
                    start,
                    cursor=cursor,
                )
                return None
            if so_far.equals(QUOTED_FROM_KEY):
                ctx.warn(
                    'Message %s: Encountered unexpected ">From " line in headers {@%d}',
                    tag,
                    start,
                    cursor=cursor,
                )
                key = so_far
                break

    cursor.spaces()
    value_start = cursor.mark()
    value_end = value_start
    while True:
        if cursor.until_newline() is None:
            cursor.until_end()
        value_end = cursor.position
        cursor.newline()
        if cursor.peek() not in (0x20, 0x09):
            break

    value = cursor.slice(value_start, value_end).strip()
    return Header(key, value, cursor.capture(start))


def parse_headers(cursor: Cursor, ctx: "RunContext", tag: str = "") -> Headers:
    """Parse headers up to and including the blank line that ends them.

    Running out of input (or into an envelope line) is not fatal: a warning
    is issued and whatever was collected is returned.
    """

    headers: list[Header] = []
    while cursor.newline() is None:
        header = None if cursor.at_end() else parse_header(cursor, ctx, tag)
        if header is None:
            ctx.warn(
                "Message %s: Header parsing ended prematurely {@%d}",
                tag,
                cursor.position,
                cursor=cursor,
            )
            break
        headers.append(header)
    return Headers(headers)


def _at(cursor: Cursor, literal: bytes) -> bool:
    start = cursor.mark()
    found = cursor.const_string(literal) is not None
    cursor.move_to(start)
    return found


def _is_alnum(value: int) -> bool:
    return 0x30 <= value <= 0x39 or 0x41 <= value <= 0x5A or 0x61 <= value <= 0x7A


__all__ = ["Header", "Headers", "parse_header", "parse_headers"]
