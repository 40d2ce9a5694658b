"""Backtracking cursor over a :class:`~lib.span.ByteSpan`.

Every ``consume``-style method follows the same contract: on success the
cursor advances past what matched and the matched span (or value) is
returned; on failure ``None``/``False`` is returned and the position is left
exactly where it was. Higher-level parsers rely on this to try one grammar,
fail, and retry another from the same spot.
"""

from __future__ import annotations

from lib.span import ByteSpan, Ownership

_SPACE = 0x20
_TAB = 0x09
_CR = 0x0D
_LF = 0x0A


class Cursor:
    """A position within a span plus matching primitives."""

    __slots__ = ("_span", "_buffer", "_origin", "_end", "_pos")

    def __init__(self, span: ByteSpan) -> None:
        self._span = span
        self._buffer = span.buffer
        self._origin = span.offset
        self._end = span.end
        self._pos = span.offset

    @property
    def span(self) -> ByteSpan:
        return self._span

    @property
    def position(self) -> int:
        """Offset of the cursor from the start of the underlying span."""
        return self._pos - self._origin

    @property
    def length(self) -> int:
        return self._end - self._origin

    def at_end(self) -> bool:
        return self._pos >= self._end

    def remaining(self) -> ByteSpan:
        return ByteSpan(self._buffer, self._pos, self._end - self._pos, Ownership.BORROWED)

    def peek(self) -> int | None:
        if self._pos >= self._end:
            return None
        return self._buffer[self._pos]

    def peek_back(self) -> int | None:
        if self._pos <= self._origin:
            return None
        return self._buffer[self._pos - 1]

    def move_to(self, position: int) -> bool:
        if position < 0 or self._origin + position > self._end:
            return False
        self._pos = self._origin + position
        return True

    def move(self, count: int) -> bool:
        return self.move_to(self.position + count)

    # Capturing

    def mark(self) -> int:
        """Snapshot the current position for :meth:`capture` or :meth:`move_to`."""
        return self.position

    def capture(self, mark: int) -> ByteSpan:
        """Return a span covering everything consumed since ``mark``."""
        start = self._origin + mark
        return ByteSpan(self._buffer, start, max(self._pos - start, 0), Ownership.BORROWED)

    def slice(self, start: int, end: int) -> ByteSpan:
        return ByteSpan(self._buffer, self._origin + start, end - start, Ownership.BORROWED)

    def _take(self, count: int) -> ByteSpan:
        span = ByteSpan(self._buffer, self._pos, count, Ownership.BORROWED)
        self._pos += count
        return span

    # Matching primitives

    def char(self) -> int | None:
        if self._pos >= self._end:
            return None
        value = self._buffer[self._pos]
        self._pos += 1
        return value

    def const_char(self, expected: bytes, *, same_case: bool = True) -> ByteSpan | None:
        current = self.peek()
        if current is None:
            return None
        value = bytes((current,))
        if value == expected or (not same_case and value.lower() == expected.lower()):
            return self._take(1)
        return None

    def const_string(self, expected: bytes, *, same_case: bool = True) -> ByteSpan | None:
        size = len(expected)
        if self._pos + size > self._end:
            return None
        head = self._buffer[self._pos : self._pos + size]
        if head == expected or (not same_case and head.lower() == expected.lower()):
            return self._take(size)
        return None

    def spaces(self) -> ByteSpan | None:
        end = self._pos
        while end < self._end and self._buffer[end] in (_SPACE, _TAB):
            end += 1
        if end == self._pos:
            return None
        return self._take(end - self._pos)

    def newline(self) -> ByteSpan | None:
        """Consume an optional CR followed by an optional LF."""

        end = self._pos
        if end < self._end and self._buffer[end] == _CR:
            end += 1
        if end < self._end and self._buffer[end] == _LF:
            end += 1
        if end == self._pos:
            return None
        return self._take(end - self._pos)

    def backup_newline(self) -> bool:
        """Step back over one line terminator immediately before the cursor."""

        start = self._pos
        if self._pos > self._origin and self._buffer[self._pos - 1] == _LF:
            self._pos -= 1
        if self._pos > self._origin and self._buffer[self._pos - 1] == _CR:
            self._pos -= 1
        return self._pos < start

    def _find_newline(self) -> int:
        lf = self._buffer.find(b"\n", self._pos, self._end)
        cr = self._buffer.find(b"\r", self._pos, lf if lf != -1 else self._end)
        if cr != -1:
            return cr
        return lf

    def until_newline(self) -> ByteSpan | None:
        found = self._find_newline()
        if found == -1:
            return None
        return self._take(found - self._pos)

    def until_char(self, expected: bytes, *, same_case: bool = True) -> ByteSpan | None:
        return self.until_string(expected, same_case=same_case)

    def until_string(self, expected: bytes, *, same_case: bool = True) -> ByteSpan | None:
        if same_case:
            found = self._buffer.find(expected, self._pos, self._end)
        else:
            haystack = self._buffer[self._pos : self._end].lower()
            relative = haystack.find(expected.lower())
            found = -1 if relative == -1 else self._pos + relative
        if found == -1:
            return None
        return self._take(found - self._pos)

    def until_end(self) -> ByteSpan:
        return self._take(self._end - self._pos)

    def line(self) -> ByteSpan:
        """Consume up to and including the next terminator (or the end of input).

        The returned span excludes the terminator.
        """

        content = self.until_newline()
        if content is None:
            return self.until_end()
        self.newline()
        return content

    def integer(self) -> int | None:
        end = self._pos
        while end < self._end and 0x30 <= self._buffer[end] <= 0x39:
            end += 1
        if end == self._pos:
            return None
        return int(self._take(end - self._pos).tobytes())

    def excerpt(self, radius: int = 40) -> str:
        """Return a printable excerpt around the cursor for diagnostics."""

        start = max(self._pos - radius, self._origin)
        end = min(self._pos + radius, self._end)
        before = self._buffer[start : self._pos].decode("latin-1")
        after = self._buffer[self._pos : end].decode("latin-1")
        return f"{before!r} <-- here --> {after!r}"


def to_integer(span: ByteSpan | None, default: int = -1) -> int:
    """Parse ``span`` as a decimal integer surrounded by optional blanks."""

    if span is None:
        return default
    cursor = Cursor(span)
    cursor.spaces()
    value = cursor.integer()
    cursor.spaces()
    if value is None or not cursor.at_end():
        return default
    return value


__all__ = ["Cursor", "to_integer"]
