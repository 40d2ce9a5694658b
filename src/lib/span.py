"""Zero-copy byte views with explicit ownership tags."""

from __future__ import annotations

import enum
import mmap
from pathlib import Path
from typing import Union

Buffer = Union[bytes, mmap.mmap]


class Ownership(enum.Enum):
    """Who is responsible for the bytes a span points at."""

    BORROWED = "borrowed"
    OWNED = "owned"
    MAPPED = "mapped"
    STATIC = "static"


class ByteSpan:
    """An immutable ``(offset, length)`` window over a byte buffer.

    Spans never copy on creation; :meth:`tobytes` materializes the window.
    A *borrowed* span depends on whoever owns ``buffer`` staying alive, which
    for parsed messages is always the mailbox they came from.
    """

    __slots__ = ("_buffer", "_offset", "_length", "_ownership")

    def __init__(
        self,
        buffer: Buffer,
        offset: int = 0,
        length: int | None = None,
        ownership: Ownership = Ownership.BORROWED,
    ) -> None:
        if length is None:
            length = len(buffer) - offset
        if offset < 0 or length < 0 or offset + length > len(buffer):
            raise ValueError(
                f"span ({offset}, {length}) out of bounds for buffer of {len(buffer)} bytes"
            )
        self._buffer = buffer
        self._offset = offset
        self._length = length
        self._ownership = ownership

    @classmethod
    def owned(cls, data: bytes) -> "ByteSpan":
        return cls(bytes(data), 0, len(data), Ownership.OWNED)

    @classmethod
    def static(cls, data: bytes) -> "ByteSpan":
        return cls(data, 0, len(data), Ownership.STATIC)

    @classmethod
    def map_file(cls, path: Path) -> "ByteSpan":
        """Map ``path`` read-only and return a span owning the mapping."""

        with path.open("rb") as handle:
            mapping = mmap.mmap(handle.fileno(), 0, access=mmap.ACCESS_READ)
        return cls(mapping, 0, len(mapping), Ownership.MAPPED)

    @property
    def buffer(self) -> Buffer:
        return self._buffer

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def end(self) -> int:
        return self._offset + self._length

    @property
    def ownership(self) -> Ownership:
        return self._ownership

    def __len__(self) -> int:
        return self._length

    def __bytes__(self) -> bytes:
        return self.tobytes()

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ByteSpan):
            return self._length == other._length and self.tobytes() == other.tobytes()
        if isinstance(other, (bytes, bytearray)):
            return self.tobytes() == bytes(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.tobytes())

    def __repr__(self) -> str:
        preview = self.tobytes()[:32]
        return (
            f"ByteSpan({preview!r}{'...' if self._length > 32 else ''}, "
            f"offset={self._offset}, length={self._length}, {self._ownership.value})"
        )

    def tobytes(self) -> bytes:
        if (
            isinstance(self._buffer, bytes)
            and self._offset == 0
            and self._length == len(self._buffer)
        ):
            return self._buffer
        return self._buffer[self._offset : self._offset + self._length]

    def sub(self, start: int, end: int | None = None) -> "ByteSpan":
        """Return a borrowed span over ``[start, end)`` relative to this span."""

        if end is None:
            end = self._length
        if start < 0 or end < start or end > self._length:
            raise ValueError(f"sub-span [{start}, {end}) out of range for length {self._length}")
        return ByteSpan(self._buffer, self._offset + start, end - start, Ownership.BORROWED)

    def borrow(self) -> "ByteSpan":
        return ByteSpan(self._buffer, self._offset, self._length, Ownership.BORROWED)

    def find(self, needle: bytes, start: int = 0, *, same_case: bool = True) -> int:
        """Return the offset of ``needle`` relative to the span, or -1."""

        if not same_case:
            return self.tobytes().lower().find(needle.lower(), start)
        found = self._buffer.find(needle, self._offset + start, self.end)
        return -1 if found == -1 else found - self._offset

    def equals(self, other: "ByteSpan | bytes | None", *, same_case: bool = True) -> bool:
        if other is None:
            return False
        mine = self.tobytes()
        theirs = other.tobytes() if isinstance(other, ByteSpan) else bytes(other)
        if same_case:
            return mine == theirs
        return mine.lower() == theirs.lower()

    def has_prefix(self, prefix: bytes, *, same_case: bool = True) -> bool:
        if len(prefix) > self._length:
            return False
        head = self._buffer[self._offset : self._offset + len(prefix)]
        if same_case:
            return head == prefix
        return head.lower() == prefix.lower()

    def strip(self) -> "ByteSpan":
        """Return a borrowed span with leading/trailing spaces and tabs removed."""

        data = self.tobytes()
        start = 0
        end = len(data)
        while start < end and data[start] in b" \t":
            start += 1
        while end > start and data[end - 1] in b" \t\r\n":
            end -= 1
        return self.sub(start, end)

    def release(self) -> None:
        """Release the bytes this span is responsible for.

        Mapped spans unmap their region; owned spans drop their buffer. Borrowed
        and static spans release nothing.
        """

        if self._ownership is Ownership.MAPPED:
            if not self._buffer.closed:
                self._buffer.close()
        elif self._ownership is Ownership.OWNED:
            self._buffer = b""
            self._offset = 0
            self._length = 0


def join_spans(parts: list[ByteSpan], separator: bytes = b"") -> ByteSpan:
    """Concatenate ``parts`` into a single owned span."""

    return ByteSpan.owned(separator.join(part.tobytes() for part in parts))


EMPTY = ByteSpan.static(b"")

__all__ = [
    "EMPTY",
    "Buffer",
    "ByteSpan",
    "Ownership",
    "join_spans",
]
