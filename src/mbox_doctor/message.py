"""The in-memory message record shared by the parser, store and tools."""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING

from lib.cursor import to_integer
from lib.span import EMPTY, ByteSpan
from mbox_doctor.readers.envelope import Envelope
from mbox_doctor.readers.headers import Headers

if TYPE_CHECKING:
    from mbox_doctor.store import Mailbox

CONTENT_LENGTH = b"Content-Length"
MESSAGE_ID = b"Message-ID"

_UNSET = object()


class Corruption(enum.Flag):
    """Which extra lines a buggy IMAP server spliced into a message body."""

    NONE = 0
    XUID_KEYWORDS = enum.auto()
    CONTENT_LENGTH = enum.auto()
    STATUS = enum.auto()
    BLANK_LINE = enum.auto()

    def describe(self) -> str:
        if self is Corruption.NONE:
            return "none"
        names = {
            Corruption.XUID_KEYWORDS: "X-UID/X-Keywords",
            Corruption.CONTENT_LENGTH: "Content-Length",
            Corruption.STATUS: "Status",
            Corruption.BLANK_LINE: "blank line",
        }
        return " + ".join(label for flag, label in names.items() if flag in self)


class Message:
    """A single mailbox message.

    Spans parsed from a mailbox borrow that mailbox's buffer, so a message
    must not be used after its mailbox is closed.
    """

    def __init__(
        self,
        *,
        number: int = 0,
        envelope: Envelope | None = None,
        headers: Headers | None = None,
        body: ByteSpan = EMPTY,
        data: ByteSpan | None = None,
        offset: int | None = None,
        separator: bytes = b"\n",
    ) -> None:
        self.number = number
        self.mailbox: Mailbox | None = None
        self.envelope = envelope
        self.headers = headers if headers is not None else Headers()
        self.body = body
        self.data = data
        self.offset = offset
        self.separator = separator
        self.deleted = False
        self.corruption = Corruption.NONE
        self._dirty = False
        self._cached_id: object = _UNSET

    def __repr__(self) -> str:
        return f"Message({self.tag}, deleted={self.deleted}, dirty={self.dirty})"

    @property
    def tag(self) -> str:
        if self.offset is None:
            return f"#{self.number}"
        return f"#{self.number} {{@{self.offset}}}"

    @property
    def is_linked(self) -> bool:
        return self.mailbox is not None

    @property
    def dirty(self) -> bool:
        return self._dirty or self.headers.modified

    def set_dirty(self, flag: bool) -> None:
        self._dirty = flag
        if not flag:
            self.headers.modified = False

    def set_deleted(self, flag: bool) -> None:
        if self.deleted != flag:
            self.deleted = flag
            self.set_dirty(True)

    @property
    def message_id(self) -> ByteSpan | None:
        """The first Message-ID value, looked up once and then cached."""

        if self._cached_id is _UNSET:
            self._cached_id = self.headers.get(MESSAGE_ID)
        return self._cached_id  # type: ignore[return-value]

    @property
    def body_length(self) -> int:
        return len(self.body)

    @property
    def content_length(self) -> int:
        """Declared Content-Length, or -1 when missing or not numeric."""
        return to_integer(self.headers.get(CONTENT_LENGTH), -1)

    def header(self, key: bytes) -> bytes | None:
        value = self.headers.get(key)
        return None if value is None else value.tobytes()

    def set_header(self, key: bytes, value: bytes | ByteSpan) -> None:
        self.headers.set(key, value)
        self._cached_id = _UNSET
        self.set_dirty(True)

    def delete_header(self, key: bytes, *, all_matches: bool = False) -> int:
        removed = self.headers.delete(key, all_matches=all_matches)
        self._cached_id = _UNSET
        if removed:
            self.set_dirty(True)
        return removed

    def set_body(self, body: bytes | ByteSpan, *, update_length: bool = True) -> None:
        if not isinstance(body, ByteSpan):
            body = ByteSpan.owned(body)
        self.body = body
        if update_length:
            self.headers.set(CONTENT_LENGTH, str(len(body)).encode("ascii"))
        self.set_dirty(True)

    def clone(self) -> "Message":
        """Return a dirty, free-standing deep copy owning all of its bytes."""

        envelope = None
        if self.envelope is not None:
            envelope = Envelope(
                sender=ByteSpan.owned(self.envelope.sender.tobytes()),
                time=self.envelope.time,
                line=(
                    None
                    if self.envelope.line is None
                    else ByteSpan.owned(self.envelope.line.tobytes())
                ),
            )
        copy = Message(
            number=self.number,
            envelope=envelope,
            headers=self.headers.clone(),
            body=ByteSpan.owned(self.body.tobytes()),
            data=None if self.data is None else ByteSpan.owned(self.data.tobytes()),
            separator=self.separator,
        )
        copy.deleted = self.deleted
        copy.corruption = self.corruption
        copy.set_dirty(True)
        return copy


__all__ = ["CONTENT_LENGTH", "MESSAGE_ID", "Corruption", "Message"]
