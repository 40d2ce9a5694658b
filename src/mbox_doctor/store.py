"""The mailbox store: open, edit and atomically save an mbox file."""

from __future__ import annotations

import io
import os
import tempfile
from pathlib import Path
from typing import BinaryIO, Callable, Iterator

from lib.cursor import Cursor
from lib.span import ByteSpan, Ownership, join_spans
from mbox_doctor import locking
from mbox_doctor.context import RunContext
from mbox_doctor.message import CONTENT_LENGTH, Message
from mbox_doctor.readers.envelope import parse_envelope
from mbox_doctor.readers.segmenter import parse_message, parse_messages, until_envelope
from mbox_doctor.writers.mbox import write_message_file, write_messages


X_IMAP = b"X-IMAP"
X_IMAP_BASE = b"X-IMAPbase"
BACKUP_SUFFIX = "~"


class MailboxError(RuntimeError):
    """Raised when a mailbox is used in a way that breaks its invariants."""


class Mailbox:
    """An ordered collection of messages backed by one buffer.

    Messages live in an arena; ``_order`` lists arena slots in mailbox order
    so that lookups by number stay O(1) while messages are inserted,
    replaced, or deleted.
    """

    def __init__(
        self,
        ctx: RunContext,
        *,
        path: Path | None = None,
        source: str | None = None,
        span: ByteSpan | None = None,
        locked: bool = False,
    ) -> None:
        self.ctx = ctx
        self.path = path
        self.source = source
        self.span = span
        self._locked = locked
        self._arena: list[Message] = []
        self._order: list[int] = []
        self._dirty = False
        self._closed = False

    def __repr__(self) -> str:
        return f"Mailbox({self.name!r}, messages={len(self)})"

    @classmethod
    def open(cls, path: Path, ctx: RunContext, *, create: bool = False) -> "Mailbox":
        """Lock and parse the mailbox at ``path``.

        ``OSError`` (including :class:`~mbox_doctor.locking.MailboxLockError`)
        propagates to the caller with the lock released again.
        """

        path = Path(path)
        locked = False
        if not ctx.dry_run:
            locking.lock(path, ctx.lock_timeout)
            locked = True
        try:
            span = _load(path, ctx, create=create)
            mailbox = cls(ctx, path=path, span=span, locked=locked)
            mailbox._parse()
        except BaseException:
            if locked:
                locking.unlock(path)
            raise
        ctx.debug("Opened %s: %d messages", path, len(mailbox))
        return mailbox

    @classmethod
    def from_bytes(cls, data: bytes, ctx: RunContext, *, source: str | None = None) -> "Mailbox":
        """Parse an in-memory mailbox, such as one read from standard input."""

        mailbox = cls(ctx, source=source or "<stdin>", span=ByteSpan.owned(data))
        mailbox._parse()
        return mailbox

    def _parse(self) -> None:
        assert self.span is not None
        for message in parse_messages(Cursor(self.span), self.ctx):
            self._link(message)

    def close(self) -> None:
        """Release the buffer and the lock; messages may not be used afterwards."""

        if self._closed:
            return
        self._closed = True
        if self.span is not None and self.span.ownership in (Ownership.MAPPED, Ownership.OWNED):
            self.span.release()
        if self._locked and self.path is not None:
            locking.unlock(self.path)
            self._locked = False

    def __enter__(self) -> "Mailbox":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # Access

    @property
    def name(self) -> str:
        if self.path is not None:
            return str(self.path)
        return self.source or "<stdin>"

    @property
    def size(self) -> int:
        return 0 if self.span is None else len(self.span)

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[Message]:
        for slot in list(self._order):
            yield self._arena[slot]

    @property
    def live_count(self) -> int:
        return sum(1 for message in self if not message.deleted)

    def message(self, number: int) -> Message:
        """Return message ``number`` (1-based)."""

        if number < 1 or number > len(self._order):
            raise MailboxError(f"{self.name}: no message #{number} (have {len(self._order)})")
        return self._arena[self._order[number - 1]]

    def index(self, message: Message) -> int:
        if message.mailbox is not self:
            raise MailboxError(f"Message {message.tag} does not belong to {self.name}")
        return message.number - 1

    # Mutation

    def _link(self, message: Message, position: int | None = None) -> None:
        message.mailbox = self
        self._arena.append(message)
        slot = len(self._arena) - 1
        if position is None:
            self._order.append(slot)
            message.number = len(self._order)
        else:
            self._order.insert(position, slot)
            self._renumber(position)

    def _renumber(self, start: int = 0) -> None:
        for position in range(start, len(self._order)):
            self._arena[self._order[position]].number = position + 1

    def append(self, message: Message) -> Message:
        """Link a free-standing message at the end of the mailbox."""

        if message.is_linked:
            raise MailboxError(f"Message {message.tag} already belongs to a mailbox")
        self._link(message)
        message.set_dirty(True)
        self._dirty = True
        return message

    def insert_after(self, anchor: Message, message: Message) -> Message:
        if message.is_linked:
            raise MailboxError(f"Message {message.tag} already belongs to a mailbox")
        self._link(message, self.index(anchor) + 1)
        message.set_dirty(True)
        self._dirty = True
        return message

    def replace(self, old: Message, new: Message) -> Message:
        """Put the free-standing ``new`` in ``old``'s place."""

        if new.is_linked:
            raise MailboxError(f"Message {new.tag} already belongs to a mailbox")
        position = self.index(old)
        slot = self._order[position]
        new.mailbox = self
        new.number = old.number
        new.offset = old.offset
        self._arena[slot] = new
        old.mailbox = None
        new.set_dirty(True)
        self._dirty = True
        return new

    @property
    def is_dirty(self) -> bool:
        return self._dirty or any(message.dirty for message in self)

    def set_dirty(self, flag: bool) -> None:
        self._dirty = flag
        if not flag:
            for message in self:
                message.set_dirty(False)

    # Output

    def sanitize(self) -> None:
        """Move the IMAP bookkeeping header onto the first surviving message."""

        first = next((message for message in self if not message.deleted), None)
        if first is None:
            return
        for message in self:
            value = message.headers.get(X_IMAP_BASE)
            if value is None:
                value = message.headers.get(X_IMAP)
            if value is None:
                continue
            if message is not first:
                value = ByteSpan.owned(value.tobytes())
                first.set_header(X_IMAP_BASE, value)
                message.delete_header(X_IMAP)
                message.delete_header(X_IMAP_BASE)
                self.ctx.debug(
                    "Moved X-IMAPbase from message %s to message %s", message.tag, first.tag
                )
            return

    def serialize(self, handle: BinaryIO, *, sanitize: bool = True) -> int:
        """Write every message that is not deleted to ``handle``."""

        if sanitize:
            self.sanitize()
        return write_messages(handle, (message for message in self if not message.deleted))

    def to_bytes(self, *, sanitize: bool = True) -> bytes:
        buffer = io.BytesIO()
        self.serialize(buffer, sanitize=sanitize)
        return buffer.getvalue()

    def save(self, *, force: bool = False, destination: Path | None = None) -> bool:
        """Atomically write the mailbox back (or to ``destination``).

        Returns ``False`` when nothing needed to be written.
        """

        target = Path(destination) if destination is not None else self.path
        if target is None:
            raise MailboxError(f"{self.name}: no file to save to")
        if not force and not self.is_dirty:
            self.ctx.note("%s: Leaving mailbox unchanged", self.name)
            return False
        if self.ctx.dry_run:
            self.ctx.note("%s: Dry run, not saving %d messages", target, self.live_count)
            return False

        if target == self.path:
            self.ctx.note("Saving mailbox %s", self.name)
        else:
            self.ctx.note("Saving mailbox %s to %s", self.name, target)

        handle = tempfile.NamedTemporaryFile(
            "wb", dir=target.parent, prefix=f".{target.name}.", suffix=".tmp", delete=False
        )
        temp_path = Path(handle.name)
        try:
            with handle:
                self.serialize(handle)
                handle.flush()
                os.fsync(handle.fileno())
            if target.exists():
                os.chmod(temp_path, target.stat().st_mode & 0o7777)
                if self.ctx.backup:
                    os.replace(target, target.with_name(target.name + BACKUP_SUFFIX))
            os.replace(temp_path, target)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

        if target == self.path:
            for message in self:
                if message.dirty:
                    # The parsed bytes no longer match what is on disk
                    message.data = None
            self.set_dirty(False)
        return True


def _load(path: Path, ctx: RunContext, *, create: bool) -> ByteSpan:
    if not path.exists() and create:
        return ByteSpan.owned(b"")
    size = path.stat().st_size
    if ctx.use_mmap and size > 0:
        return ByteSpan.map_file(path)
    return ByteSpan.owned(path.read_bytes())


def join_messages(first: Message, second: Message) -> None:
    """Append ``second`` (envelope included) to ``first``'s body and delete it."""

    data = second.data if second.data is not None else ByteSpan.owned(b"")
    first.set_body(join_spans([first.body, ByteSpan.owned(b"\n"), data]))
    second.set_deleted(True)


def split_message(
    message: Message,
    ctx: RunContext,
    confirm: Callable[[Message, bytes], bool] | None = None,
) -> list[Message]:
    """Split ``message`` at envelope lines found after a blank line in its body.

    ``confirm`` is asked about each candidate line; without it every
    candidate is accepted. New messages are linked right after ``message``.
    """

    mailbox = message.mailbox
    if mailbox is None:
        raise MailboxError(f"Message {message.tag} does not belong to a mailbox")

    body = message.body
    cursor = Cursor(body)
    while until_envelope(cursor, 2):
        cursor.newline()
        cut = cursor.mark()
        cursor.newline()
        start = cursor.mark()
        envelope = parse_envelope(cursor)
        if envelope is None:
            continue

        line = envelope.line.tobytes().rstrip(b"\r\n") if envelope.line is not None else b""
        ctx.note('Message %s: Found "From " line in body: %r', message.tag, line)
        if confirm is not None and not confirm(message, line):
            continue

        cursor.move_to(start)
        created: list[Message] = []
        anchor = message
        while True:
            new = parse_message(cursor, ctx, number=anchor.number + 1)
            if new is None:
                break
            separator = cursor.newline()
            new.separator = b"\n" if separator is None else separator.tobytes()
            new.offset = None
            mailbox.insert_after(anchor, new)
            ctx.note("Created new message %s", new.tag)
            created.append(new)
            anchor = new

        if created:
            message.set_body(
                body.sub(0, cut),
                update_length=message.headers.get(CONTENT_LENGTH) is not None,
            )
        return created
    return []


def read_message_file(path: Path, mailbox: Mailbox, ctx: RunContext) -> Message:
    """Parse a single hand-edited message file back into a free message.

    Everything after the headers is the body, whatever it contains.
    """

    span = ByteSpan.owned(Path(path).read_bytes())
    message = parse_message(Cursor(span), ctx, number=len(mailbox) + 1, whole=True)
    if message is None:
        raise MailboxError(f"{path}: no message found")
    message.offset = None
    message.set_dirty(True)
    return message


def edit_round_trip(
    message: Message,
    ctx: RunContext,
    edit: Callable[[Path], None],
    *,
    directory: Path | None = None,
) -> Message | None:
    """Write ``message`` to a scratch file, let ``edit`` change it, read it back.

    Returns the replacement (already linked in place of ``message``) or
    ``None`` when the file came back unchanged.
    """

    mailbox = message.mailbox
    if mailbox is None:
        raise MailboxError(f"Message {message.tag} does not belong to a mailbox")
    with tempfile.TemporaryDirectory(dir=directory) as scratch:
        path = write_message_file(message, Path(scratch) / f"message-{message.number}.eml")
        before = path.read_bytes()
        edit(path)
        if path.read_bytes() == before:
            return None
        return mailbox.replace(message, read_message_file(path, mailbox, ctx))


__all__ = [
    "BACKUP_SUFFIX",
    "Mailbox",
    "MailboxError",
    "edit_round_trip",
    "join_messages",
    "read_message_file",
    "split_message",
]
