"""Tests for opening, editing and saving mailboxes."""

import logging
import os
from pathlib import Path

import pytest

from lib.span import ByteSpan, Ownership
from mbox_doctor.context import RunContext
from mbox_doctor.message import Message
from mbox_doctor.readers.envelope import Envelope, EnvelopeTime
from mbox_doctor.readers.headers import Headers
from mbox_doctor.store import (
    Mailbox,
    MailboxError,
    edit_round_trip,
    join_messages,
    read_message_file,
    split_message,
)
from mbox_doctor.writers.mbox import write_message_file


def _make_message(number: int, body: bytes, *, extra: bytes = b"", newline: bytes = b"\n") -> bytes:
    lines = [
        b"From sender%d@example.com Mon Apr  1 12:34:56 2008" % number,
        b"From: sender%d@example.com" % number,
        b"Subject: message %d" % number,
        b"Message-ID: <%d@example.com>" % number,
    ]
    if extra:
        lines.append(extra)
    lines.append(b"Content-Length: %d" % len(body))
    return newline.join(lines) + newline + newline + body


def _write_mailbox(path: Path, *bodies: bytes, **kwargs) -> bytes:
    data = b"\n".join(_make_message(n + 1, body, **kwargs) for n, body in enumerate(bodies))
    path.write_bytes(data)
    return data


def test_round_trip_reproduces_original_bytes(tmp_path: Path) -> None:
    path = tmp_path / "inbox"
    data = _write_mailbox(path, b"one\n", b"two\n\n>From quoted\n", b"three\n")
    with Mailbox.open(path, RunContext()) as mailbox:
        assert len(mailbox) == 3
        assert not mailbox.is_dirty
        assert mailbox.to_bytes() == data


def test_round_trip_keeps_crlf_line_endings(tmp_path: Path) -> None:
    path = tmp_path / "dos"
    data = (
        b"From a@example.com Mon Apr  1 12:34:56 2008\r\nSubject: a\r\n\r\nbody a\r\n\r\n"
        b"From b@example.com Mon Apr  1 12:34:56 2008\r\nSubject: b\r\n\r\nbody b\r\n"
    )
    path.write_bytes(data)
    with Mailbox.open(path, RunContext()) as mailbox:
        assert [message.body.tobytes() for message in mailbox] == [b"body a\r\n", b"body b"]
        assert mailbox.to_bytes() == data


def test_open_maps_file_and_close_releases_it(tmp_path: Path) -> None:
    path = tmp_path / "inbox"
    _write_mailbox(path, b"one\n")
    mailbox = Mailbox.open(path, RunContext())
    assert mailbox.span is not None
    assert mailbox.span.ownership is Ownership.MAPPED
    assert (tmp_path / "inbox.lock").exists()
    mailbox.close()
    assert mailbox.span.buffer.closed
    assert not (tmp_path / "inbox.lock").exists()


def test_open_without_mmap_reads_file(tmp_path: Path) -> None:
    path = tmp_path / "inbox"
    _write_mailbox(path, b"one\n")
    with Mailbox.open(path, RunContext(use_mmap=False)) as mailbox:
        assert mailbox.span is not None
        assert mailbox.span.ownership is Ownership.OWNED
        assert mailbox.message(1).body == b"one\n"


def test_missing_mailbox_raises_and_leaves_no_lock(tmp_path: Path) -> None:
    path = tmp_path / "missing"
    with pytest.raises(FileNotFoundError):
        Mailbox.open(path, RunContext())
    assert not (tmp_path / "missing.lock").exists()

    with Mailbox.open(path, RunContext(), create=True) as mailbox:
        assert len(mailbox) == 0


def test_message_lookup_is_one_based() -> None:
    mailbox = Mailbox.from_bytes(_make_message(1, b"a\n") + b"\n" + _make_message(2, b"b\n"), RunContext())
    assert mailbox.message(2).body == b"b\n"
    with pytest.raises(MailboxError):
        mailbox.message(0)
    with pytest.raises(MailboxError):
        mailbox.message(3)


def test_append_links_free_message_and_rejects_linked_one() -> None:
    mailbox = Mailbox.from_bytes(_make_message(1, b"a\n"), RunContext())
    headers = Headers()
    headers.append(b"Subject", b"added")
    time = EnvelopeTime(weekday=1, month=4, day=1, hour=0, minute=0, second=0, year=2008)
    message = Message(
        envelope=Envelope(sender=ByteSpan.owned(b"me@example.com"), time=time),
        headers=headers,
    )
    message.set_body(b"new body\n")
    mailbox.append(message)
    assert message.number == 2
    assert mailbox.is_dirty
    with pytest.raises(MailboxError):
        mailbox.append(message)

    output = mailbox.to_bytes()
    assert output.endswith(
        b"From me@example.com Mon Apr  1 00:00:00 2008\n"
        b"Subject: added\nContent-Length: 9\n\nnew body\n\n"
    )


def test_clone_survives_closing_its_mailbox(tmp_path: Path) -> None:
    path = tmp_path / "inbox"
    _write_mailbox(path, b"one\n")
    with Mailbox.open(path, RunContext()) as mailbox:
        original = mailbox.message(1)
        copy = original.clone()
        assert not copy.is_linked
        assert copy.dirty
        assert not original.dirty

    assert copy.body.tobytes() == b"one\n"
    assert copy.header(b"Subject") == b"message 1"
    assert copy.envelope is not None
    assert copy.envelope.sender.tobytes() == b"sender1@example.com"


def test_sanitize_moves_imap_header_to_first_survivor() -> None:
    data = b"\n".join(
        [
            _make_message(1, b"pseudo\n", extra=b"X-IMAP: 1234 0000000005"),
            _make_message(2, b"two\n"),
            _make_message(3, b"three\n"),
        ]
    )
    mailbox = Mailbox.from_bytes(data, RunContext())
    mailbox.message(1).set_deleted(True)
    output = mailbox.to_bytes()
    assert b"pseudo" not in output
    assert output.count(b"X-IMAP") == 1
    assert b"X-IMAPbase: 1234 0000000005\n" in output
    second = mailbox.message(2)
    assert second.headers.get(b"X-IMAPbase") == b"1234 0000000005"


def test_save_is_atomic_and_keeps_backup(tmp_path: Path) -> None:
    path = tmp_path / "inbox"
    original = _write_mailbox(path, b"one\n", b"two\n", b"three\n")
    ctx = RunContext(backup=True)
    with Mailbox.open(path, ctx) as mailbox:
        mailbox.message(2).set_deleted(True)
        assert mailbox.save()
        assert not mailbox.is_dirty

    assert (tmp_path / "inbox~").read_bytes() == original
    with Mailbox.open(path, RunContext()) as reopened:
        assert [message.body.tobytes() for message in reopened] == [b"one\n", b"three\n"]
    assert sorted(p.name for p in tmp_path.iterdir()) == ["inbox", "inbox~"]


def test_save_leaves_clean_mailbox_alone(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    path = tmp_path / "inbox"
    _write_mailbox(path, b"one\n")
    before = path.stat().st_mtime_ns
    with caplog.at_level(logging.INFO, logger="mbox_doctor"):
        with Mailbox.open(path, RunContext()) as mailbox:
            assert not mailbox.save()
    assert path.stat().st_mtime_ns == before
    assert "Leaving mailbox unchanged" in caplog.text


def test_dry_run_neither_locks_nor_writes(tmp_path: Path) -> None:
    path = tmp_path / "inbox"
    original = _write_mailbox(path, b"one\n", b"two\n")
    with Mailbox.open(path, RunContext(dry_run=True)) as mailbox:
        assert not (tmp_path / "inbox.lock").exists()
        mailbox.message(1).set_deleted(True)
        assert not mailbox.save()
    assert path.read_bytes() == original


def test_save_preserves_file_mode(tmp_path: Path) -> None:
    path = tmp_path / "inbox"
    _write_mailbox(path, b"one\n", b"two\n")
    os.chmod(path, 0o600)
    with Mailbox.open(path, RunContext()) as mailbox:
        mailbox.message(1).set_deleted(True)
        mailbox.save()
    assert path.stat().st_mode & 0o777 == 0o600


def test_split_message_at_embedded_envelope() -> None:
    body = (
        b"Outer text\n"
        b"\n"
        b"From alice@example.com Tue Feb  2 03:04:05 1999\n"
        b"Subject: inner\n"
        b"\n"
        b"inner body\n"
    )
    ctx = RunContext()
    mailbox = Mailbox.from_bytes(_make_message(1, body), ctx)
    assert len(mailbox) == 1

    created = split_message(mailbox.message(1), ctx)
    assert len(created) == 1
    assert len(mailbox) == 2
    first, second = mailbox.message(1), mailbox.message(2)
    assert first.body == b"Outer text\n"
    assert first.content_length == len(b"Outer text\n")
    assert second is created[0]
    assert second.headers.get(b"Subject") == b"inner"
    assert second.envelope is not None
    assert second.envelope.sender == b"alice@example.com"


def test_split_can_be_declined() -> None:
    body = b"Outer\n\nFrom alice@example.com Tue Feb  2 03:04:05 1999\nSubject: x\n\ny\n"
    ctx = RunContext()
    mailbox = Mailbox.from_bytes(_make_message(1, body), ctx)
    assert split_message(mailbox.message(1), ctx, confirm=lambda message, line: False) == []
    assert len(mailbox) == 1
    assert not mailbox.is_dirty


def test_join_appends_second_message_and_deletes_it() -> None:
    first_data = _make_message(1, b"part one\n")
    second_data = _make_message(2, b"part two\n")
    mailbox = Mailbox.from_bytes(first_data + b"\n" + second_data, RunContext())
    first, second = mailbox.message(1), mailbox.message(2)
    join_messages(first, second)
    assert second.deleted
    assert first.body == b"part one\n\n" + second_data
    assert first.content_length == len(first.body)


def test_message_file_round_trip(tmp_path: Path) -> None:
    ctx = RunContext()
    mailbox = Mailbox.from_bytes(_make_message(1, b"line\n\nFrom me, with love\n"), ctx)
    path = write_message_file(mailbox.message(1), tmp_path / "message.eml")
    message = read_message_file(path, mailbox, ctx)
    assert not message.is_linked
    assert message.body == b"line\n\nFrom me, with love\n"
    assert message.headers.get(b"Subject") == b"message 1"


def test_edit_round_trip_replaces_message(tmp_path: Path) -> None:
    ctx = RunContext()
    mailbox = Mailbox.from_bytes(_make_message(1, b"a\n") + b"\n" + _make_message(2, b"b\n"), ctx)
    original = mailbox.message(1)

    def edit(path: Path) -> None:
        path.write_bytes(path.read_bytes().replace(b"Subject: message 1", b"Subject: edited"))

    replacement = edit_round_trip(original, ctx, edit, directory=tmp_path)
    assert replacement is not None
    assert mailbox.message(1) is replacement
    assert replacement.number == 1
    assert not original.is_linked
    assert replacement.headers.get(b"Subject") == b"edited"
    assert b"Subject: edited" in mailbox.to_bytes()


def test_unchanged_edit_returns_none(tmp_path: Path) -> None:
    ctx = RunContext()
    mailbox = Mailbox.from_bytes(_make_message(1, b"a\n"), ctx)
    assert edit_round_trip(mailbox.message(1), ctx, lambda path: None, directory=tmp_path) is None
