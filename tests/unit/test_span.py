"""Tests for byte spans and their ownership tags."""

from pathlib import Path

import pytest

from lib.span import EMPTY, ByteSpan, Ownership, join_spans


def test_sub_span_borrows_without_copying() -> None:
    parent = ByteSpan.owned(b"Hello, world")
    child = parent.sub(7, 12)
    assert child == b"world"
    assert child.buffer is parent.buffer
    assert child.ownership is Ownership.BORROWED
    assert child.offset == 7


def test_out_of_range_spans_are_rejected() -> None:
    with pytest.raises(ValueError):
        ByteSpan(b"abc", 2, 5)
    with pytest.raises(ValueError):
        ByteSpan.owned(b"abc").sub(2, 1)


def test_equals_and_find_respect_case_flag() -> None:
    span = ByteSpan.owned(b"xxContent-Length: 5").sub(2)
    assert span.has_prefix(b"content-length", same_case=False)
    assert not span.has_prefix(b"content-length")
    assert span.find(b"LENGTH", same_case=False) == 8
    assert span.find(b"LENGTH") == -1
    assert span.sub(0, 7).equals(b"CONTENT", same_case=False)


def test_strip_trims_blanks_and_trailing_newlines() -> None:
    span = ByteSpan.owned(b" \tvalue \r\n")
    assert span.strip() == b"value"


def test_empty_span_has_zero_length() -> None:
    assert len(EMPTY) == 0
    assert EMPTY.ownership is Ownership.STATIC
    assert EMPTY.tobytes() == b""


def test_join_spans_returns_owned_copy() -> None:
    data = ByteSpan.owned(b"one two three")
    joined = join_spans([data.sub(0, 3), data.sub(8, 13)], b"+")
    assert joined == b"one+three"
    assert joined.ownership is Ownership.OWNED


def test_release_drops_owned_bytes() -> None:
    span = ByteSpan.owned(b"payload")
    span.release()
    assert len(span) == 0


def test_mapped_span_reads_file_and_unmaps(tmp_path: Path) -> None:
    path = tmp_path / "data"
    path.write_bytes(b"mapped bytes")
    span = ByteSpan.map_file(path)
    assert span.ownership is Ownership.MAPPED
    assert span.sub(7) == b"bytes"
    span.release()
    assert span.buffer.closed
