"""Tests for the mbox-doctor CLI argument parsing and commands."""

import io
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

from mbox_doctor import cli, locking


@pytest.fixture(autouse=True)
def _no_signal_handlers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(locking, "install_signal_handlers", lambda: None)


def _make_message(number: int, body: bytes, *, content_length: int | None = None, message_id: str | None = None) -> bytes:
    if content_length is None:
        content_length = len(body)
    if message_id is None:
        message_id = f"<{number}@example.com>"
    return (
        f"From sender@example.com Mon Apr  1 12:34:56 2008\n"
        f"From: sender@example.com\n"
        f"Subject: message {number}\n"
        f"Message-ID: {message_id}\n"
        f"Content-Length: {content_length}\n"
        "\n"
    ).encode("ascii") + body


def _write_mailbox(path: Path, *messages: bytes) -> bytes:
    data = b"\n".join(messages)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return data


def test_parse_args_defaults_to_mail_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MAIL", str(tmp_path / "spool"))
    args = cli.parse_args(["check"])
    assert args.mailboxes == [tmp_path / "spool"]
    assert args.lock_timeout == 5
    assert not args.strict


def test_parse_args_falls_back_to_var_mail(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("MAIL", raising=False)
    monkeypatch.setenv("LOGNAME", "alice")
    args = cli.parse_args(["unique"])
    assert args.mailboxes == [Path("/var/mail/alice")]


def test_parse_args_requires_output_for_concat(tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        cli.parse_args(["concat", str(tmp_path / "inbox")])


def test_check_command_reports_problems(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "inbox"
    data = _write_mailbox(
        path,
        _make_message(1, b"Hello world\n", content_length=5),
        _make_message(2, b"Bye\n"),
    )

    exit_code = cli.main(["check", "--no-progress", str(path)])

    assert exit_code == 0
    captured = capsys.readouterr().out
    assert f"{path}: 2 messages, {len(data)}B" in captured
    assert "1 problems found" in captured
    assert path.read_bytes() == data


def test_repair_command_rewrites_mailbox(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "inbox"
    _write_mailbox(
        path,
        _make_message(1, b"Hello world\n", content_length=5),
        _make_message(2, b"Bye\n"),
    )

    exit_code = cli.main(["repair", "--no-progress", "--backup", str(path)])

    assert exit_code == 0
    assert b"Content-Length: 12\n" in path.read_bytes()
    assert b"Content-Length: 5\n" in (tmp_path / "inbox~").read_bytes()
    assert "1 repaired" in capsys.readouterr().out
    assert not (tmp_path / "inbox.lock").exists()


def test_repair_dry_run_leaves_file_untouched(tmp_path: Path) -> None:
    path = tmp_path / "inbox"
    data = _write_mailbox(path, _make_message(1, b"Hello world\n", content_length=5))
    assert cli.main(["repair", "--dry-run", "--no-progress", str(path)]) == 0
    assert path.read_bytes() == data


def test_repair_reads_stdin_and_writes_stdout(
    monkeypatch: pytest.MonkeyPatch, capsysbinary: pytest.CaptureFixture[bytes]
) -> None:
    data = b"\n".join(
        [_make_message(1, b"Hello world\n", content_length=5), _make_message(2, b"Bye\n")]
    )
    monkeypatch.setattr(sys, "stdin", SimpleNamespace(buffer=io.BytesIO(data)))

    assert cli.main(["repair", "-q", "-"]) == 0

    written = capsysbinary.readouterr().out
    assert b"Content-Length: 12\n" in written
    assert written.count(b"From sender@example.com ") == 2


def test_unique_command_deletes_duplicates(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "inbox"
    _write_mailbox(
        path,
        _make_message(1, b"Same\n", message_id="<dup@x>"),
        _make_message(1, b"Same\n", message_id="<dup@x>"),
        _make_message(2, b"Other\n"),
    )

    assert cli.main(["unique", "--no-progress", str(path)]) == 0
    assert path.read_bytes().count(b"<dup@x>") == 1
    assert "Deleted 1 duplicates" in capsys.readouterr().out


def test_concat_command_collects_messages(tmp_path: Path) -> None:
    first = tmp_path / "a"
    second = tmp_path / "b"
    output = tmp_path / "all"
    _write_mailbox(first, _make_message(1, b"one\n"))
    _write_mailbox(second, _make_message(2, b"two\n"), _make_message(3, b"three\n"))

    assert cli.main(["concat", "--no-progress", "-o", str(output), str(first), str(second)]) == 0

    data = output.read_bytes()
    assert data.count(b"From sender@example.com ") == 3
    assert b"Subject: message 3" in data
    assert not (tmp_path / "all.lock").exists()


def test_concat_refuses_output_as_input_without_waiting_for_lock(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    first = tmp_path / "a"
    output = tmp_path / "all"
    _write_mailbox(first, _make_message(1, b"one\n"))
    _write_mailbox(output, _make_message(2, b"two\n"))

    def _no_wait(seconds: float) -> None:
        raise AssertionError("waited for a lock")

    monkeypatch.setattr(locking.time, "sleep", _no_wait)

    exit_code = cli.main(["concat", "--no-progress", "-o", str(output), str(first), str(output)])

    assert exit_code == 1
    assert "cannot concatenate a mailbox into itself" in capsys.readouterr().err
    data = output.read_bytes()
    assert data.count(b"From sender@example.com ") == 2
    assert not (tmp_path / "all.lock").exists()


def test_failures_are_counted_and_processing_continues(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    good = tmp_path / "good"
    _write_mailbox(good, _make_message(1, b"fine\n"))

    exit_code = cli.main(["check", "--no-progress", str(tmp_path / "missing"), str(good)])

    assert exit_code == 1
    captured = capsys.readouterr()
    assert "missing" in captured.err
    assert f"{good}: 1 messages" in captured.out


def test_directories_are_expanded_without_dotfiles(tmp_path: Path) -> None:
    root = tmp_path / "Mail"
    _write_mailbox(root / "inbox", _make_message(1, b"x\n"))
    _write_mailbox(root / "lists" / "python", _make_message(2, b"y\n"))
    _write_mailbox(root / ".hidden" / "secret", _make_message(3, b"z\n"))
    (root / ".profile").write_text("ignored")
    (root / "inbox.lock").write_text("1\n")

    found = list(cli.expand_mailboxes([root]))

    assert found == [root / "inbox", root / "lists" / "python"]


def test_quiet_verbose_prints_only_warning_count(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = tmp_path / "inbox"
    _write_mailbox(path, _make_message(1, b"Hello world\n", content_length=5))

    assert cli.main(["check", "-q", "-v", str(path)]) == 0

    out = capsys.readouterr().out
    assert out.strip() == f"{path}: 1 warning was issued"


@pytest.mark.parametrize(
    "size,expected",
    [(0, "0B"), (1023, "1023B"), (1536, "1.5K"), (5 * 1024 * 1024, "5.0M")],
)
def test_format_size(size: int, expected: str) -> None:
    assert cli.format_size(size) == expected
