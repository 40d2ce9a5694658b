"""Command-line interface for checking and repairing mbox mailboxes."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Callable, Iterator

from tqdm import tqdm

from mbox_doctor import locking
from mbox_doctor.check import check_mailbox
from mbox_doctor.context import DEFAULT_LOCK_TIMEOUT, RunContext
from mbox_doctor.dedup import unique_mailbox
from mbox_doctor.store import Mailbox, MailboxError

STDIN_NAME = "-"


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "mailboxes",
        nargs="*",
        type=Path,
        help=(
            "Mailbox files or directories to process ('-' reads standard input). "
            "Defaults to $MAIL or /var/mail/$LOGNAME."
        ),
    )
    common.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Only report errors.",
    )
    common.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Report progress details; with --quiet, print the warning count only.",
    )
    common.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Do everything except locking and writing mailboxes.",
    )
    common.add_argument(
        "--no-mmap",
        action="store_true",
        help="Read mailboxes into memory instead of mapping them.",
    )
    common.add_argument(
        "--lock-timeout",
        type=int,
        default=DEFAULT_LOCK_TIMEOUT,
        help="Seconds to wait for a mailbox lock before giving up.",
    )
    common.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable progress bar output.",
    )
    common.add_argument(
        "--show-context",
        action="store_true",
        help="Log an excerpt of the mailbox around each parse warning.",
    )

    parser = argparse.ArgumentParser(
        prog="mbox-doctor",
        description="Check, repair and de-duplicate Unix mbox mailboxes.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    check_parser = subparsers.add_parser(
        "check",
        parents=[common],
        help="Parse mailboxes and report any problems found.",
    )
    check_parser.add_argument(
        "-s",
        "--strict",
        action="store_true",
        help="Also report missing From/Date/Content-Length headers and stray bytes.",
    )
    check_parser.set_defaults(handler=_handle_check)

    repair_parser = subparsers.add_parser(
        "repair",
        parents=[common],
        help="Check mailboxes, repair what was found, and save them.",
    )
    repair_parser.add_argument(
        "-s",
        "--strict",
        action="store_true",
        help="Also repair missing From/Date/Content-Length headers.",
    )
    repair_parser.add_argument(
        "-b",
        "--backup",
        action="store_true",
        help="Keep the previous version of each saved mailbox with a '~' suffix.",
    )
    repair_parser.set_defaults(handler=_handle_repair)

    unique_parser = subparsers.add_parser(
        "unique",
        parents=[common],
        help="Delete duplicate messages (same Message-ID, headers and body).",
    )
    unique_parser.add_argument(
        "-b",
        "--backup",
        action="store_true",
        help="Keep the previous version of each saved mailbox with a '~' suffix.",
    )
    unique_parser.set_defaults(handler=_handle_unique)

    concat_parser = subparsers.add_parser(
        "concat",
        parents=[common],
        help="Write the messages of all mailboxes into one mailbox file.",
    )
    concat_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        required=True,
        help="Mailbox file to append the messages to (created if missing).",
    )
    concat_parser.add_argument(
        "-b",
        "--backup",
        action="store_true",
        help="Keep the previous version of the output mailbox with a '~' suffix.",
    )
    concat_parser.set_defaults(handler=_handle_concat)

    return parser


Handler = Callable[[argparse.Namespace, RunContext], int]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.mailboxes:
        default = default_mailbox()
        if default is None:
            parser.error("no mailbox given and neither $MAIL nor $LOGNAME is set")
        args.mailboxes = [default]
    if args.lock_timeout < 0:
        parser.error("--lock-timeout must not be negative")
    if args.command == "concat":
        args.output = args.output.resolve()

    return args


def default_mailbox() -> Path | None:
    """Return the user's system mailbox: ``$MAIL``, else ``/var/mail/$LOGNAME``."""

    mail = os.environ.get("MAIL")
    if mail:
        return Path(mail)
    user = os.environ.get("LOGNAME")
    if user:
        return Path("/var/mail") / user
    return None


def expand_mailboxes(paths: list[Path]) -> Iterator[Path]:
    """Yield mailbox files, descending into directories and skipping dotfiles."""

    for path in paths:
        if str(path) != STDIN_NAME and path.is_dir():
            for child in sorted(path.rglob("*")):
                relative = child.relative_to(path)
                if any(part.startswith(".") for part in relative.parts):
                    continue
                if child.is_file() and not child.name.endswith(locking.LOCK_SUFFIX):
                    yield child
        else:
            yield path


def build_context(args: argparse.Namespace) -> RunContext:
    return RunContext(
        strict=getattr(args, "strict", False),
        dry_run=args.dry_run,
        backup=getattr(args, "backup", False),
        use_mmap=not args.no_mmap,
        show_context=args.show_context,
        lock_timeout=args.lock_timeout,
    )


def configure_logging(args: argparse.Namespace) -> None:
    if args.quiet:
        level = logging.ERROR
    elif args.verbose or args.show_context:
        level = logging.DEBUG
    else:
        level = logging.INFO
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)
    logging.getLogger("mbox_doctor").setLevel(level)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args)
    locking.install_signal_handlers()
    ctx = build_context(args)
    handler: Handler = args.handler
    try:
        return handler(args, ctx)
    finally:
        locking.unlock_all()


def _for_each_mailbox(
    args: argparse.Namespace,
    ctx: RunContext,
    process: Callable[[Mailbox], None],
    *,
    exclude: Path | None = None,
) -> int:
    failures = 0
    mailboxes = list(expand_mailboxes(args.mailboxes))
    progress = None
    if _show_progress(args) and len(mailboxes) > 1:
        progress = tqdm(total=len(mailboxes), desc="Mailboxes", unit="mbox")

    for path in mailboxes:
        if progress:
            progress.set_postfix_str(path.name, refresh=False)
        ctx.reset_warnings()
        try:
            if exclude is not None and str(path) != STDIN_NAME and path.resolve() == exclude:
                raise MailboxError(f"{path}: cannot concatenate a mailbox into itself")
            with _open(path, ctx) as mailbox:
                if not args.quiet:
                    print(f"{mailbox.name}: {len(mailbox)} messages, {format_size(mailbox.size)}")
                process(mailbox)
        except (OSError, MailboxError) as error:
            print(f"{path}: {_describe(error)}", file=sys.stderr)
            failures += 1
        if args.quiet and args.verbose:
            issued = ctx.warnings
            if issued == 1:
                print(f"{path}: 1 warning was issued")
            else:
                print(f"{path}: {issued} warnings were issued")
        if progress:
            progress.update(1)

    if progress:
        progress.close()
    return failures


def _show_progress(args: argparse.Namespace) -> bool:
    return not args.no_progress and not args.quiet


def _open(path: Path, ctx: RunContext) -> Mailbox:
    if str(path) == STDIN_NAME:
        return Mailbox.from_bytes(sys.stdin.buffer.read(), ctx)
    return Mailbox.open(path, ctx)


def _save(mailbox: Mailbox) -> None:
    if mailbox.path is None:
        mailbox.serialize(sys.stdout.buffer)
        sys.stdout.buffer.flush()
        return
    mailbox.save()


def _handle_check(args: argparse.Namespace, ctx: RunContext) -> int:
    def process(mailbox: Mailbox) -> None:
        report = check_mailbox(mailbox, ctx, show_progress=_show_progress(args))
        if not args.quiet:
            print(f"  Checked {report.checked} messages: {report.problems} problems found.")

    return _for_each_mailbox(args, ctx, process)


def _handle_repair(args: argparse.Namespace, ctx: RunContext) -> int:
    def process(mailbox: Mailbox) -> None:
        report = check_mailbox(mailbox, ctx, repair=True, show_progress=_show_progress(args))
        if not args.quiet:
            print(
                f"  Checked {report.checked} messages: {report.problems} problems found, "
                f"{report.repairs} repaired."
            )
        _save(mailbox)

    return _for_each_mailbox(args, ctx, process)


def _handle_unique(args: argparse.Namespace, ctx: RunContext) -> int:
    def process(mailbox: Mailbox) -> None:
        report = unique_mailbox(mailbox, ctx)
        if not args.quiet:
            print(f"  Deleted {report.duplicates} duplicates; {report.conflicts} conflicts left.")
        _save(mailbox)

    return _for_each_mailbox(args, ctx, process)


def _handle_concat(args: argparse.Namespace, ctx: RunContext) -> int:
    output: Path = args.output
    try:
        target = Mailbox.open(output, ctx, create=True)
    except OSError as error:
        print(f"{output}: {_describe(error)}", file=sys.stderr)
        return 1

    with target:

        def process(mailbox: Mailbox) -> None:
            copied = 0
            for message in mailbox:
                if not message.deleted:
                    target.append(message.clone())
                    copied += 1
            if not args.quiet:
                print(f"  Copied {copied} messages to {output}.")

        failures = _for_each_mailbox(args, ctx, process, exclude=output)
        target.save()
    return failures


def format_size(size: int) -> str:
    """Render a byte count the way ``ls -h`` would, e.g. ``1.5K``."""

    value = float(size)
    for unit in ("B", "K", "M", "G"):
        if value < 1024 or unit == "G":
            if unit == "B":
                return f"{size}B"
            return f"{value:.1f}{unit}"
        value /= 1024
    return f"{size}B"  # pragma: no cover


def _describe(error: BaseException) -> str:
    if isinstance(error, OSError) and error.strerror:
        return error.strerror
    return str(error)


if __name__ == "__main__":  # pragma: no cover - manual execution entry point
    raise SystemExit(main())
