"""Finding and deleting duplicate messages by Message-ID."""

from __future__ import annotations

import difflib
from dataclasses import dataclass
from typing import Callable, Iterable

from mbox_doctor.context import RunContext
from mbox_doctor.message import Message
from mbox_doctor.store import Mailbox
from mbox_doctor.writers.mbox import format_message

# Headers that must agree before two messages with one Message-ID are
# treated as copies of each other.
CHECKED_HEADERS = (
    b"From",
    b"To",
    b"Cc",
    b"Bcc",
    b"Subject",
    b"Date",
    b"Resent-From",
    b"Resent-To",
    b"Resent-Cc",
    b"Resent-Bcc",
    b"Resent-Subject",
    b"Resent-Date",
    b"Resent-Message-ID",
    b"X-From",
    b"X-To",
    b"X-cc",
    b"X-Subject",
    b"X-Date",
)

Chooser = Callable[[Message, Message], str]


@dataclass(frozen=True)
class DedupReport:
    duplicates: int
    conflicts: int
    stopped: bool = False


def sort_messages(messages: Iterable[Message]) -> list[Message]:
    """Return ``messages`` ordered by Message-ID; ties keep mailbox order."""

    return sorted(messages, key=_id_key)


def _id_key(message: Message) -> bytes:
    value = message.message_id
    return b"" if value is None else value.tobytes()


def first_difference(a: Message, b: Message) -> str | None:
    """Name the first checked header (or ``"body"``) where ``a`` and ``b`` differ."""

    for key in CHECKED_HEADERS:
        left = a.headers.get(key)
        right = b.headers.get(key)
        if left is None or right is None:
            if left is not right:
                return key.decode("ascii")
        elif not left.equals(right):
            return key.decode("ascii")
    if not a.body.equals(b.body):
        return "body"
    return None


def unique_mailbox(
    mailbox: Mailbox,
    ctx: RunContext,
    *,
    choose: Chooser | None = None,
) -> DedupReport:
    """Delete later copies of messages that share a Message-ID.

    Exact copies are deleted outright. For messages that only share the id,
    ``choose`` (when given) decides: ``1``/``2`` deletes that message, ``b``
    both, ``n`` neither, ``q`` stops; an uppercase answer is remembered for
    the rest of the run.
    """

    ordered = sort_messages(message for message in mailbox if not message.deleted)
    duplicates = 0
    conflicts = 0
    stopped = False
    auto_choice = ""

    if not ordered:
        ctx.note("Found 0 duplicates")
        return DedupReport(duplicates=0, conflicts=0)

    keeper = ordered[0]
    for candidate in ordered[1:]:
        keeper_id = keeper.message_id
        candidate_id = candidate.message_id
        if (
            keeper.deleted
            or keeper_id is None
            or candidate_id is None
            or not keeper_id.equals(candidate_id)
        ):
            keeper = candidate
            continue

        difference = first_difference(keeper, candidate)
        if difference is None:
            ctx.note(
                "Messages %s and %s with Message-ID %s are the same, deleting the latter",
                keeper.tag,
                candidate.tag,
                keeper_id.tobytes().decode("latin-1"),
            )
            candidate.set_deleted(True)
            duplicates += 1
            continue

        conflicts += 1
        what = "bodies" if difference == "body" else f"{difference} lines"
        ctx.warn(
            "Messages %s and %s have the same Message-ID %s, but different %s",
            keeper.tag,
            candidate.tag,
            keeper_id.tobytes().decode("latin-1"),
            what,
        )
        if choose is None:
            keeper = candidate
            continue

        choice = auto_choice or choose(keeper, candidate) or "n"
        if choice.isupper():
            choice = choice.lower()
            auto_choice = choice
        if choice == "q":
            stopped = True
            break
        if choice == "1":
            ctx.note("Deleting the first message")
            keeper.set_deleted(True)
            duplicates += 1
        elif choice == "2":
            ctx.note("Deleting the second message")
            candidate.set_deleted(True)
            duplicates += 1
            continue
        elif choice == "b":
            ctx.note("Deleting both messages")
            keeper.set_deleted(True)
            candidate.set_deleted(True)
            duplicates += 2
        else:
            ctx.note("Deleting no messages")
        keeper = candidate

    ctx.note(
        "%s %d duplicate%s",
        "Found" if duplicates == 0 else "Deleted",
        duplicates,
        "" if duplicates == 1 else "s",
    )
    return DedupReport(duplicates=duplicates, conflicts=conflicts, stopped=stopped)


def diff_messages(a: Message, b: Message, *, context: int = 3) -> str:
    """Return a context diff between the serialized forms of ``a`` and ``b``."""

    left = format_message(a).decode("latin-1").splitlines(keepends=True)
    right = format_message(b).decode("latin-1").splitlines(keepends=True)
    return "".join(
        difflib.context_diff(left, right, fromfile=a.tag, tofile=b.tag, n=context)
    )


__all__ = [
    "CHECKED_HEADERS",
    "DedupReport",
    "diff_messages",
    "first_difference",
    "sort_messages",
    "unique_mailbox",
]
