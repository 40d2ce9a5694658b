"""Advisory ``<mailbox>.lock`` files with stale-holder reclamation.

The lock file holds the decimal pid of its owner. A process that finds a
lock whose owner no longer exists removes it and tries again instead of
waiting out the timeout.
"""

from __future__ import annotations

import atexit
import errno
import logging
import os
import signal
import time
from pathlib import Path

from mbox_doctor.context import DEFAULT_LOCK_TIMEOUT

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
POLL_INTERVAL = 1.0

_held: list[Path] = []
_handlers_installed = False


class MailboxLockError(OSError):
    """Raised when a mailbox lock cannot be obtained in time."""


def lock_path(mailbox: Path) -> Path:
    return mailbox.with_name(mailbox.name + LOCK_SUFFIX)


def lock(mailbox: Path, timeout: float = DEFAULT_LOCK_TIMEOUT) -> Path:
    """Create the lock file for ``mailbox`` and record it as held.

    Polls once a second while another live process holds the lock and gives
    up with :class:`MailboxLockError` after ``timeout`` seconds.
    """

    path = lock_path(mailbox)
    started = time.monotonic()
    while True:
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o444)
        except FileExistsError:
            holder = _read_pid(path)
            if holder is not None and holder != os.getpid() and not _process_exists(holder):
                logger.warning("Removing stale lock %s held by dead process %d", path, holder)
                _remove(path)
                continue
            if time.monotonic() - started >= timeout:
                raise MailboxLockError(
                    errno.EAGAIN,
                    f"Could not lock mailbox; held by process {holder}"
                    if holder is not None
                    else "Could not lock mailbox",
                    str(mailbox),
                ) from None
            logger.debug("Waiting for lock %s held by %s", path, holder)
            time.sleep(POLL_INTERVAL)
            continue

        with os.fdopen(fd, "w", encoding="ascii") as handle:
            handle.write(f"{os.getpid()}\n")
        _held.append(path)
        logger.debug("Locked %s", mailbox)
        return path


def unlock(mailbox: Path) -> bool:
    """Remove the lock for ``mailbox`` if this process still owns it.

    Returns ``False`` (after logging) when the lock has been taken over or
    removed by someone else in the meantime.
    """

    path = lock_path(mailbox)
    if path in _held:
        _held.remove(path)

    holder = _read_pid(path)
    if holder != os.getpid():
        logger.warning(
            "Lock %s is held by process %s, not %d; leaving it alone",
            path,
            holder,
            os.getpid(),
        )
        return False
    _remove(path)
    logger.debug("Unlocked %s", mailbox)
    return True


def unlock_all() -> None:
    """Release every lock taken by this process."""

    for path in list(_held):
        unlock(path.with_name(path.name[: -len(LOCK_SUFFIX)]))


def held_locks() -> list[Path]:
    return list(_held)


def install_signal_handlers() -> None:
    """Release held locks when the process exits or is told to stop."""

    global _handlers_installed
    if _handlers_installed:
        return
    atexit.register(unlock_all)
    for name in ("SIGHUP", "SIGINT", "SIGQUIT", "SIGTERM"):
        signum = getattr(signal, name, None)
        if signum is not None:
            signal.signal(signum, _on_signal)
    _handlers_installed = True


def _on_signal(signum: int, frame: object) -> None:
    unlock_all()
    signal.signal(signum, signal.SIG_DFL)
    os.kill(os.getpid(), signum)


def _read_pid(path: Path) -> int | None:
    try:
        text = path.read_text(encoding="ascii", errors="replace").strip()
    except FileNotFoundError:
        return None
    try:
        return int(text)
    except ValueError:
        return None


def _process_exists(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _remove(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


__all__ = [
    "LOCK_SUFFIX",
    "MailboxLockError",
    "held_locks",
    "install_signal_handlers",
    "lock",
    "lock_path",
    "unlock",
    "unlock_all",
]
