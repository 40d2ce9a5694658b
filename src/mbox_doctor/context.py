"""Per-run settings and the warning counter shared by the mailbox tools."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from lib.cursor import Cursor

DEFAULT_LOCK_TIMEOUT = 5


@dataclass
class RunContext:
    """Options a run was started with plus the warnings it has issued.

    A fresh context is passed into every entry point so concurrent scenarios
    (and tests) never share counters or flags.
    """

    strict: bool = False
    dry_run: bool = False
    backup: bool = False
    use_mmap: bool = True
    show_context: bool = False
    lock_timeout: int = DEFAULT_LOCK_TIMEOUT
    warnings: int = 0
    logger: logging.Logger = field(
        default_factory=lambda: logging.getLogger("mbox_doctor"), repr=False
    )

    def warn(self, message: str, *args: object, cursor: Cursor | None = None) -> None:
        self.warnings += 1
        self.logger.warning(message, *args)
        if cursor is not None and self.show_context:
            self.logger.debug("  context: %s", cursor.excerpt())

    def note(self, message: str, *args: object) -> None:
        self.logger.info(message, *args)

    def debug(self, message: str, *args: object) -> None:
        self.logger.debug(message, *args)

    def reset_warnings(self) -> int:
        issued = self.warnings
        self.warnings = 0
        return issued


__all__ = ["DEFAULT_LOCK_TIMEOUT", "RunContext"]
