"""Terminal output for human mode.

Status lines go to stderr and are silenced by ``--quiet``; errors are always
written.  Color is only used on a TTY and never when ``NO_COLOR`` or ``CI``
is set.
"""

from __future__ import annotations

import sys
from typing import TextIO

_COLORS = {
    "info": "\033[36m",
    "ok": "\033[32m",
    "warn": "\033[33m",
    "error": "\033[31m",
}
_RESET = "\033[0m"


class Console:
    def __init__(
        self,
        *,
        quiet: bool = False,
        color: bool | None = None,
        stream: TextIO | None = None,
    ) -> None:
        self.quiet = quiet
        self.stream = stream if stream is not None else sys.stderr
        if color is None:
            color = bool(getattr(self.stream, "isatty", lambda: False)())
        self.color = color

    def _emit(self, level: str, message: str) -> None:
        marker = f"[{level}]"
        if self.color:
            marker = f"{_COLORS[level]}{marker}{_RESET}"
        print(f"{marker} {message}", file=self.stream)

    def info(self, message: str) -> None:
        if not self.quiet:
            self._emit("info", message)

    def ok(self, message: str) -> None:
        if not self.quiet:
            self._emit("ok", message)

    def warn(self, message: str) -> None:
        if not self.quiet:
            self._emit("warn", message)

    def error(self, message: str, *, hint: str | None = None) -> None:
        self._emit("error", message)
        if hint:
            print(f"  hint: {hint}", file=self.stream)
