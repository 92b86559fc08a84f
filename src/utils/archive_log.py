"""
Archive Logging

Thin, explicitly-passed logging context. Output goes through the same
thread-safe print the rest of the tools use, so lines from parallel accounts
stay whole and carry a short thread name.

    log = ArchiveLog(verbose=True)
    mlog = log.bind(account="me@example.com", mailbox="INBOX")
    mlog.info("SAVED", uid=42, bodysize=1024)
    # [MAIN] [me@example.com] [INBOX] SAVED | uid=42 bodysize=1024
"""

from __future__ import annotations

from utils import imap_common

LEVEL_PREFIXES = {
    "info": "",
    "debug": "DEBUG ",
    "warning": "WARNING ",
    "error": "ERROR ",
}


def format_fields(fields: dict) -> str:
    parts = []
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, str) and (" " in value or not value):
            parts.append(f"{key}={value!r}")
        else:
            parts.append(f"{key}={value}")
    return " ".join(parts)


class ArchiveLog:
    """Logger bound to an optional account/mailbox context."""

    def __init__(self, verbose=False, log_fn=None, context=None):
        self.verbose = verbose
        self.log_fn = log_fn or imap_common.safe_print
        self.context = dict(context or {})

    def bind(self, **context) -> ArchiveLog:
        """Return a child logger with extra context fields."""
        merged = dict(self.context)
        merged.update({k: v for k, v in context.items() if v is not None})
        return ArchiveLog(verbose=self.verbose, log_fn=self.log_fn, context=merged)

    def _emit(self, level: str, event: str, fields: dict) -> None:
        prefix = "".join(f"[{value}] " for value in self.context.values())
        line = f"{prefix}{LEVEL_PREFIXES[level]}{event}"
        rendered = format_fields(fields)
        if rendered:
            line = f"{line} | {rendered}"
        self.log_fn(line)

    def info(self, event: str, **fields) -> None:
        self._emit("info", event, fields)

    def warning(self, event: str, **fields) -> None:
        self._emit("warning", event, fields)

    def error(self, event: str, **fields) -> None:
        self._emit("error", event, fields)

    def debug(self, event: str, **fields) -> None:
        if self.verbose:
            self._emit("debug", event, fields)
