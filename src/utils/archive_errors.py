"""
Archive Error Taxonomy

Every failure the archiver can hit is one of these. Each error carries the
context it happened in (account, mailbox, uid, sizes) so the top-level driver
can report it without re-deriving anything.
"""

from __future__ import annotations


class ArchiveError(Exception):
    """Base class for archiver failures.

    Keyword arguments become the error context and are rendered after the
    message as ``key=value`` pairs. ``None`` values are dropped.
    """

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def with_context(self, **context) -> ArchiveError:
        """Add context fields that were not known where the error was raised."""
        for key, value in context.items():
            if value is not None:
                self.context.setdefault(key, value)
        return self

    def __str__(self) -> str:
        if not self.context:
            return self.message
        fields = " ".join(f"{k}={v!r}" if isinstance(v, str) else f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({fields})"


class ConfigError(ArchiveError):
    """Configuration file missing, unreadable, or invalid."""


class ConnectionFailedError(ArchiveError):
    """Dial or TLS handshake failed. Fatal to the account."""


class AuthenticationError(ConnectionFailedError):
    """Login or OAuth2 token acquisition failed. Fatal to the account."""


class ProtocolError(ArchiveError):
    """LIST/SELECT/SEARCH/FETCH returned a non-OK status or an unparseable response."""


class UidMismatchError(ArchiveError):
    """A fetched message reports a UID other than the one requested."""


class SubjectDecodeError(ArchiveError):
    """A Subject header could not be decoded with its declared charset."""


class MessageShapeError(ArchiveError):
    """A fetch response did not resolve to exactly one body section."""


class StorageError(ArchiveError):
    """Local directory creation, listing, or file write failed."""
