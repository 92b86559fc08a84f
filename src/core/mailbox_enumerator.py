"""
Mailbox Enumerator

Lists an account's remote mailboxes and decides, before anything is synced,
which of them to archive.

Filter policy (exact, case-sensitive names):
  1. a mailbox in the exclude list is skipped;
  2. otherwise, if an include list is configured and the mailbox is not in
     it, it is skipped;
  3. otherwise it is kept. No include list means "everything not excluded".
"""

from __future__ import annotations

import imaplib
import re
from dataclasses import dataclass

from utils import imap_common
from utils.archive_errors import ProtocolError

SKIP_EXCLUDED = "excluded"
SKIP_NOT_INCLUDED = "not included"
SKIP_NOT_SELECTABLE = "not selectable"

NON_SELECTABLE_FLAGS = {"\\noselect", "\\nonexistent"}

# (flags) "delimiter" name   |   (flags) NIL name
_LIST_PATTERN = re.compile(r'^\((?P<flags>[^)]*)\)\s+(?P<delimiter>"(?:[^"\\]|\\.)*"|NIL)\s*(?P<name>.*)$', re.I)


@dataclass(frozen=True)
class Mailbox:
    """A remote mailbox as reported by LIST."""

    name: str
    delimiter: str | None = "/"
    flags: tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        """Name with modified UTF-7 decoded."""
        return imap_common.decode_modified_utf7(self.name)

    @property
    def selectable(self) -> bool:
        return not any(f.lower() in NON_SELECTABLE_FLAGS for f in self.flags)


def _unquote(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


def parse_list_response(item) -> Mailbox:
    """
    Parses one LIST response entry from imaplib.

    Entries are bytes like b'(\\HasNoChildren) "/" "INBOX"', or a tuple
    (b'(\\HasNoChildren) "/" {8}', b'Entwürfe') when the server sent the
    name as a literal.
    """
    literal_name = None
    if isinstance(item, tuple):
        head, literal = item[0], item[1]
        literal_name = imap_common.response_text(literal)
        line = imap_common.response_text(head)
    else:
        line = imap_common.response_text(item)

    match = _LIST_PATTERN.match(line.strip())
    if not match:
        raise ProtocolError("Unparseable LIST response", response=line)

    flags = tuple(match.group("flags").split())
    delimiter_raw = match.group("delimiter")
    delimiter = None if delimiter_raw.upper() == "NIL" else _unquote(delimiter_raw)

    if literal_name is not None:
        name = literal_name
    else:
        name = _unquote(match.group("name").strip())
    if not name:
        raise ProtocolError("LIST response without mailbox name", response=line)
    return Mailbox(name=name, delimiter=delimiter, flags=flags)


def list_mailboxes(conn) -> list[Mailbox]:
    """Lists every mailbox of the authenticated session (LIST "" "*")."""
    try:
        typ, data = conn.list()
    except (imaplib.IMAP4.error, OSError) as e:
        raise ProtocolError(f"LIST failed: {e}") from e
    if typ != "OK":
        raise ProtocolError("LIST failed", response=imap_common.response_text(data[0]) if data else None)

    mailboxes = []
    for item in data or []:
        # imaplib appends the remainder after a literal name as its own (empty) entry.
        if item is None or item == b"":
            continue
        mailboxes.append(parse_list_response(item))
    return mailboxes


def _matches(names, mailbox_name: str, display_name: str) -> bool:
    return mailbox_name in names or display_name in names


def should_skip(account, mailbox_name: str, display_name: str | None = None) -> str | None:
    """Returns why a mailbox is filtered out, or None to keep it."""
    display_name = display_name or mailbox_name
    if _matches(account.exclude, mailbox_name, display_name):
        return SKIP_EXCLUDED
    if account.include and not _matches(account.include, mailbox_name, display_name):
        return SKIP_NOT_INCLUDED
    return None


def select_mailboxes(account, mailboxes, log) -> list[Mailbox]:
    """
    Applies the filter to every listed mailbox and logs each decision.
    Returns the mailboxes to archive, in listing order.
    """
    kept = []
    for mailbox in mailboxes:
        reason = should_skip(account, mailbox.name, mailbox.display_name)
        if reason is None and not mailbox.selectable:
            reason = SKIP_NOT_SELECTABLE
        if reason is not None:
            log.info("SKIP MAILBOX", mailbox=mailbox.display_name, reason=reason)
            continue
        log.info("KEEP MAILBOX", mailbox=mailbox.display_name)
        kept.append(mailbox)
    log.info("MAILBOXES SELECTED", listed=len(mailboxes), kept=len(kept))
    return kept
