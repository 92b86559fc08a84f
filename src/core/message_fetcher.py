"""
Message Fetcher

Retrieves the messages a SyncPlan asks for from the currently selected
mailbox. Two strategies:

  uid    One UID FETCH per planned UID. The UID the server reports must
         equal the one requested before the message is accepted.

  batch  Planned UIDs are mapped to their sequence positions and fetched as
         contiguous runs of at most `batch_size` positions, one FETCH a:b
         per run. Items are correlated by position, then a verification
         pass checks every item's reported UID against the UID expected at
         that position, so a concurrent expunge that shifts positions is a
         hard error and never a misnamed file.

Both fetch (UID RFC822.SIZE BODY.PEEK[]) so the \\Seen flag is left alone,
and the payload is the unmodified message.
"""

from __future__ import annotations

import imaplib
import re
from dataclasses import dataclass, field
from email import policy
from email.parser import BytesParser

from utils import imap_common
from utils.archive_config import FETCH_STRATEGY_BATCH, SUBJECT_ERRORS_PLACEHOLDER
from utils.archive_errors import MessageShapeError, ProtocolError, SubjectDecodeError, UidMismatchError

FETCH_ITEMS = "(UID RFC822.SIZE BODY.PEEK[])"

_SEQ_START = re.compile(r"^\s*(\d+)\s+\(")
_UID = re.compile(r"\bUID\s+(\d+)", re.I)
_SIZE = re.compile(r"\bRFC822\.SIZE\s+(\d+)", re.I)
_BODY_LITERAL = re.compile(r"(BODY\[[^\]]*\](?:<\d+>)?|RFC822)\s+\{\d+\}\s*$", re.I)


@dataclass(frozen=True)
class MessageRecord:
    """One fetched message, ready to be written once."""

    uid: int
    body: bytes
    subject: str | None = None
    size: int | None = None


@dataclass
class FetchItem:
    """One FETCH response (one message) as split out of imaplib's data list."""

    seq: int
    meta: str = ""
    sections: list = field(default_factory=list)

    @property
    def uid(self) -> int | None:
        match = _UID.search(self.meta)
        return int(match.group(1)) if match else None

    @property
    def size(self) -> int | None:
        match = _SIZE.search(self.meta)
        return int(match.group(1)) if match else None


def parse_fetch_response(data) -> list[FetchItem]:
    """
    Groups imaplib FETCH data into per-message items.

    imaplib returns a flat list: a tuple (head, literal) for every literal
    and plain bytes for everything else, e.g.

        [(b'1 (UID 5 RFC822.SIZE 42 BODY[] {42}', b'<42 bytes>'), b')']

    A part whose text starts with "<seq> (" opens a new message; anything
    else continues the current one.
    """
    items: list[FetchItem] = []
    current = None
    for part in data or []:
        if part is None:
            continue
        head = part[0] if isinstance(part, tuple) else part
        text = imap_common.response_text(head)
        match = _SEQ_START.match(text)
        if match:
            current = FetchItem(seq=int(match.group(1)))
            items.append(current)
        elif current is None:
            raise ProtocolError("Unexpected FETCH response", response=text[:200])

        current.meta += " " + text
        if isinstance(part, tuple) and _BODY_LITERAL.search(text):
            literal = part[1]
            if isinstance(literal, str):
                literal = literal.encode("utf-8")
            current.sections.append(literal)
    return items


def extract_subject(body: bytes, uid: int, subject_errors: str, log) -> str | None:
    """
    Decodes the Subject header of a fetched message.

    Under the "placeholder" policy an undecodable subject is logged and
    dropped (the message is archived as <uid>.eml); otherwise the
    SubjectDecodeError propagates and aborts the mailbox.
    """
    headers = BytesParser(policy=policy.compat32).parsebytes(body, headersonly=True)
    raw_subject = headers.get("Subject")
    try:
        return imap_common.decode_subject(raw_subject)
    except SubjectDecodeError as e:
        e.with_context(uid=uid)
        if subject_errors == SUBJECT_ERRORS_PLACEHOLDER:
            log.warning("SUBJECT UNDECODABLE, USING UID ONLY", uid=uid, error=str(e))
            return None
        raise


def _single_section(item: FetchItem, uid: int) -> bytes:
    if len(item.sections) != 1:
        raise MessageShapeError("Expected exactly one body section", uid=uid, bodysections=len(item.sections))
    return item.sections[0]


def _to_record(item: FetchItem, uid: int, subject_errors: str, log) -> MessageRecord:
    body = _single_section(item, uid)
    subject = extract_subject(body, uid, subject_errors, log)
    size = item.size
    if size is not None and size != len(body):
        log.warning("SIZE DIFFERS", uid=uid, rfc822size=size, bodysize=len(body))
    log.debug("FETCHED", uid=uid, subject=subject, rfc822size=size, bodysize=len(body))
    return MessageRecord(uid=uid, body=body, subject=subject, size=size)


def fetch_by_uid(conn, uid: int, subject_errors: str, log) -> MessageRecord:
    """Fetches a single message by UID and verifies the server-reported UID."""
    try:
        typ, data = conn.uid("FETCH", str(uid), FETCH_ITEMS)
    except (imaplib.IMAP4.error, OSError) as e:
        raise ProtocolError(f"UID FETCH failed: {e}", uid=uid) from e
    if typ != "OK":
        raise ProtocolError("UID FETCH failed", uid=uid, response=imap_common.response_text(data[0]) if data else None)

    # Unsolicited FETCH responses (flag updates) carry no body and are ignored.
    with_body = [item for item in parse_fetch_response(data) if item.sections]
    if not with_body:
        raise MessageShapeError("No body section returned", uid=uid, bodysections=0)
    if len(with_body) > 1:
        raise MessageShapeError(
            "More than one message returned", uid=uid, bodysections=sum(len(i.sections) for i in with_body)
        )

    item = with_body[0]
    if item.uid != uid:
        raise UidMismatchError("Server returned a different UID", uid=uid, returned_uid=item.uid, seq=item.seq)
    return _to_record(item, uid, subject_errors, log)


def position_runs(remote_uids, planned, batch_size: int) -> list[list[tuple[int, int]]]:
    """
    Groups planned UIDs into runs of contiguous sequence positions.

    Returns a list of runs, each a list of (position, uid) pairs with
    consecutive positions and at most batch_size entries. remote_uids must be
    the full ascending UID list of the mailbox: position n holds
    remote_uids[n - 1].
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    positions = {uid: index + 1 for index, uid in enumerate(remote_uids)}

    runs: list[list[tuple[int, int]]] = []
    current: list[tuple[int, int]] = []
    for uid in sorted(set(planned)):
        if uid not in positions:
            raise ValueError(f"UID {uid} is not in the remote UID list")
        pos = positions[uid]
        if current and (pos != current[-1][0] + 1 or len(current) >= batch_size):
            runs.append(current)
            current = []
        current.append((pos, uid))
    if current:
        runs.append(current)
    return runs


def fetch_by_position(conn, remote_uids, planned, batch_size: int, subject_errors: str, log):
    """Yields MessageRecords for planned UIDs, fetched in positional batches."""
    for run in position_runs(remote_uids, planned, batch_size):
        first, last = run[0][0], run[-1][0]
        seq_range = f"{first}:{last}" if last != first else str(first)
        try:
            typ, data = conn.fetch(seq_range, FETCH_ITEMS)
        except (imaplib.IMAP4.error, OSError) as e:
            raise ProtocolError(f"FETCH failed: {e}", seq=seq_range) from e
        if typ != "OK":
            raise ProtocolError("FETCH failed", seq=seq_range)

        by_seq: dict[int, FetchItem] = {}
        for item in parse_fetch_response(data):
            if item.sections:
                if item.seq in by_seq:
                    raise MessageShapeError("Position returned twice", seq=item.seq)
                by_seq[item.seq] = item

        log.debug("BATCH FETCHED", seq=seq_range, returned=len(by_seq))

        for pos, expected_uid in run:
            item = by_seq.get(pos)
            if item is None:
                raise MessageShapeError("No body section returned for position", uid=expected_uid, seq=pos)
            if item.uid != expected_uid:
                raise UidMismatchError(
                    "Position does not hold the expected UID", uid=expected_uid, returned_uid=item.uid, seq=pos
                )
            yield _to_record(item, expected_uid, subject_errors, log)


def iter_records(conn, plan, account, log):
    """Yields a MessageRecord for every pending UID of the plan, in UID order."""
    if account.fetch_strategy == FETCH_STRATEGY_BATCH:
        yield from fetch_by_position(conn, plan.remote, plan.pending, account.batch_size, account.subject_errors, log)
        return
    for uid in plan.pending:
        yield fetch_by_uid(conn, uid, account.subject_errors, log)
