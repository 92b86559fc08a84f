"""
Sync Planner

Computes which messages of a mailbox still need archiving: every UID the
server reports (UID SEARCH ALL, no date or flag filtering) that has no entry
on disk. UIDs are never reassigned while a mailbox exists and messages are
immutable, so a UID present on both sides is done for good.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from utils import imap_common
from utils.archive_errors import ProtocolError


@dataclass
class SyncPlan:
    remote: list[int] = field(default_factory=list)
    local_count: int = 0
    pending: list[int] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return len(self.remote) - len(self.pending)

    @property
    def up_to_date(self) -> bool:
        return not self.pending


def parse_search_response(data) -> list[int]:
    """Parses UID SEARCH response data into a sorted, duplicate-free list of UIDs."""
    uids = set()
    for chunk in data or []:
        if chunk is None:
            continue
        for token in imap_common.response_text(chunk).split():
            if not (token.isascii() and token.isdigit()) or int(token) == 0:
                raise ProtocolError("Invalid UID in SEARCH response", token=token)
            uids.add(int(token))
    return sorted(uids)


def plan_sync(remote_uids, local_uids) -> list[int]:
    """Remote minus local, ascending and without duplicates."""
    local = set(local_uids)
    return sorted(set(remote_uids) - local)


def build_plan(remote_uids, local_uids) -> SyncPlan:
    remote = sorted(set(remote_uids))
    return SyncPlan(remote=remote, local_count=len(set(local_uids)), pending=plan_sync(remote, local_uids))
