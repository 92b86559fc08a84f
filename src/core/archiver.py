"""
IMAP Archiver

Drives one archive run per account:

    CONNECTING -> AUTHENTICATED
        -> [per mailbox: SELECTING -> INVENTORYING -> PLANNING -> FETCHING -> WRITING]*
        -> CLOSING -> DONE

Any error aborts the rest of the account (FAILED), is logged with its full
context and is re-raised. Entries written before a failure stay valid; the
next run skips them as already archived, which is what makes a run safe to
interrupt and repeat.
"""

from __future__ import annotations

import concurrent.futures
import threading
from dataclasses import dataclass, field
from enum import Enum

from core import imap_session, mailbox_enumerator, message_fetcher, sync_planner
from storage import archive_store
from utils.archive_errors import ArchiveError


class SyncState(Enum):
    """Where an account's archive run currently is."""

    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    SELECTING = "selecting"
    INVENTORYING = "inventorying"
    PLANNING = "planning"
    FETCHING = "fetching"
    WRITING = "writing"
    CLOSING = "closing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class MailboxResult:
    name: str
    remote: int = 0
    skipped: int = 0
    archived: int = 0
    bytes_written: int = 0


@dataclass
class AccountResult:
    username: str
    mailboxes: list[MailboxResult] = field(default_factory=list)
    error: Exception | None = None
    stopped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def archived(self) -> int:
        return sum(m.archived for m in self.mailboxes)


class AccountArchiver:
    """Archives every selected mailbox of one account over one session."""

    def __init__(self, account, root, log, stop_event=None, open_session=None):
        self.account = account
        self.root = root
        self.log = log.bind(account=account.username)
        self.stop_event = stop_event
        self._open_session = open_session or imap_session.open_session
        self.conn = None
        self.state = None
        self.result = AccountResult(username=account.username)

    def _enter(self, state: SyncState, log=None) -> None:
        self.state = state
        (log or self.log).debug("STATE", state=state.value)

    def _stop_requested(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    def run(self) -> AccountResult:
        self.log.info("ARCHIVE START")
        try:
            self._enter(SyncState.CONNECTING)
            self.conn = self._open_session(self.account, self.log)
            self._enter(SyncState.AUTHENTICATED)

            mailboxes = mailbox_enumerator.list_mailboxes(self.conn)
            selected = mailbox_enumerator.select_mailboxes(self.account, mailboxes, self.log)

            for mailbox in selected:
                if self._stop_requested():
                    self.log.warning("STOP REQUESTED, SKIPPING REMAINING MAILBOXES")
                    self.result.stopped = True
                    break
                self.result.mailboxes.append(self.archive_mailbox(mailbox))

            self._enter(SyncState.CLOSING)
            conn, self.conn = self.conn, None
            imap_session.close_session(conn, self.log, strict=True)
            self._enter(SyncState.DONE)
        except BaseException as e:
            # KeyboardInterrupt included: the session is still logged out.
            self._fail(e)
            raise

        self.log.info(
            "ARCHIVE SUCCESS",
            mailboxes=len(self.result.mailboxes),
            archived=self.result.archived,
        )
        return self.result

    def _fail(self, error: Exception) -> None:
        failed_in = self.state.value if self.state else None
        self.state = SyncState.FAILED
        self.result.error = error
        self.log.error("ARCHIVE FAILED", state=failed_in, error=str(error))
        if self.conn is not None:
            conn, self.conn = self.conn, None
            imap_session.close_session(conn, self.log)

    def archive_mailbox(self, mailbox) -> MailboxResult:
        """Brings one mailbox's local directory up to date with the server."""
        mlog = self.log.bind(mailbox=mailbox.display_name)
        result = MailboxResult(name=mailbox.name)
        uid = None
        try:
            self._enter(SyncState.SELECTING, mlog)
            count = imap_session.select_mailbox(self.conn, mailbox.name)
            mlog.info("SELECTED", messages=count)

            self._enter(SyncState.INVENTORYING, mlog)
            folder_path = archive_store.mailbox_path(
                self.root, self.account.username, mailbox.display_name, mailbox.delimiter
            )
            archive_store.ensure_directory(folder_path)
            local_uids = archive_store.list_archived_uids(folder_path)

            self._enter(SyncState.PLANNING, mlog)
            remote_uids = sync_planner.parse_search_response(imap_session.search_all_uids(self.conn))
            plan = sync_planner.build_plan(remote_uids, local_uids)
            result.remote = len(plan.remote)
            result.skipped = plan.skipped
            mlog.info("PLANNED", remote=len(plan.remote), local=plan.local_count, pending=len(plan.pending))

            if plan.up_to_date:
                mlog.info("UP TO DATE")
                return result

            records = message_fetcher.iter_records(self.conn, plan, self.account, mlog)
            while True:
                self._enter(SyncState.FETCHING, mlog)
                record = next(records, None)
                if record is None:
                    break
                uid = record.uid

                self._enter(SyncState.WRITING, mlog)
                path = archive_store.write_message(folder_path, record, self.account.naming)
                result.archived += 1
                result.bytes_written += len(record.body)
                mlog.info(
                    "SAVED",
                    uid=record.uid,
                    subject=record.subject,
                    rfc822size=record.size,
                    bodysize=len(record.body),
                    file=path,
                )
                uid = None
        except ArchiveError as e:
            e.with_context(account=self.account.username, mailbox=mailbox.name, uid=uid)
            mlog.error("MAILBOX FAILED", archived=result.archived, error=str(e))
            raise

        mlog.info("MAILBOX DONE", archived=result.archived, skipped=result.skipped, bytes=result.bytes_written)
        return result


def archive_account(account, root, log, stop_event=None) -> AccountResult:
    return AccountArchiver(account, root, log, stop_event=stop_event).run()


def _run_isolated(account, root, log, stop_event):
    try:
        return archive_account(account, root, log, stop_event)
    except Exception as e:
        # Already logged with context by AccountArchiver; keep it in the result.
        return AccountResult(username=account.username, error=e)


def archive_all(config, log, continue_on_error=False, workers=1, stop_event=None) -> list[AccountResult]:
    """
    Archives every configured account.

    Default is fail-fast: the first failed account stops the run and its
    error propagates. With continue_on_error=True every account is attempted
    and failures are returned in the results. workers > 1 archives accounts
    in parallel, each with its own session and directory subtree.
    """
    stop_event = stop_event or threading.Event()
    results: list[AccountResult] = []

    if workers <= 1:
        for account in config.accounts:
            if stop_event.is_set():
                log.warning("STOP REQUESTED, SKIPPING REMAINING ACCOUNTS")
                break
            result = _run_isolated(account, config.dir, log, stop_event)
            results.append(result)
            if not result.ok and not continue_on_error:
                raise result.error
        return results

    executor = concurrent.futures.ThreadPoolExecutor(max_workers=workers)
    try:
        futures = {
            executor.submit(_run_isolated, account, config.dir, log, stop_event): account
            for account in config.accounts
        }
        for future in concurrent.futures.as_completed(futures):
            result = future.result()
            results.append(result)
            if not result.ok and not continue_on_error:
                stop_event.set()
                executor.shutdown(wait=True, cancel_futures=True)
                raise result.error
    except KeyboardInterrupt:
        stop_event.set()
        executor.shutdown(wait=False, cancel_futures=True)
        raise
    finally:
        executor.shutdown(wait=True)

    order = {account.username: i for i, account in enumerate(config.accounts)}
    results.sort(key=lambda r: order[r.username])
    return results
