"""
IMAP Session Management

Opens, drives and closes the one protocol session an account's archive run
owns. Everything here is a thin call into imaplib; failures are translated
into the archiver's error taxonomy with the account context attached.
"""

from __future__ import annotations

import imaplib

from auth import imap_oauth2
from utils import imap_common
from utils.archive_errors import AuthenticationError, ConnectionFailedError, ProtocolError
from utils.imap_retry import ConnectionProxy

# imaplib prints protocol traffic to stderr at this level.
DEBUG_LEVEL = 4


def quote_mailbox(name: str) -> str:
    """Quotes a mailbox name as an IMAP quoted string."""
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def dial(account, log):
    """Connects to the account's endpoint (TLS unless the endpoint says imap://)."""
    host, port, use_ssl = account.endpoint
    try:
        if use_ssl:
            conn = imaplib.IMAP4_SSL(host, port)
        else:
            conn = imaplib.IMAP4(host, port)
    except (OSError, imaplib.IMAP4.error) as e:
        raise ConnectionFailedError(f"Cannot connect: {e}", host=host, port=port, tls=use_ssl) from e

    if account.debug:
        conn.debug = DEBUG_LEVEL
    log.info("CONNECTED", host=host, port=port, tls=use_ssl)
    log.debug("CAPABILITY", capabilities=" ".join(conn.capabilities))
    return conn


def authenticate(conn, account, log) -> None:
    """Logs in with the account password, or XOAUTH2 when oauth2 is configured."""
    try:
        if account.oauth2 is not None:
            host = account.endpoint[0]
            token = imap_oauth2.acquire_token(
                host, account.oauth2.client_id, account.username, account.oauth2.client_secret, log
            )
            auth_string = imap_oauth2.build_xoauth2_string(account.username, token)
            conn.authenticate("XOAUTH2", lambda _: auth_string.encode())
        else:
            conn.login(account.username, account.password)
    except imaplib.IMAP4.error as e:
        _shutdown(conn)
        raise AuthenticationError(f"Login failed: {e}", username=account.username) from e
    except OSError as e:
        _shutdown(conn)
        raise ConnectionFailedError(f"Connection lost during login: {e}", username=account.username) from e
    except AuthenticationError:
        _shutdown(conn)
        raise
    log.info("LOGIN OK", auth=imap_oauth2.auth_description(account))


def open_session(account, log):
    """
    Dials and authenticates, returning a connection wrapped in a
    ConnectionProxy so transient "server busy" answers are retried.
    """
    conn = dial(account, log)
    authenticate(conn, account, log)
    return ConnectionProxy(conn, max_retries=account.retries, log=log)


def select_mailbox(conn, name: str) -> int:
    """Selects a mailbox read-only (EXAMINE) and returns its message count."""
    try:
        typ, data = conn.select(quote_mailbox(name), readonly=True)
    except (imaplib.IMAP4.error, OSError) as e:
        raise ProtocolError(f"SELECT failed: {e}", mailbox=name) from e
    if typ != "OK":
        raise ProtocolError("SELECT failed", mailbox=name, response=_first(data))
    try:
        return int(data[0])
    except (TypeError, ValueError, IndexError) as e:
        raise ProtocolError("SELECT returned no message count", mailbox=name, response=_first(data)) from e


def search_all_uids(conn) -> list:
    """Returns the raw UID SEARCH ALL response data of the selected mailbox."""
    try:
        typ, data = conn.uid("SEARCH", None, "ALL")
    except (imaplib.IMAP4.error, OSError) as e:
        raise ProtocolError(f"UID SEARCH failed: {e}") from e
    if typ != "OK":
        raise ProtocolError("UID SEARCH failed", response=_first(data))
    return data


def close_session(conn, log, strict=False) -> None:
    """
    Logs out. With strict=True a failed LOGOUT is an error; otherwise it is
    only reported (used while already unwinding from another error).
    """
    try:
        conn.logout()
    except (imaplib.IMAP4.error, OSError) as e:
        if strict:
            raise ProtocolError(f"LOGOUT failed: {e}") from e
        log.warning("LOGOUT FAILED", error=str(e))
        return
    log.debug("LOGOUT OK")


def _shutdown(conn) -> None:
    try:
        conn.shutdown()
    except OSError:
        pass


def _first(data):
    if data and data[0] is not None:
        return imap_common.response_text(data[0])
    return None
