"""
IMAP Common Utilities

Shared helpers for the archiver: thread-safe printing, endpoint parsing,
Subject decoding and filename sanitization.
"""

from __future__ import annotations

import base64
import binascii
import re
import threading
import urllib.parse
from email.errors import HeaderParseError
from email.header import decode_header

from utils.archive_errors import ConfigError, SubjectDecodeError

IMAPS_PORT = 993
IMAP_PORT = 143

_print_lock = threading.Lock()


def safe_print(message: str) -> None:
    """Thread-safe print with short thread names for logs."""
    t_name = threading.current_thread().name
    short_name = t_name.replace("ThreadPoolExecutor-", "T-").replace("MainThread", "MAIN")
    with _print_lock:
        print(f"[{short_name}] {message}")


def parse_endpoint(endpoint: str) -> tuple[str, int, bool]:
    """
    Parses an IMAP endpoint into (host, port, use_ssl).

    Accepted forms:
        imap.example.com            -> TLS on 993
        imap.example.com:1993       -> TLS on 1993
        imaps://imap.example.com    -> TLS on 993
        imap://localhost:1143       -> plain TCP on 1143
    """
    if not endpoint or not endpoint.strip():
        raise ConfigError("IMAP endpoint is empty")

    endpoint = endpoint.strip()
    use_ssl = True
    if "://" in endpoint:
        parsed = urllib.parse.urlsplit(endpoint)
        scheme = parsed.scheme.lower()
        if scheme in {"imap", "tcp"}:
            use_ssl = False
        elif scheme not in {"imaps", "imap+ssl", "imapssl", "ssl"}:
            raise ConfigError("Unsupported IMAP scheme", endpoint=endpoint, scheme=scheme)
    else:
        parsed = urllib.parse.urlsplit(f"//{endpoint}")

    try:
        port = parsed.port
    except ValueError as e:
        raise ConfigError("Invalid IMAP port", endpoint=endpoint) from e
    if not parsed.hostname:
        raise ConfigError("Invalid IMAP host", endpoint=endpoint)

    if port is None:
        port = IMAPS_PORT if use_ssl else IMAP_PORT
    return parsed.hostname, port, use_ssl


def response_text(value) -> str:
    """Decode an imaplib response fragment for messages and parsing."""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def decode_modified_utf7(name: str) -> str:
    """
    Decodes an RFC 3501 modified UTF-7 mailbox name ("Entw&APw-rfe" -> "Entwürfe").
    Names that are not valid modified UTF-7 are returned unchanged.
    """
    if "&" not in name:
        return name

    out = []
    i = 0
    while i < len(name):
        ch = name[i]
        if ch != "&":
            out.append(ch)
            i += 1
            continue
        end = name.find("-", i)
        if end == -1:
            return name
        chunk = name[i + 1 : end]
        if not chunk:
            out.append("&")
        else:
            b64 = chunk.replace(",", "/")
            b64 += "=" * (-len(b64) % 4)
            try:
                out.append(base64.b64decode(b64, validate=True).decode("utf-16-be"))
            except (binascii.Error, UnicodeDecodeError):
                return name
        i = end + 1
    return "".join(out)


def unfold_header(value: str) -> str:
    """Unfold header continuation lines (CRLF/LF + whitespace)."""
    return re.sub(r"\r?\n[ \t]+", " ", value).strip()


def decode_subject(header_value) -> str | None:
    """
    Decodes an RFC 2047 Subject header to a unicode string.

    Plain (unencoded) subjects are passed through. Encoded words are decoded
    strictly with their declared charset; raw 8-bit header bytes must be
    valid UTF-8. Returns None when there is no subject.

    Raises SubjectDecodeError when the declared charset is unknown or the
    bytes do not decode.
    """
    if header_value is None:
        return None

    try:
        decoded_list = decode_header(header_value)
    except HeaderParseError as e:
        raise SubjectDecodeError("Malformed encoded word in Subject", subject=str(header_value)) from e

    text_parts = []
    for data, encoding in decoded_list:
        if isinstance(data, str):
            text_parts.append(data)
            continue
        if encoding is None:
            # Unencoded runs between encoded words.
            text_parts.append(data.decode("raw-unicode-escape"))
            continue
        charset = "utf-8" if encoding.lower() == "unknown-8bit" else encoding
        try:
            text_parts.append(data.decode(charset))
        except LookupError as e:
            raise SubjectDecodeError("Unknown Subject charset", charset=encoding) from e
        except UnicodeDecodeError as e:
            raise SubjectDecodeError("Subject does not decode with its charset", charset=encoding) from e

    subject = unfold_header("".join(text_parts))
    return subject or None


def sanitize_filename(filename):
    """
    Sanitizes a string to be safe for use as a filename.
    Removes/replaces characters that are illegal in file systems.
    Truncates to 250 chars.
    """
    if not filename:
        return "untitled"
    # Invalid: < > : " / \ | ? * and control chars
    s = re.sub(r'[<>:"/\\|?*\x00-\x1f\x7f]', "_", filename)
    s = s.strip().strip(".")
    return s[:250] if s else "untitled"
