"""
Local Archive Store

Owns the on-disk layout of the archive:

    <root>/<username>/<mailbox segments>/<uid>[-<subject>].eml

The filename is the index. The UID is recovered from the filename prefix,
so there is no manifest to keep in sync and a partially completed run is
picked up exactly where it stopped. Entries are written once through a
temporary file and an atomic rename, and are never overwritten or deleted.
"""

from __future__ import annotations

import hashlib
import os
import re
import tempfile

from utils import imap_common
from utils.archive_config import NAMING_UID
from utils.archive_errors import StorageError

EML_SUFFIX = ".eml"
MAX_SUBJECT_LENGTH = 100
MAX_UID = 2**32 - 1

# Filesystem limit for one path component, in bytes.
MAX_NAME_BYTES = 255
DIGEST_LENGTH = 16

# Illegal in directory names on common filesystems, plus "%" itself.
_UNSAFE_SEGMENT_CHARS = re.compile(r'[<>:"/\\|?*%\x00-\x1f\x7f]')

# Temporary files start with "." so their names never parse as a UID.
TEMP_PREFIX = ".incoming-"
TEMP_SUFFIX = ".part"


def parse_uid_from_filename(filename: str) -> int | None:
    """
    Recovers the UID from an archive filename.

    Accepts "<uid>.eml" and "<uid>-<subject>.eml": the prefix up to the first
    "." or "-" must be an unsigned decimal integer in 1..2**32-1. Anything
    else (foreign files, temporary files, other naming schemes) is not an
    archive entry and yields None.
    """
    cut = len(filename)
    for sep in (".", "-"):
        pos = filename.find(sep)
        if pos != -1 and pos < cut:
            cut = pos
    if cut == len(filename):
        return None

    prefix = filename[:cut]
    if not prefix or not (prefix.isascii() and prefix.isdigit()):
        return None
    uid = int(prefix)
    if uid < 1 or uid > MAX_UID:
        return None
    return uid


def list_archived_uids(folder_path: str) -> set[int]:
    """
    Scans a mailbox directory (non-recursive, files only) and returns the set
    of UIDs already archived.

    A directory that does not exist yet has no entries. Any other read error
    raises StorageError: an inventory that cannot be trusted must stop the
    sync rather than cause everything to be downloaded again.
    """
    existing: set[int] = set()
    try:
        with os.scandir(folder_path) as entries:
            for entry in entries:
                if not entry.is_file(follow_symlinks=False):
                    continue
                uid = parse_uid_from_filename(entry.name)
                if uid is not None:
                    existing.add(uid)
    except FileNotFoundError:
        return existing
    except OSError as e:
        raise StorageError(f"Cannot list archive directory: {e}", path=folder_path) from e
    return existing


def truncate_utf8(text: str, max_bytes: int) -> str:
    """Cuts text to at most max_bytes of UTF-8, dropping whole characters only."""
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", "ignore")


def _percent(text: str) -> str:
    return "".join(f"%{b:02X}" for b in text.encode("utf-8"))


def encode_path_segment(name: str) -> str:
    """
    Maps one mailbox segment (or a username) to a directory name.

    The mapping is one-to-one: unsafe characters, "%" and leading or trailing
    dots and spaces are percent-encoded rather than replaced, so "Misc" and
    "Misc." or "a:b" and "a_b" get different directories, and "." or ".."
    can never be produced. An empty segment becomes "%". A segment over the
    filesystem limit keeps a prefix followed by "~" and a digest of the full
    name.
    """
    if not name:
        return "%"
    s = _UNSAFE_SEGMENT_CHARS.sub(lambda m: _percent(m.group()), name)
    body = s.lstrip(" .")
    head = s[: len(s) - len(body)]
    core = body.rstrip(" .")
    tail = body[len(core):]
    s = _percent(head) + core + _percent(tail)

    if len(s.encode("utf-8")) > MAX_NAME_BYTES:
        digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:DIGEST_LENGTH]
        s = truncate_utf8(s, MAX_NAME_BYTES - DIGEST_LENGTH - 1) + "~" + digest
    return s


def mailbox_path(root: str, username: str, mailbox_name: str, delimiter: str | None = "/") -> str:
    """
    Maps an account and mailbox to its local directory.

    The mailbox hierarchy becomes nested directories. Every segment goes
    through encode_path_segment, so names like ".." or "a/b" cannot escape
    the archive root and two distinct mailboxes never share a directory.
    """
    if delimiter and delimiter in mailbox_name:
        segments = mailbox_name.split(delimiter)
    else:
        segments = [mailbox_name]
    encoded = [encode_path_segment(s) for s in segments]
    return os.path.join(root, encode_path_segment(username), *encoded)


def build_filename(uid: int, subject: str | None, naming: str) -> str:
    """
    Builds the archive filename for a UID and optional decoded subject.

    The subject is cut to MAX_SUBJECT_LENGTH characters and then to whatever
    fits the per-name byte limit next to the UID, so multibyte subjects never
    produce a name the filesystem refuses.
    """
    if naming == NAMING_UID or not subject:
        return f"{uid}{EML_SUFFIX}"
    budget = MAX_NAME_BYTES - len(f"{uid}-{EML_SUFFIX}".encode("utf-8"))
    clean_subject = imap_common.sanitize_filename(subject)[:MAX_SUBJECT_LENGTH]
    clean_subject = truncate_utf8(clean_subject, budget).rstrip(" .")
    if not clean_subject:
        return f"{uid}{EML_SUFFIX}"
    return f"{uid}-{clean_subject}{EML_SUFFIX}"


def ensure_directory(folder_path: str) -> None:
    """Creates a mailbox directory; an existing directory is fine."""
    try:
        os.makedirs(folder_path, exist_ok=True)
    except OSError as e:
        raise StorageError(f"Cannot create archive directory: {e}", path=folder_path) from e


def _fsync_directory(folder_path: str) -> None:
    # Persists the rename itself; directories cannot be opened this way on Windows.
    if os.name != "posix":
        return
    fd = os.open(folder_path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def write_message(folder_path: str, record, naming: str) -> str:
    """
    Writes one message to the archive and returns its final path.

    The payload goes to a hidden temporary file in the same directory, is
    flushed to disk, and is then renamed into place, so a reader never sees a
    partial entry. The directory is synced after the rename so the new entry
    survives a crash. An existing entry is never replaced.
    """
    filename = build_filename(record.uid, record.subject, naming)
    full_path = os.path.join(folder_path, filename)

    if os.path.lexists(full_path):
        raise StorageError("Archive entry already exists", path=full_path, uid=record.uid)

    ensure_directory(folder_path)

    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX, dir=folder_path)
        with os.fdopen(fd, "wb") as f:
            f.write(record.body)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, full_path)
        tmp_path = None
        _fsync_directory(folder_path)
    except OSError as e:
        raise StorageError(
            f"Cannot write archive entry: {e}", path=full_path, uid=record.uid, bodysize=len(record.body)
        ) from e
    finally:
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass

    return full_path


def read_message(full_path: str) -> bytes:
    """Reads an archived entry back."""
    try:
        with open(full_path, "rb") as f:
            return f.read()
    except OSError as e:
        raise StorageError(f"Cannot read archive entry: {e}", path=full_path) from e
