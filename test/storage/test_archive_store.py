"""
Tests for storage/archive_store.py

Tests cover:
- UID recovery from archive filenames
- Inventory of an archive directory
- Mailbox directory layout and sanitization
- Filename construction
- Write-once atomic message writes
"""

import os
import sys
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../../src")))

from core.message_fetcher import MessageRecord
from storage import archive_store
from utils.archive_config import NAMING_UID, NAMING_UID_SUBJECT
from utils.archive_errors import StorageError


class TestParseUidFromFilename:
    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("42-Hello World.eml", 42),
            ("42.eml", 42),
            ("7-a-b-c.eml", 7),
            ("4294967295.eml", 4294967295),
            ("00012-x.eml", 12),
        ],
    )
    def test_valid_names(self, filename, expected):
        assert archive_store.parse_uid_from_filename(filename) == expected

    @pytest.mark.parametrize(
        "filename",
        [
            "abc.eml",
            "0.eml",
            "notes.txt",
            "-5.eml",
            "0-x.eml",
            "4294967296.eml",
            "README",
            "12",
            ".incoming-abc.part",
            "１２-fullwidth.eml",
            "",
        ],
    )
    def test_rejected_names(self, filename):
        assert archive_store.parse_uid_from_filename(filename) is None


class TestListArchivedUids:
    def test_missing_directory_is_empty(self, tmp_path):
        assert archive_store.list_archived_uids(str(tmp_path / "nope")) == set()

    def test_collects_uids_and_ignores_foreign_files(self, tmp_path):
        for name in ["1-a.eml", "2.eml", "10-b.eml", "notes.txt", ".incoming-x.part"]:
            (tmp_path / name).write_bytes(b"x")
        (tmp_path / "99-subdir").mkdir()

        assert archive_store.list_archived_uids(str(tmp_path)) == {1, 2, 10}

    def test_unreadable_directory_raises(self, tmp_path):
        with patch("os.scandir", side_effect=PermissionError("denied")):
            with pytest.raises(StorageError) as exc:
                archive_store.list_archived_uids(str(tmp_path))
        assert exc.value.context["path"] == str(tmp_path)


class TestMailboxPath:
    def test_nested_hierarchy(self, tmp_path):
        path = archive_store.mailbox_path(str(tmp_path), "me@example.com", "Work/Projects", "/")
        assert path == os.path.join(str(tmp_path), "me@example.com", "Work", "Projects")

    def test_dot_delimiter(self, tmp_path):
        path = archive_store.mailbox_path(str(tmp_path), "me", "INBOX.Sent", ".")
        assert path == os.path.join(str(tmp_path), "me", "INBOX", "Sent")

    def test_no_delimiter_keeps_single_segment(self, tmp_path):
        path = archive_store.mailbox_path(str(tmp_path), "me", "A/B", None)
        assert path == os.path.join(str(tmp_path), "me", "A%2FB")

    def test_traversal_segments_are_neutralized(self, tmp_path):
        path = archive_store.mailbox_path(str(tmp_path), "me", "../../etc", "/")
        assert os.path.commonpath([path, str(tmp_path)]) == str(tmp_path)
        assert ".." not in path.split(os.sep)

    @pytest.mark.parametrize(
        "first,second",
        [
            ("Misc", "Misc."),
            ("a:b", "a_b"),
            ("a_b", "a%3Ab"),
            (" x", "x"),
            ("", "%"),
        ],
    )
    def test_distinct_mailboxes_get_distinct_directories(self, tmp_path, first, second):
        assert archive_store.mailbox_path(str(tmp_path), "me", first, None) != archive_store.mailbox_path(
            str(tmp_path), "me", second, None
        )


class TestEncodePathSegment:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("INBOX", "INBOX"),
            ("Entwürfe", "Entwürfe"),
            ("Misc.", "Misc%2E"),
            ("..", "%2E%2E"),
            ("a:b", "a%3Ab"),
            ("50%", "50%25"),
            (" Sent ", "%20Sent%20"),
            ("me@example.com", "me@example.com"),
            ("", "%"),
        ],
    )
    def test_encoding(self, name, expected):
        assert archive_store.encode_path_segment(name) == expected

    def test_long_segment_fits_limit_and_stays_distinct(self):
        first = archive_store.encode_path_segment("邮件" * 100 + "a")
        second = archive_store.encode_path_segment("邮件" * 100 + "b")
        assert len(first.encode("utf-8")) <= archive_store.MAX_NAME_BYTES
        assert len(second.encode("utf-8")) <= archive_store.MAX_NAME_BYTES
        assert first != second


class TestBuildFilename:
    def test_uid_and_subject(self):
        assert archive_store.build_filename(5, "Hello World", NAMING_UID_SUBJECT) == "5-Hello World.eml"

    def test_uid_only_naming(self):
        assert archive_store.build_filename(5, "Hello", NAMING_UID) == "5.eml"

    def test_missing_subject(self):
        assert archive_store.build_filename(5, None, NAMING_UID_SUBJECT) == "5.eml"

    def test_unsafe_characters_replaced(self):
        name = archive_store.build_filename(3, 'Re: a/b "c"?', NAMING_UID_SUBJECT)
        assert name == "3-Re_ a_b _c__.eml"
        assert archive_store.parse_uid_from_filename(name) == 3

    def test_long_subject_truncated(self):
        name = archive_store.build_filename(8, "x" * 500, NAMING_UID_SUBJECT)
        assert name == f"8-{'x' * archive_store.MAX_SUBJECT_LENGTH}.eml"

    @pytest.mark.parametrize("subject", ["会议纪要" * 25, "📎" * 100, "Ä" * 100 + "x" * 50])
    def test_multibyte_subject_fits_name_limit(self, subject):
        name = archive_store.build_filename(4294967295, subject, NAMING_UID_SUBJECT)
        assert len(name.encode("utf-8")) <= archive_store.MAX_NAME_BYTES
        assert name.startswith("4294967295-")
        assert name.endswith(".eml")
        assert archive_store.parse_uid_from_filename(name) == 4294967295

    def test_subject_starting_with_digits_keeps_uid(self):
        name = archive_store.build_filename(9, "2024 report", NAMING_UID_SUBJECT)
        assert archive_store.parse_uid_from_filename(name) == 9


class TestWriteMessage:
    def test_writes_exact_bytes(self, tmp_path):
        body = b"Subject: Hi\r\n\r\nbody\r\n"
        record = MessageRecord(uid=4, body=body, subject="Hi")

        path = archive_store.write_message(str(tmp_path), record, NAMING_UID_SUBJECT)

        assert os.path.basename(path) == "4-Hi.eml"
        assert archive_store.read_message(path) == body
        assert os.listdir(tmp_path) == ["4-Hi.eml"]

    def test_creates_missing_directory(self, tmp_path):
        folder = tmp_path / "a" / "b"
        archive_store.write_message(str(folder), MessageRecord(uid=1, body=b"x"), NAMING_UID)
        assert (folder / "1.eml").read_bytes() == b"x"

    def test_never_overwrites(self, tmp_path):
        (tmp_path / "4-Hi.eml").write_bytes(b"original")
        record = MessageRecord(uid=4, body=b"new", subject="Hi")

        with pytest.raises(StorageError):
            archive_store.write_message(str(tmp_path), record, NAMING_UID_SUBJECT)

        assert (tmp_path / "4-Hi.eml").read_bytes() == b"original"

    def test_failed_write_leaves_no_partial_file(self, tmp_path):
        record = MessageRecord(uid=6, body=b"payload")

        with patch("os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StorageError) as exc:
                archive_store.write_message(str(tmp_path), record, NAMING_UID)

        assert exc.value.context["uid"] == 6
        assert os.listdir(tmp_path) == []

    def test_writes_long_cjk_and_emoji_subjects(self, tmp_path):
        for uid, subject in [(1, "会议纪要" * 25), (2, "🎉🎊" * 60)]:
            path = archive_store.write_message(
                str(tmp_path), MessageRecord(uid=uid, body=b"x", subject=subject), NAMING_UID_SUBJECT
            )
            assert len(os.path.basename(path).encode("utf-8")) <= archive_store.MAX_NAME_BYTES
            assert archive_store.read_message(path) == b"x"
        assert archive_store.list_archived_uids(str(tmp_path)) == {1, 2}

    @pytest.mark.skipif(os.name != "posix", reason="directory fsync is POSIX only")
    def test_directory_synced_after_rename(self, tmp_path):
        with patch("os.fsync", wraps=os.fsync) as fsync, patch("os.open", wraps=os.open) as opener:
            archive_store.write_message(str(tmp_path), MessageRecord(uid=3, body=b"x"), NAMING_UID)

        assert (str(tmp_path), os.O_RDONLY) in [c.args for c in opener.call_args_list]
        assert fsync.call_count == 2

    def test_written_entry_is_found_by_inventory(self, tmp_path):
        archive_store.write_message(str(tmp_path), MessageRecord(uid=11, body=b"x", subject="S"), NAMING_UID_SUBJECT)
        assert archive_store.list_archived_uids(str(tmp_path)) == {11}
