"""
Shared pytest fixtures and utilities for the IMAP archiver tests.
"""

import os
import sys
import time

import pytest

# Ensure src/tools are in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../tools")))

from mock_imap_server import start_server_thread
from mock_oauth_server import start_server_thread as start_discovery_server_thread
from utils.archive_config import Account, ArchiveConfig
from utils.archive_log import ArchiveLog

TEST_USER = "user@example.com"
TEST_PASSWORD = "secret"


def make_message(subject="Test", body="Hello", sender="alice@example.com"):
    """Builds a small RFC 5322 message with CRLF line endings."""
    lines = [f"From: {sender}", "To: user@example.com"]
    if subject is not None:
        lines.append(f"Subject: {subject}")
    lines += ["Message-ID: <test@example.com>", "", body, ""]
    return "\r\n".join(lines).encode("utf-8")


def make_account(port, username=TEST_USER, password=TEST_PASSWORD, **overrides):
    """Account pointing at a plain-TCP mock server on localhost."""
    overrides.setdefault("retries", 1)
    return Account(imap=f"imap://localhost:{port}", username=username, password=password, **overrides)


def make_config(root, *accounts):
    return ArchiveConfig(dir=str(root), accounts=tuple(accounts))


class RecordingLog(ArchiveLog):
    """ArchiveLog that keeps every emitted line."""

    def __init__(self, verbose=True):
        # Bound children inherit log_fn, so they append here too.
        self.lines = []
        super().__init__(verbose=verbose, log_fn=self.lines.append)

    def text(self):
        return "\n".join(self.lines)


@pytest.fixture
def log():
    return RecordingLog()


@pytest.fixture
def single_mock_server():
    """
    Factory for mock IMAP servers: single_mock_server({"INBOX": [...]})
    returns (server, port). All servers are stopped after the test.
    """
    servers = []

    def _create(initial_folders=None):
        server, actual_port = start_server_thread(0, initial_folders)
        time.sleep(0.1)
        servers.append(server)
        return server, actual_port

    yield _create

    for server in servers:
        server.stop()


@pytest.fixture
def mock_discovery_server(monkeypatch):
    """Starts a mock OpenID discovery server and points tenant discovery at it."""
    thread, server = start_discovery_server_thread(0)
    host, port = server.server_address
    monkeypatch.setenv("OAUTH2_MICROSOFT_DISCOVERY_URL", f"http://{host}:{port}")

    yield server

    server.shutdown()
    server.server_close()
    thread.join(timeout=2)


__all__ = [
    "make_account",
    "make_config",
    "make_message",
    "RecordingLog",
    "single_mock_server",
    "mock_discovery_server",
]
