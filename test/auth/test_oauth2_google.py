"""
Tests for oauth2_google.py

Tests cover:
- Token acquisition using installed app flow
- Credentials caching and silent token refresh
"""

import os
import sys
from unittest.mock import MagicMock, patch

import google.auth.exceptions
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../../src")))

from auth import oauth2_google
from conftest import RecordingLog
from utils.archive_errors import AuthenticationError


@pytest.fixture(autouse=True)
def clear_caches():
    """Clear module-level caches between tests."""
    oauth2_google._creds_cache.clear()
    yield
    oauth2_google._creds_cache.clear()


def _flow_module(token):
    mock_credentials = MagicMock()
    mock_credentials.token = token

    mock_flow = MagicMock()
    mock_flow.run_local_server.return_value = mock_credentials

    mock_module = MagicMock()
    mock_module.InstalledAppFlow.from_client_config.return_value = mock_flow
    return mock_module, mock_credentials


class TestAcquireToken:
    """Tests for acquire_token function."""

    def test_successful_token(self):
        """Test successful Google token acquisition."""
        mock_module, _ = _flow_module("google_test_token")

        with patch.dict("sys.modules", {"google_auth_oauthlib": MagicMock(), "google_auth_oauthlib.flow": mock_module}):
            result = oauth2_google.acquire_token("client-id", "client-secret", RecordingLog())

        assert result == "google_test_token"
        client_config = mock_module.InstalledAppFlow.from_client_config.call_args[0][0]
        assert client_config["installed"]["client_id"] == "client-id"
        assert client_config["installed"]["token_uri"] == "https://oauth2.googleapis.com/token"

    def test_token_url_override(self, monkeypatch):
        """Test OAUTH2_GOOGLE_TOKEN_URL replaces the token endpoint."""
        monkeypatch.setenv("OAUTH2_GOOGLE_TOKEN_URL", "http://localhost:9999/token")
        mock_module, _ = _flow_module("tok")

        with patch.dict("sys.modules", {"google_auth_oauthlib": MagicMock(), "google_auth_oauthlib.flow": mock_module}):
            oauth2_google.acquire_token("client-id", "client-secret", RecordingLog())

        client_config = mock_module.InstalledAppFlow.from_client_config.call_args[0][0]
        assert client_config["installed"]["token_uri"] == "http://localhost:9999/token"

    def test_missing_library(self):
        """Test raises AuthenticationError when google-auth-oauthlib is not installed."""
        with patch.dict("sys.modules", {"google_auth_oauthlib": None, "google_auth_oauthlib.flow": None}):
            with pytest.raises(AuthenticationError, match="google-auth-oauthlib"):
                oauth2_google.acquire_token("client-id", "client-secret", RecordingLog())

    def test_no_token_returned(self):
        """Test returns None when credentials have no token."""
        mock_module, _ = _flow_module(None)

        with patch.dict("sys.modules", {"google_auth_oauthlib": MagicMock(), "google_auth_oauthlib.flow": mock_module}):
            result = oauth2_google.acquire_token("client-id", "client-secret", RecordingLog())

        assert result is None
        assert oauth2_google._creds_cache == {}

    def test_cached_credentials_refreshed(self):
        """Test a second call refreshes cached credentials without running the flow."""
        mock_module, creds = _flow_module("first")
        creds.refresh_token = "refresh"

        def refresh(_request):
            creds.token = "refreshed"

        creds.refresh.side_effect = refresh

        with patch.dict("sys.modules", {"google_auth_oauthlib": MagicMock(), "google_auth_oauthlib.flow": mock_module}):
            assert oauth2_google.acquire_token("cid", "secret", RecordingLog()) == "first"
            assert oauth2_google.acquire_token("cid", "secret", RecordingLog()) == "refreshed"

        assert mock_module.InstalledAppFlow.from_client_config.call_count == 1

    def test_failed_refresh_falls_back_to_flow(self):
        """Test a RefreshError is logged and the browser flow runs again."""
        mock_module, creds = _flow_module("fresh")
        creds.refresh_token = "refresh"
        creds.refresh.side_effect = google.auth.exceptions.RefreshError("revoked")
        oauth2_google._creds_cache[("cid", "secret")] = creds
        log = RecordingLog()

        with patch.dict("sys.modules", {"google_auth_oauthlib": MagicMock(), "google_auth_oauthlib.flow": mock_module}):
            result = oauth2_google.acquire_token("cid", "secret", log)

        assert result == "fresh"
        assert "GOOGLE TOKEN REFRESH FAILED" in log.text()
