"""
Google OAuth2 Token Acquisition

OAuth2 token acquisition for Google/Gmail IMAP using installed app flow.
Opens a browser for user consent and runs a local HTTP server for the redirect.

Requires the 'google-auth-oauthlib' package: pip install google-auth-oauthlib
"""

import os

from utils.archive_errors import AuthenticationError

GMAIL_SCOPES = ["https://mail.google.com/"]

# Module-level cache for credentials (holds refresh token)
_creds_cache = {}  # (client_id, client_secret) -> credentials


def _refresh_cached(cache_key, log):
    creds = _creds_cache.get(cache_key)
    if not creds or not creds.refresh_token:
        return None

    import google.auth.exceptions
    import google.auth.transport.requests

    try:
        creds.refresh(google.auth.transport.requests.Request())
    except google.auth.exceptions.RefreshError as e:
        log.warning("GOOGLE TOKEN REFRESH FAILED", error=str(e))
        return None
    return creds.token or None


def acquire_token(client_id, client_secret, log):
    """
    Acquires a Google OAuth2 access token using the installed app flow.

    On subsequent calls, silently refreshes the token using the cached
    credentials object. No browser interaction is needed for refresh.
    Returns the token, or None when the flow yields none.
    """
    cache_key = (client_id, client_secret)
    token = _refresh_cached(cache_key, log)
    if token:
        return token

    try:
        from google_auth_oauthlib.flow import InstalledAppFlow
    except ImportError as e:
        raise AuthenticationError(
            "'google-auth-oauthlib' package is required for Google OAuth2 (pip install google-auth-oauthlib)"
        ) from e

    client_config = {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": os.getenv("OAUTH2_GOOGLE_AUTH_URL") or "https://accounts.google.com/o/oauth2/auth",
            "token_uri": os.getenv("OAUTH2_GOOGLE_TOKEN_URL") or "https://oauth2.googleapis.com/token",
            "redirect_uris": ["http://localhost"],
        }
    }

    flow = InstalledAppFlow.from_client_config(client_config, scopes=GMAIL_SCOPES)
    log.info("OPENING BROWSER FOR GOOGLE AUTHENTICATION")
    credentials = flow.run_local_server(port=0)

    if credentials and credentials.token:
        _creds_cache[cache_key] = credentials
        return credentials.token
    return None
