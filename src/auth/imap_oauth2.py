"""
IMAP OAuth2 Authentication

OAuth2 token acquisition for accounts configured with an "oauth2" block.
Dispatches to provider-specific modules (oauth2_microsoft, oauth2_google).

Provider is auto-detected from the IMAP host string.
"""

from auth import oauth2_google, oauth2_microsoft
from utils.archive_errors import AuthenticationError

PROVIDER_MICROSOFT = "microsoft"
PROVIDER_GOOGLE = "google"


def detect_oauth2_provider(host):
    """
    Detects the OAuth2 provider from the IMAP host.
    Returns "microsoft", "google", or None if unrecognized.
    """
    host_lower = host.lower()
    if "outlook" in host_lower or "office365" in host_lower or "microsoft" in host_lower:
        return PROVIDER_MICROSOFT
    if "gmail" in host_lower or "google" in host_lower:
        return PROVIDER_GOOGLE
    return None


def acquire_token(host, client_id, email, client_secret, log):
    """
    Detect the OAuth2 provider from the host and acquire an access token.

    Args:
        host: IMAP host (used to detect provider)
        client_id: OAuth2 client ID
        email: Account username, used for Microsoft tenant discovery
        client_secret: Required for Google, not needed for Microsoft
        log: ArchiveLog for status messages

    Returns:
        The access token string.

    Raises:
        AuthenticationError if the provider is unknown or no token is issued.
    """
    provider = detect_oauth2_provider(host)
    if provider is None:
        raise AuthenticationError("Could not detect OAuth2 provider from host", host=host)

    log.info("ACQUIRING OAUTH2 TOKEN", provider=provider)
    if provider == PROVIDER_MICROSOFT:
        token = oauth2_microsoft.acquire_token(client_id, email, log)
    else:
        if not client_secret:
            raise AuthenticationError("OAuth2 client_secret is required for Google", username=email)
        token = oauth2_google.acquire_token(client_id, client_secret, log)

    if not token:
        raise AuthenticationError("Failed to acquire OAuth2 token", provider=provider, username=email)
    return token


def build_xoauth2_string(user, token):
    """SASL XOAUTH2 initial client response."""
    return f"user={user}\x01auth=Bearer {token}\x01\x01"


def auth_description(account):
    """
    Return a human-readable auth description for config summaries.

    Returns:
        "OAuth2/{provider} (XOAUTH2)" or "Basic (password)".
    """
    if account.oauth2 is not None:
        provider = detect_oauth2_provider(account.endpoint[0]) or "unknown"
        return f"OAuth2/{provider} (XOAUTH2)"
    return "Basic (password)"
