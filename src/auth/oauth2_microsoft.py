"""
Microsoft OAuth2 Token Acquisition

OAuth2 token acquisition for Microsoft/Outlook IMAP using MSAL device code flow.
Supports auto-discovery of tenant ID from email domain.

Requires the 'msal' package: pip install msal
"""

import http.client
import json
import os
import re
import ssl
import urllib.parse

from utils.archive_errors import AuthenticationError

IMAP_SCOPES = ["https://outlook.office365.com/IMAP.AccessAsUser.All"]

# Module-level caches
_msal_app_cache = {}  # (client_id, tenant_id) -> PublicClientApplication
_tenant_cache = {}  # domain -> tenant_id


def _fetch_json_https(host, path, timeout=10):
    """Fetch JSON from an HTTP(S) endpoint."""
    if not host or any(ch in host for ch in "\r\n"):
        raise ValueError("Invalid host")
    if not path.startswith("/"):
        path = f"/{path}"

    if host.startswith("http://") or host.startswith("https://"):
        parsed = urllib.parse.urlparse(host)
        if not parsed.hostname:
            raise ValueError("Invalid host")
        host = parsed.hostname
        if parsed.port:
            host = f"{host}:{parsed.port}"
        base_path = parsed.path.rstrip("/")
        if base_path:
            path = f"{base_path}{path}"
        use_https = parsed.scheme == "https"
    else:
        use_https = True

    if use_https:
        conn = http.client.HTTPSConnection(host, timeout=timeout, context=ssl.create_default_context())
    else:
        conn = http.client.HTTPConnection(host, timeout=timeout)
    try:
        conn.request("GET", path, headers={"Accept": "application/json"})
        response = conn.getresponse()
        body = response.read()
    finally:
        conn.close()

    if response.status != 200:
        raise RuntimeError(f"Unexpected HTTP status {response.status}")
    return json.loads(body.decode("utf-8"))


def discover_tenant(email):
    """
    Discovers the Microsoft tenant ID from an email address domain through the
    OpenID Connect discovery endpoint (no authentication required). Results
    are cached per domain.

    Raises AuthenticationError if the tenant cannot be determined.
    """
    domain = email.split("@")[-1].strip().lower() if "@" in email else ""
    if not domain:
        raise AuthenticationError("Cannot discover Microsoft tenant: username has no email domain", username=email)

    if domain in _tenant_cache:
        return _tenant_cache[domain]

    path = f"/{urllib.parse.quote(domain, safe='.-')}/.well-known/openid-configuration"
    discovery_host = os.getenv("OAUTH2_MICROSOFT_DISCOVERY_URL") or "login.microsoftonline.com"
    try:
        data = _fetch_json_https(discovery_host, path, timeout=10)
    except (OSError, http.client.HTTPException, RuntimeError, ValueError) as e:
        raise AuthenticationError(f"Could not discover Microsoft tenant: {e}", domain=domain) from e

    issuer = data.get("issuer", "")
    match = re.search(r"/([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})", issuer)
    if not match:
        raise AuthenticationError("Could not extract tenant ID from issuer", domain=domain, issuer=issuer)

    tenant_id = match.group(1)
    _tenant_cache[domain] = tenant_id
    return tenant_id


def acquire_token(client_id, email, log):
    """
    Acquires a Microsoft OAuth2 access token using the MSAL device code flow.

    On subsequent calls (e.g. a second account in the same tenant), silently
    refreshes through the cached MSAL app, which holds the refresh token.
    Returns the token, or None when MSAL does not issue one.
    """
    tenant_id = discover_tenant(email)

    try:
        import msal
    except ImportError as e:
        raise AuthenticationError("'msal' package is required for Microsoft OAuth2 (pip install msal)") from e

    authority_base = os.getenv("OAUTH2_MICROSOFT_AUTHORITY_BASE_URL") or "https://login.microsoftonline.com"
    authority = f"{authority_base.rstrip('/')}/{tenant_id}"

    cache_key = (client_id, tenant_id)
    app = _msal_app_cache.get(cache_key)
    if app is None:
        log.info("DISCOVERED MICROSOFT TENANT", tenant=tenant_id)
        app = msal.PublicClientApplication(client_id, authority=authority)
        _msal_app_cache[cache_key] = app

    for account in app.get_accounts(username=email):
        result = app.acquire_token_silent(IMAP_SCOPES, account=account)
        if result and "access_token" in result:
            return result["access_token"]

    flow = app.initiate_device_flow(scopes=IMAP_SCOPES)
    if "user_code" not in flow:
        raise AuthenticationError(
            "Could not initiate device flow", reason=flow.get("error_description", "Unknown error"), username=email
        )

    # The device flow prompt must reach the operator verbatim.
    log.info(flow["message"])
    result = app.acquire_token_by_device_flow(flow)
    if "access_token" in result:
        return result["access_token"]

    log.error("NO TOKEN", reason=result.get("error_description", "Unknown error"))
    return None
