"""
Archive Configuration

Loads the JSON configuration once at startup into immutable values that are
passed explicitly to the archiver.

Keys are matched case-insensitively and "_"/"-" are ignored, so "Dir",
"BatchSize" and "batch_size" are all accepted.

Example:
    {
        "dir": "archive",
        "accounts": [
            {
                "imap": "imap.example.com:993",
                "username": "me@example.com",
                "password": "app-password",
                "include": ["INBOX", "Sent"],
                "exclude": ["Trash"],
                "batch_size": 10,
                "fetch_strategy": "uid",
                "debug": false
            }
        ]
    }
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace

from utils import imap_common
from utils.archive_errors import ConfigError

DEFAULT_CONFIG_PATH = "config.json"
DEFAULT_BATCH_SIZE = 10
DEFAULT_RETRIES = 3

FETCH_STRATEGY_UID = "uid"
FETCH_STRATEGY_BATCH = "batch"
FETCH_STRATEGIES = (FETCH_STRATEGY_UID, FETCH_STRATEGY_BATCH)

SUBJECT_ERRORS_ABORT = "abort"
SUBJECT_ERRORS_PLACEHOLDER = "placeholder"
SUBJECT_ERROR_POLICIES = (SUBJECT_ERRORS_ABORT, SUBJECT_ERRORS_PLACEHOLDER)

NAMING_UID_SUBJECT = "uid-subject"
NAMING_UID = "uid"
NAMING_SCHEMES = (NAMING_UID_SUBJECT, NAMING_UID)


@dataclass(frozen=True)
class OAuth2Settings:
    client_id: str
    client_secret: str | None = None


@dataclass(frozen=True)
class Account:
    """One remote mailbox owner."""

    imap: str
    username: str
    password: str | None = None
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    batch_size: int = DEFAULT_BATCH_SIZE
    fetch_strategy: str = FETCH_STRATEGY_UID
    subject_errors: str = SUBJECT_ERRORS_ABORT
    naming: str = NAMING_UID_SUBJECT
    debug: bool = False
    retries: int = DEFAULT_RETRIES
    oauth2: OAuth2Settings | None = None

    @property
    def endpoint(self) -> tuple[str, int, bool]:
        return imap_common.parse_endpoint(self.imap)


@dataclass(frozen=True)
class ArchiveConfig:
    dir: str
    accounts: tuple[Account, ...] = field(default_factory=tuple)

    def with_dir(self, path: str) -> ArchiveConfig:
        return replace(self, dir=path)


def _lower_keys(obj: dict, where: str) -> dict:
    if not isinstance(obj, dict):
        raise ConfigError("Expected a JSON object", where=where)
    lowered = {}
    for key, value in obj.items():
        # Accept both "batch_size" and "BatchSize" spellings.
        norm = key.replace("_", "").replace("-", "").lower()
        if norm in lowered:
            raise ConfigError("Duplicate key", where=where, key=key)
        lowered[norm] = value
    return lowered


def _get_str(data: dict, key: str, where: str, required=True) -> str | None:
    value = data.get(key)
    if value is None:
        if required:
            raise ConfigError("Missing required key", where=where, key=key)
        return None
    if not isinstance(value, str):
        raise ConfigError("Expected a string", where=where, key=key)
    if required and not value.strip():
        raise ConfigError("Empty value", where=where, key=key)
    return value


def _get_str_list(data: dict, key: str, where: str) -> tuple[str, ...]:
    value = data.get(key)
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError("Expected a list of strings", where=where, key=key)
    return tuple(value)


def _get_int(data: dict, key: str, where: str, default: int, minimum: int) -> int:
    value = data.get(key)
    if value is None:
        return default
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError("Expected an integer", where=where, key=key)
    if value < minimum:
        raise ConfigError(f"Must be >= {minimum}", where=where, key=key, value=value)
    return value


def _get_choice(data: dict, key: str, where: str, choices: tuple[str, ...], default: str) -> str:
    value = data.get(key)
    if value is None:
        return default
    if value not in choices:
        raise ConfigError(f"Must be one of {', '.join(choices)}", where=where, key=key, value=value)
    return value


def parse_account(raw: dict, index: int) -> Account:
    where = f"accounts[{index}]"
    data = _lower_keys(raw, where)

    imap = _get_str(data, "imap", where)
    imap_common.parse_endpoint(imap)
    username = _get_str(data, "username", where)
    password = _get_str(data, "password", where, required=False)

    oauth2 = None
    if data.get("oauth2") is not None:
        oauth_where = f"{where}.oauth2"
        oauth_data = _lower_keys(data["oauth2"], oauth_where)
        oauth2 = OAuth2Settings(
            client_id=_get_str(oauth_data, "clientid", oauth_where),
            client_secret=_get_str(oauth_data, "clientsecret", oauth_where, required=False),
        )
    if not password and oauth2 is None:
        raise ConfigError("Either password or oauth2 is required", where=where, username=username)

    debug = data.get("debug", False)
    if not isinstance(debug, bool):
        raise ConfigError("Expected a boolean", where=where, key="debug")

    return Account(
        imap=imap,
        username=username,
        password=password,
        include=_get_str_list(data, "include", where),
        exclude=_get_str_list(data, "exclude", where),
        batch_size=_get_int(data, "batchsize", where, DEFAULT_BATCH_SIZE, 1),
        fetch_strategy=_get_choice(data, "fetchstrategy", where, FETCH_STRATEGIES, FETCH_STRATEGY_UID),
        subject_errors=_get_choice(data, "subjecterrors", where, SUBJECT_ERROR_POLICIES, SUBJECT_ERRORS_ABORT),
        naming=_get_choice(data, "naming", where, NAMING_SCHEMES, NAMING_UID_SUBJECT),
        debug=debug,
        retries=_get_int(data, "retries", where, DEFAULT_RETRIES, 1),
        oauth2=oauth2,
    )


def parse_config(raw) -> ArchiveConfig:
    """Builds an ArchiveConfig from already-parsed JSON data."""
    data = _lower_keys(raw, "config")
    directory = _get_str(data, "dir", "config")
    accounts_raw = data.get("accounts")
    if not isinstance(accounts_raw, list) or not accounts_raw:
        raise ConfigError("Expected a non-empty list", where="config", key="accounts")

    accounts = tuple(parse_account(a, i) for i, a in enumerate(accounts_raw))
    seen = set()
    for account in accounts:
        # Two accounts with one username would share one archive subtree.
        if account.username in seen:
            raise ConfigError("Duplicate account username", username=account.username)
        seen.add(account.username)
    return ArchiveConfig(dir=directory, accounts=accounts)


def load_config(path: str = DEFAULT_CONFIG_PATH) -> ArchiveConfig:
    """Reads and validates the JSON configuration file."""
    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError("Configuration file not found", path=path) from e
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file: {e}", path=path) from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON: {e.msg}", path=path, line=e.lineno) from e
    return parse_config(raw)
