"""
Configuration loading: INI file section plus environment overrides for secrets.
"""

import logging
import os
from configparser import ConfigParser
from configparser import Error as ConfigParserError
from dataclasses import fields
from pathlib import Path
from typing import Mapping

from assignment_calendar_sync.crypto import TokenCipher
from assignment_calendar_sync.models import DEFAULT_CONFIG
from assignment_calendar_sync.models import AppConfig
from assignment_calendar_sync.models import ConfigError

logger = logging.getLogger(__name__)

SECTION = "assignment-calendar-sync"

ENV_OVERRIDES = {
    "ACS_ENCRYPTION_KEY": "encryption_key",
    "ACS_GOOGLE_CLIENT_ID": "google_client_id",
    "ACS_GOOGLE_CLIENT_SECRET": "google_client_secret",
    "ACS_GOOGLE_REDIRECT_URI": "google_redirect_uri",
    "ACS_STATE_DB": "state_db_path",
}

_FLOAT_KEYS = frozenset(
    {"sync_timeout_seconds", "backoff_base_seconds", "backoff_cap_seconds", "request_timeout_seconds"}
)
_INT_KEYS = frozenset({"max_attempts", "token_refresh_margin_minutes", "auto_sync_workers"})
_KNOWN_KEYS = frozenset(f.name for f in fields(AppConfig)) - {"verbose"}


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    try:
        parser.read(config_path)
    except ConfigParserError as e:
        raise ConfigError(f"Cannot parse {config_path}: {e}") from None
    if SECTION not in parser:
        return {}
    return dict(parser[SECTION])


def _coerce(key: str, raw: str):
    if key in _FLOAT_KEYS:
        try:
            value = float(raw)
        except ValueError:
            raise ConfigError(f"{key} must be a number, got {raw!r}") from None
        if value <= 0:
            raise ConfigError(f"{key} must be positive")
        return value
    if key in _INT_KEYS:
        try:
            value = int(raw)
        except ValueError:
            raise ConfigError(f"{key} must be an integer, got {raw!r}") from None
        if value < (0 if key == "token_refresh_margin_minutes" else 1):
            raise ConfigError(f"{key} is out of range: {value}")
        return value
    if key == "state_db_path":
        return Path(raw).expanduser()
    return raw


def load_config(
    config_path: Path = DEFAULT_CONFIG,
    environ: Mapping[str, str] | None = None,
    **overrides,
) -> AppConfig:
    """
    Build an AppConfig from defaults, the config file, the environment and
    explicit overrides, in that order of increasing precedence.
    """
    environ = os.environ if environ is None else environ
    values: dict[str, object] = {}

    for key, raw in _load_config_file(config_path).items():
        if key not in _KNOWN_KEYS:
            logger.warning(f"Ignoring unknown config key {key!r} in {config_path}")
            continue
        values[key] = _coerce(key, raw)

    for env_name, key in ENV_OVERRIDES.items():
        if environ.get(env_name):
            values[key] = _coerce(key, environ[env_name])

    for key, value in overrides.items():
        if value is not None:
            values[key] = value

    config = AppConfig(**values)
    if config.backoff_cap_seconds < config.backoff_base_seconds:
        raise ConfigError("backoff_cap_seconds must not be smaller than backoff_base_seconds")
    if config.encryption_key:
        # Fails fast on a malformed key.
        TokenCipher(config.encryption_key)
    return config
