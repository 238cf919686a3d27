"""
Environment configuration for the Google Sheets MCP server.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping, Optional, Tuple

# Constants
SCOPES = ('https://www.googleapis.com/auth/spreadsheets', 'https://www.googleapis.com/auth/drive')
DEFAULT_SERVICE_ACCOUNT_PATH = 'service_account.json'
DEFAULT_CALLBACK_PORT = 3000
DEFAULT_PORT_SEARCH_WIDTH = 5
DEFAULT_REFRESH_MARGIN_SECONDS = 300
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000

_TRUTHY = {'1', 'true', 'yes', 'on'}


def _get_int(environ: Mapping[str, str], *names: str, default: int) -> int:
    """Return the first set variable among ``names`` as an int, or ``default`` if unset or invalid."""
    for name in names:
        value = environ.get(name)
        if value:
            try:
                return int(value)
            except ValueError:
                return default
    return default


def _get_float(environ: Mapping[str, str], name: str) -> Optional[float]:
    value = environ.get(name)
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


@dataclass(frozen=True)
class OAuthSettings:
    """Settings consumed by the delegated (user consent) authorization path."""
    credentials_path: Optional[str] = None
    token_path: Optional[str] = None
    scopes: Tuple[str, ...] = SCOPES
    callback_port: int = DEFAULT_CALLBACK_PORT
    port_search_width: int = DEFAULT_PORT_SEARCH_WIDTH
    refresh_margin: timedelta = timedelta(seconds=DEFAULT_REFRESH_MARGIN_SECONDS)
    consent_timeout: Optional[float] = None
    open_browser: bool = True

    @property
    def configured(self) -> bool:
        return bool(self.credentials_path or self.token_path)

    @property
    def complete(self) -> bool:
        return bool(self.credentials_path and self.token_path)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "OAuthSettings":
        environ = os.environ if environ is None else environ
        margin = _get_int(environ, 'OAUTH_REFRESH_MARGIN_SECONDS', default=DEFAULT_REFRESH_MARGIN_SECONDS)
        return cls(
            credentials_path=environ.get('CREDENTIALS_PATH') or None,
            token_path=environ.get('TOKEN_PATH') or None,
            callback_port=_get_int(environ, 'OAUTH_CALLBACK_PORT', default=DEFAULT_CALLBACK_PORT),
            port_search_width=_get_int(environ, 'OAUTH_PORT_SEARCH_WIDTH', default=DEFAULT_PORT_SEARCH_WIDTH),
            refresh_margin=timedelta(seconds=max(margin, 0)),
            consent_timeout=_get_float(environ, 'OAUTH_CONSENT_TIMEOUT'),
            open_browser=environ.get('OAUTH_OPEN_BROWSER', 'true').strip().lower() in _TRUTHY,
        )


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, read once from the environment."""
    credentials_config: Optional[str] = None
    service_account_path: Optional[str] = DEFAULT_SERVICE_ACCOUNT_PATH
    drive_folder_id: Optional[str] = None
    oauth: OAuthSettings = field(default_factory=OAuthSettings)
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        environ = os.environ if environ is None else environ
        return cls(
            credentials_config=environ.get('CREDENTIALS_CONFIG') or None,
            service_account_path=environ.get('SERVICE_ACCOUNT_PATH', DEFAULT_SERVICE_ACCOUNT_PATH) or None,
            drive_folder_id=environ.get('DRIVE_FOLDER_ID') or None,
            oauth=OAuthSettings.from_env(environ),
            # Resolve host/port from environment variables with flexible names
            host=environ.get('HOST') or environ.get('FASTMCP_HOST') or DEFAULT_HOST,
            port=_get_int(environ, 'PORT', 'FASTMCP_PORT', default=DEFAULT_PORT),
            log_level=(environ.get('LOG_LEVEL') or 'INFO').upper(),
        )
