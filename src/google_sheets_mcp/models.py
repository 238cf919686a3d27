"""
Client registration and token grant records used by the delegated authorization path.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from .errors import GrantMalformed, RegistrationMalformed

GOOGLE_AUTH_URI = 'https://accounts.google.com/o/oauth2/auth'
GOOGLE_TOKEN_URI = 'https://oauth2.googleapis.com/token'
DEFAULT_CALLBACK_PATH = '/oauth2callback'


def _utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC, the convention google-auth uses."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_expiry(value: Any) -> datetime:
    if isinstance(value, (int, float)):
        # epoch milliseconds, as written by the Node client
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        return _utc(datetime.fromisoformat(text))
    raise ValueError(f"unsupported expiry value: {value!r}")


@dataclass(frozen=True)
class ClientRegistration:
    """The OAuth client identity provisioned by the operator. Never modified."""
    client_id: str
    client_secret: str
    redirect_uris: Tuple[str, ...]
    auth_uri: str = GOOGLE_AUTH_URI
    token_uri: str = GOOGLE_TOKEN_URI
    client_type: str = 'web'

    @classmethod
    def from_client_secrets(cls, data: Mapping[str, Any]) -> "ClientRegistration":
        """
        Build a registration from a Google client secrets document.

        Args:
            data: Parsed JSON with a top-level ``web`` or ``installed`` section.

        Raises:
            RegistrationMalformed: If the section or a required field is missing.
        """
        if not isinstance(data, Mapping):
            raise RegistrationMalformed("OAuth client file must contain a JSON object")
        client_type = next((key for key in ('web', 'installed') if key in data), None)
        if client_type is None:
            raise RegistrationMalformed(
                "OAuth client file has neither a 'web' nor an 'installed' section"
            )
        section = data[client_type]
        if not isinstance(section, Mapping):
            raise RegistrationMalformed(f"OAuth client section '{client_type}' must be an object")

        missing = [key for key in ('client_id', 'client_secret') if not section.get(key)]
        redirect_uris = section.get('redirect_uris') or []
        if not isinstance(redirect_uris, list) or not all(isinstance(u, str) for u in redirect_uris):
            redirect_uris = []
        if not redirect_uris:
            missing.append('redirect_uris')
        if missing:
            raise RegistrationMalformed(
                f"OAuth client file is missing required field(s) in '{client_type}': {', '.join(missing)}"
            )

        return cls(
            client_id=section['client_id'],
            client_secret=section['client_secret'],
            redirect_uris=tuple(redirect_uris),
            auth_uri=section.get('auth_uri') or GOOGLE_AUTH_URI,
            token_uri=section.get('token_uri') or GOOGLE_TOKEN_URI,
            client_type=client_type,
        )

    @property
    def callback_path(self) -> str:
        """Path the local listener serves; taken from the first registered redirect URI."""
        path = urlsplit(self.redirect_uris[0]).path
        return path if path and path != '/' else DEFAULT_CALLBACK_PATH

    def redirect_uri_for(self, port: int) -> str:
        return f"http://localhost:{port}{self.callback_path}"

    def client_config(self) -> Dict[str, Any]:
        """Return the client secrets shape google_auth_oauthlib expects."""
        return {
            self.client_type: {
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'redirect_uris': list(self.redirect_uris),
                'auth_uri': self.auth_uri,
                'token_uri': self.token_uri,
            }
        }


@dataclass(frozen=True)
class TokenGrant:
    """
    A user's access/refresh credential pair.

    Grants are immutable values: a refresh produces a new grant that replaces the
    stored one only once it has been written in full.
    """
    access_token: str
    expiry: datetime
    refresh_token: Optional[str] = None
    scopes: Tuple[str, ...] = ()
    token_type: str = 'Bearer'

    def __post_init__(self):
        object.__setattr__(self, 'expiry', _utc(self.expiry))
        object.__setattr__(self, 'scopes', tuple(self.scopes))

    def expires_within(self, margin: timedelta, now: Optional[datetime] = None) -> bool:
        """True when the grant is expired or expires less than ``margin`` from ``now``."""
        now = _utc(now) if now is not None else datetime.now(timezone.utc)
        return self.expiry <= now + margin

    def to_dict(self) -> Dict[str, Any]:
        return {
            'token': self.access_token,
            'refresh_token': self.refresh_token,
            'scopes': list(self.scopes),
            'token_type': self.token_type,
            'expiry': self.expiry.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TokenGrant":
        """
        Parse a stored grant.

        Accepts both the layout written by ``to_dict`` and the Node client layout
        (``access_token``, space separated ``scope``, ``expiry_date`` in epoch ms).

        Raises:
            GrantMalformed: If the access token or expiry is missing or invalid.
        """
        if not isinstance(data, Mapping):
            raise GrantMalformed("Token file must contain a JSON object")

        access_token = data.get('token') or data.get('access_token')
        if not access_token:
            raise GrantMalformed("Token file has no access token")

        raw_expiry = data.get('expiry', data.get('expiry_date'))
        if raw_expiry is None:
            raise GrantMalformed("Token file has no expiry")
        try:
            expiry = _parse_expiry(raw_expiry)
        except (ValueError, OverflowError, OSError) as exc:
            raise GrantMalformed(f"Token file has an invalid expiry: {raw_expiry!r}") from exc

        scopes = data.get('scopes')
        if scopes is None:
            scopes = data.get('scope') or ''
        if isinstance(scopes, str):
            scopes = scopes.split()
        elif not isinstance(scopes, list) or not all(isinstance(s, str) for s in scopes):
            raise GrantMalformed("Token file has invalid scopes")

        return cls(
            access_token=access_token,
            expiry=expiry,
            refresh_token=data.get('refresh_token') or None,
            scopes=tuple(scopes),
            token_type=data.get('token_type') or 'Bearer',
        )

    @classmethod
    def expiring_in(cls, access_token: str, seconds: float, **kwargs) -> "TokenGrant":
        """Build a grant that expires ``seconds`` from now."""
        return cls(access_token=access_token,
                   expiry=datetime.now(timezone.utc) + timedelta(seconds=seconds),
                   **kwargs)
