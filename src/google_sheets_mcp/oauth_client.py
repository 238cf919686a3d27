"""
Token endpoint calls for the delegated authorization path.

Wraps google_auth_oauthlib and google-auth so the flow and refresh engines only
deal with ``TokenGrant`` values.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence, Tuple

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from .models import ClientRegistration, TokenGrant

# Google omits expires_in only in unusual cases; assume the standard one hour.
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


def grant_from_credentials(creds: Credentials,
                           fallback: Optional[TokenGrant] = None) -> TokenGrant:
    """Convert google-auth user credentials to a TokenGrant, keeping fields the server did not reissue."""
    expiry = creds.expiry or datetime.now(timezone.utc) + DEFAULT_TOKEN_LIFETIME
    refresh_token = creds.refresh_token or (fallback.refresh_token if fallback else None)
    scopes = tuple(getattr(creds, 'granted_scopes', None) or creds.scopes or (fallback.scopes if fallback else ()))
    return TokenGrant(
        access_token=creds.token,
        expiry=expiry,
        refresh_token=refresh_token,
        scopes=scopes,
    )


def credentials_from_grant(grant: TokenGrant, registration: ClientRegistration) -> Credentials:
    """Build google-auth user credentials usable by googleapiclient."""
    return Credentials(
        token=grant.access_token,
        refresh_token=grant.refresh_token,
        token_uri=registration.token_uri,
        client_id=registration.client_id,
        client_secret=registration.client_secret,
        scopes=list(grant.scopes) or None,
        # google-auth compares against naive UTC datetimes
        expiry=grant.expiry.astimezone(timezone.utc).replace(tzinfo=None),
    )


class GoogleOAuthClient:
    """Consent URL generation, code exchange and refresh against Google's OAuth endpoints."""

    def __init__(self, registration: ClientRegistration, scopes: Sequence[str]):
        self.registration = registration
        self.scopes = list(scopes)
        self._flow: Optional[Flow] = None

    def _new_flow(self, redirect_uri: str) -> Flow:
        return Flow.from_client_config(
            self.registration.client_config(),
            scopes=self.scopes,
            redirect_uri=redirect_uri,
        )

    def consent_url(self, redirect_uri: str) -> Tuple[str, str]:
        """
        Return ``(url, state)`` for the consent page.

        Consent is always re-prompted so Google reissues a refresh token even when
        the user approved this client before.
        """
        self._flow = self._new_flow(redirect_uri)
        return self._flow.authorization_url(access_type='offline', prompt='consent')

    def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        """Exchange an authorization code; the flow that issued the consent URL holds the PKCE verifier."""
        flow = self._flow
        if flow is None or flow.redirect_uri != redirect_uri:
            flow = self._new_flow(redirect_uri)
        flow.fetch_token(code=code)
        return grant_from_credentials(flow.credentials)

    def refresh(self, grant: TokenGrant) -> TokenGrant:
        creds = credentials_from_grant(grant, self.registration)
        creds.refresh(Request())
        return grant_from_credentials(creds, fallback=grant)
