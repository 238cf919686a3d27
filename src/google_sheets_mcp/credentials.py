"""
Credential acquisition and the authenticated client facade.

Whatever path produced the credential (service account key, base64 service
account, delegated user consent, Application Default Credentials), callers get a
``Credential`` exposing the same ``as_auth_header()`` / ``service()`` capability.
"""

import asyncio
import base64
import binascii
import json
import logging
import os
import threading
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

import google.auth
from google.auth.exceptions import DefaultCredentialsError
from google.auth.transport.requests import Request
from google.oauth2 import service_account
from googleapiclient.discovery import build

from .config import Settings
from .errors import AuthorizationRequired, NoCredentialsConfigured, SheetsAuthError
from .models import ClientRegistration, TokenGrant
from .oauth_client import GoogleOAuthClient, credentials_from_grant
from .refresh import RefreshFailed, TokenRefresher
from .startup import StartupOrchestrator

logger = logging.getLogger(__name__)

AUTHORIZE_HELP = "Run `google-sheets-mcp authorize` to sign in again."


class Credential:
    """Base for the credential variants handed to the spreadsheet tools."""

    source = "unknown"

    def __init__(self):
        self._services: Dict[Tuple[str, str, int], Any] = {}
        self._generation = 0

    def google_credentials(self):
        raise NotImplementedError

    def _access_token(self) -> str:
        raise NotImplementedError

    def as_auth_header(self) -> Dict[str, str]:
        """Return an ``Authorization`` header carrying a currently valid access token."""
        return {"Authorization": f"Bearer {self._access_token()}"}

    def service(self, name: str, version: str):
        """Return a googleapiclient service, rebuilt whenever the underlying token is replaced."""
        creds = self.google_credentials()
        key = (name, version, self._generation)
        if key not in self._services:
            self._services = {k: v for k, v in self._services.items() if k[2] == self._generation}
            self._services[key] = build(name, version, credentials=creds, cache_discovery=False)
        return self._services[key]


class ServiceAccountCredential(Credential):
    """Service account or Application Default Credentials; google-auth refreshes these itself."""

    def __init__(self, credentials, source: str):
        super().__init__()
        self._credentials = credentials
        self.source = source

    def google_credentials(self):
        return self._credentials

    def _access_token(self) -> str:
        if not self._credentials.valid:
            self._credentials.refresh(Request())
        return self._credentials.token


class DelegatedCredential(Credential):
    """
    A user grant obtained through the consent flow.

    The grant is refreshed on demand through the TokenRefresher once it enters the
    safety margin, so every refresh is persisted.
    """

    source = "oauth"

    def __init__(self,
                 grant: TokenGrant,
                 registration: ClientRegistration,
                 refresher: TokenRefresher,
                 refresh_margin: timedelta = timedelta(minutes=5)):
        super().__init__()
        self.grant = grant
        self.registration = registration
        self.refresher = refresher
        self.refresh_margin = refresh_margin
        self._lock = threading.Lock()

    def ensure_fresh(self) -> TokenGrant:
        """
        Return a grant that is valid beyond the safety margin.

        Raises:
            AuthorizationRequired: The refresh token was rejected; the user must re-authorize.
        """
        with self._lock:
            if self.grant.expires_within(self.refresh_margin):
                result = self.refresher.refresh(self.grant)
                if isinstance(result, RefreshFailed):
                    raise AuthorizationRequired(
                        f"Google OAuth token could not be refreshed ({result.reason}). {AUTHORIZE_HELP}"
                    )
                self.grant = result
                self._generation += 1
            return self.grant

    def google_credentials(self):
        return credentials_from_grant(self.ensure_fresh(), self.registration)

    def _access_token(self) -> str:
        return self.ensure_fresh().access_token


def _service_account_from_config(config: str, scopes) -> ServiceAccountCredential:
    try:
        info = json.loads(base64.b64decode(config))
    except (binascii.Error, ValueError) as e:
        raise NoCredentialsConfigured(f"CREDENTIALS_CONFIG is not base64-encoded service account JSON: {e}") from e
    creds = service_account.Credentials.from_service_account_info(info, scopes=scopes)
    logger.info("Using service account authentication from CREDENTIALS_CONFIG")
    return ServiceAccountCredential(creds, source="service_account_config")


def _service_account_from_file(path: str, scopes) -> Optional[ServiceAccountCredential]:
    try:
        creds = service_account.Credentials.from_service_account_file(path, scopes=scopes)
    except (OSError, ValueError) as e:
        logger.warning("Error using service account authentication from %s: %s", path, e)
        return None
    logger.info("Using service account authentication from %s", path)
    return ServiceAccountCredential(creds, source="service_account_file")


def _application_default(scopes) -> ServiceAccountCredential:
    # ADC checks GOOGLE_APPLICATION_CREDENTIALS, gcloud auth, and the metadata service
    try:
        creds, project = google.auth.default(scopes=scopes)
    except DefaultCredentialsError as e:
        raise NoCredentialsConfigured(
            "All authentication methods failed. Configure one of:\n"
            "- CREDENTIALS_CONFIG: base64-encoded service account key\n"
            "- SERVICE_ACCOUNT_PATH: path to a service account key file\n"
            "- CREDENTIALS_PATH and TOKEN_PATH: OAuth client file and token location\n"
            "- GOOGLE_APPLICATION_CREDENTIALS or `gcloud auth application-default login`"
        ) from e
    logger.info("Using Application Default Credentials for project: %s", project)
    return ServiceAccountCredential(creds, source="application_default")


class CredentialResolver:
    """
    Picks the credential source once per process.

    Order: CREDENTIALS_CONFIG, SERVICE_ACCOUNT_PATH, delegated OAuth
    (CREDENTIALS_PATH + TOKEN_PATH), Application Default Credentials.
    """

    def __init__(self, settings: Optional[Settings] = None, orchestrator: Optional[StartupOrchestrator] = None):
        self._settings = settings
        self._orchestrator = orchestrator
        self._credential: Optional[Credential] = None
        self._lock: Optional[asyncio.Lock] = None

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = Settings.from_env()
        return self._settings

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    def resolve(self) -> Credential:
        """Blocking variant of ``aresolve`` for use outside an event loop."""
        if self._credential is not None:
            return self._credential
        return asyncio.run(self.aresolve())

    async def aresolve(self) -> Credential:
        """
        Acquire the credential, running OAuth startup if the delegated path applies.

        Raises:
            StartupFailed: The delegated path is configured but could not be made ready.
            NoCredentialsConfigured: No source produced credentials.
        """
        if self._credential is not None:
            return self._credential
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._credential is None:
                self._credential = await self._acquire()
        return self._credential

    async def _acquire(self) -> Credential:
        settings = self.settings
        scopes = list(settings.oauth.scopes)

        if settings.credentials_config:
            return _service_account_from_config(settings.credentials_config, scopes)

        # Check for explicit service account authentication first (custom SERVICE_ACCOUNT_PATH)
        if settings.service_account_path and os.path.exists(settings.service_account_path):
            credential = _service_account_from_file(settings.service_account_path, scopes)
            if credential is not None:
                return credential

        orchestrator = self._orchestrator or StartupOrchestrator(settings.oauth)
        result = await orchestrator.run()
        if result.ready:
            logger.info("Using OAuth authentication with stored token")
            refresher = TokenRefresher(GoogleOAuthClient(result.registration, scopes), orchestrator.store)
            return DelegatedCredential(result.grant, result.registration, refresher,
                                       refresh_margin=settings.oauth.refresh_margin)

        logger.info("OAuth not configured; trying Application Default Credentials")
        return _application_default(scopes)


def describe_failure(error: SheetsAuthError) -> str:
    """Operator-facing text for a credential failure, including the cause chain."""
    lines = [str(error)]
    cause = error.__cause__
    while cause is not None and str(cause) not in lines[-1]:
        lines.append(f"  caused by: {cause}")
        cause = cause.__cause__
    return "\n".join(lines)
