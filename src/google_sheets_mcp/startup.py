"""
Startup orchestration for the delegated authorization path.

Runs once before the server accepts tool calls and drives the stored grant to a
usable state: reuse it, refresh it, or run the interactive flow.
"""

import asyncio
import enum
import logging
import webbrowser
from dataclasses import dataclass
from typing import Callable, List, Optional

from .config import OAuthSettings
from .errors import (
    GrantMalformed,
    IncompleteConfiguration,
    PersistenceError,
    RegistrationMalformed,
    RegistrationNotFound,
    SheetsAuthError,
    StartupFailed,
)
from .models import ClientRegistration, TokenGrant
from .oauth_client import GoogleOAuthClient
from .oauth_flow import AuthorizationFlow
from .refresh import RefreshFailed, TokenRefresher
from .store import CredentialStore

logger = logging.getLogger(__name__)


class StartupState(enum.Enum):
    CHECKING_CONFIGURATION = "checking_configuration"
    CHECKING_GRANT = "checking_grant"
    ALREADY_VALID = "already_valid"
    NEEDS_REFRESH = "needs_refresh"
    NEEDS_FULL_FLOW = "needs_full_flow"
    READY = "ready"
    CONFIGURATION_ABSENT = "configuration_absent"
    STARTUP_FAILED = "startup_failed"


@dataclass
class StartupResult:
    """Terminal outcome of a startup run; ``grant`` and ``registration`` are set when READY."""
    state: StartupState
    path: List[StartupState]
    registration: Optional[ClientRegistration] = None
    grant: Optional[TokenGrant] = None

    @property
    def ready(self) -> bool:
        return self.state is StartupState.READY


class StartupOrchestrator:
    """
    Decides between reusing, refreshing and re-authorizing the stored grant.

    The refresher and flow are built per registration through the factory
    arguments so they can be replaced in tests.
    """

    def __init__(self,
                 settings: OAuthSettings,
                 store: Optional[CredentialStore] = None,
                 client_factory: Optional[Callable[[ClientRegistration], object]] = None,
                 refresher_factory: Optional[Callable[[ClientRegistration], TokenRefresher]] = None,
                 flow_factory: Optional[Callable[[ClientRegistration], AuthorizationFlow]] = None):
        self.settings = settings
        self.store = store or CredentialStore(settings.credentials_path, settings.token_path)
        self._client_factory = client_factory or (lambda reg: GoogleOAuthClient(reg, settings.scopes))
        self._refresher_factory = refresher_factory or self._default_refresher
        self._flow_factory = flow_factory or self._default_flow
        self.state: Optional[StartupState] = None
        self.path: List[StartupState] = []
        self._started = False

    def _default_refresher(self, registration: ClientRegistration) -> TokenRefresher:
        return TokenRefresher(self._client_factory(registration), self.store)

    def _default_flow(self, registration: ClientRegistration) -> AuthorizationFlow:
        return AuthorizationFlow(
            registration,
            self.store,
            self._client_factory(registration),
            callback_port=self.settings.callback_port,
            port_search_width=self.settings.port_search_width,
            consent_timeout=self.settings.consent_timeout,
            open_browser=webbrowser.open if self.settings.open_browser else None,
        )

    def _enter(self, state: StartupState) -> None:
        logger.debug("OAuth startup: %s", state.value)
        self.state = state
        self.path.append(state)

    def _result(self, registration=None, grant=None) -> StartupResult:
        return StartupResult(self.state, list(self.path), registration, grant)

    def _fail(self, message: str, cause: BaseException) -> StartupFailed:
        self._enter(StartupState.STARTUP_FAILED)
        return StartupFailed(f"{message}: {cause}")

    async def run(self) -> StartupResult:
        """
        Run the startup state machine to a terminal state.

        Returns:
            A READY result carrying the usable grant, or CONFIGURATION_ABSENT when the
            delegated path is not configured and another credential source applies.

        Raises:
            StartupFailed: Configuration is broken or no usable grant could be obtained.
        """
        if self._started:
            raise RuntimeError("OAuth startup has already run in this process")
        self._started = True

        self._enter(StartupState.CHECKING_CONFIGURATION)
        if not self.settings.configured:
            self._enter(StartupState.CONFIGURATION_ABSENT)
            return self._result()
        if not self.settings.complete:
            missing = 'TOKEN_PATH' if self.settings.credentials_path else 'CREDENTIALS_PATH'
            present = 'CREDENTIALS_PATH' if self.settings.credentials_path else 'TOKEN_PATH'
            cause = IncompleteConfiguration(f"{present} is set but {missing} is not; set both or neither")
            raise self._fail("OAuth is misconfigured", cause) from cause

        try:
            registration = self.store.load_registration()
        except RegistrationNotFound as e:
            logger.warning("%s", e)
            self._enter(StartupState.CONFIGURATION_ABSENT)
            return self._result()
        except RegistrationMalformed as e:
            raise self._fail("OAuth client credentials are invalid", e) from e

        self._enter(StartupState.CHECKING_GRANT)
        try:
            grant = self.store.load_grant()
        except GrantMalformed as e:
            logger.warning("Ignoring unreadable OAuth token, re-authorizing: %s", e)
            grant = None

        if grant is None:
            return await self._full_flow(registration)

        if not grant.expires_within(self.settings.refresh_margin):
            self._enter(StartupState.ALREADY_VALID)
            logger.info("OAuth token is valid until %s", grant.expiry.isoformat())
            self._enter(StartupState.READY)
            return self._result(registration, grant)

        self._enter(StartupState.NEEDS_REFRESH)
        logger.info("OAuth token is expired or expires soon, refreshing")
        refresher = self._refresher_factory(registration)
        try:
            refreshed = await asyncio.to_thread(refresher.refresh, grant)
        except PersistenceError as e:
            raise self._fail("Could not save the refreshed OAuth token", e) from e
        if isinstance(refreshed, RefreshFailed):
            logger.warning("Token refresh failed (%s); starting a new authorization", refreshed.reason)
            return await self._full_flow(registration)

        self._enter(StartupState.READY)
        return self._result(registration, refreshed)

    async def _full_flow(self, registration: ClientRegistration) -> StartupResult:
        self._enter(StartupState.NEEDS_FULL_FLOW)
        flow = self._flow_factory(registration)
        try:
            grant = await flow.run()
        except SheetsAuthError as e:
            raise self._fail("OAuth authorization failed", e) from e
        self._enter(StartupState.READY)
        return self._result(registration, grant)
