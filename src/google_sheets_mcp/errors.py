"""
Exceptions raised while acquiring Google credentials.

Every error carries an operator-facing message: these flows are driven by a human
at a terminal and a browser, so the text says which file, variable or step failed.
"""


class SheetsAuthError(RuntimeError):
    """Base class for credential acquisition failures."""


# Configuration

class ConfigurationError(SheetsAuthError):
    """The delegated authorization path is configured incorrectly."""


class IncompleteConfiguration(ConfigurationError):
    """Only one of CREDENTIALS_PATH / TOKEN_PATH is set."""


class RegistrationNotFound(ConfigurationError):
    """No candidate path yielded a readable client registration."""

    def __init__(self, attempted):
        self.attempted = list(attempted)
        tried = ", ".join(str(p) for p in self.attempted) or "<none>"
        super().__init__(
            f"OAuth client credentials file not found. Tried: {tried}. "
            "Download an OAuth client JSON from the Google Cloud console and point "
            "CREDENTIALS_PATH at it."
        )


class RegistrationMalformed(ConfigurationError):
    """The registration file parsed but is missing required fields."""


# Storage

class GrantMalformed(SheetsAuthError):
    """The stored token file exists but cannot be parsed."""


class PersistenceError(SheetsAuthError):
    """A token grant could not be written to durable storage."""


# Authorization flow

class AuthorizationFailed(SheetsAuthError):
    """Terminal failure of one interactive authorization attempt."""


class NoAvailablePort(AuthorizationFailed):
    def __init__(self, start: int, end: int):
        self.start = start
        self.end = end
        super().__init__(
            f"No available port for the OAuth callback listener between {start} and {end}. "
            "Free one of these ports or set OAUTH_CALLBACK_PORT to another range."
        )


class ListenerBindFailed(AuthorizationFailed):
    """The callback listener could not bind its port."""


class AuthorizationInProgress(AuthorizationFailed):
    """Another authorization attempt already owns the callback listener."""


class UserDeniedOrProviderError(AuthorizationFailed):
    def __init__(self, error: str, description=None):
        self.error = error
        self.description = description
        detail = f" ({description})" if description else ""
        super().__init__(
            f"Google returned an authorization error: {error}{detail}. "
            "Restart the server to try again."
        )


class MissingAuthorizationCode(AuthorizationFailed):
    """The callback carried neither an error nor an authorization code."""


class StateMismatch(AuthorizationFailed):
    """The callback's state parameter does not belong to this attempt."""


class CodeExchangeFailed(AuthorizationFailed):
    """The token endpoint rejected the authorization code."""


class UserConsentTimeout(AuthorizationFailed):
    """No callback arrived before the configured consent timeout."""


# Startup and runtime

class StartupFailed(SheetsAuthError):
    """Startup could not produce a usable delegated credential."""


class AuthorizationRequired(SheetsAuthError):
    """The delegated grant can no longer be refreshed without user interaction."""


class NoCredentialsConfigured(SheetsAuthError):
    """None of the supported credential sources produced credentials."""
