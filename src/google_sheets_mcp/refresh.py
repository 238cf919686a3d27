"""
Non-interactive renewal of an expiring token grant.
"""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Union

from .models import TokenGrant
from .store import CredentialStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefreshFailed:
    """Outcome of a refresh that did not produce a new grant; the caller falls back to a full flow."""
    reason: str

    def __bool__(self) -> bool:
        return False


class TokenRefresher:
    """
    Exchanges a grant's refresh token for a new access token and persists the result.

    ``client`` is the token endpoint collaborator; only its ``refresh(grant)`` method
    is used. Refreshes are serialized so two callers cannot persist divergent grants.
    """

    def __init__(self, client, store: CredentialStore):
        self.client = client
        self.store = store
        self._lock = threading.Lock()

    def refresh(self, grant: TokenGrant) -> Union[TokenGrant, RefreshFailed]:
        """
        Refresh ``grant``.

        Returns:
            The new, already persisted grant, or RefreshFailed when the refresh token
            is missing, revoked or the endpoint could not be reached.

        Raises:
            PersistenceError: The new grant was issued but could not be saved.
        """
        if not grant.refresh_token:
            logger.warning("Stored OAuth token has no refresh token; re-authorization required")
            return RefreshFailed("no refresh token stored")

        with self._lock:
            logger.info("Refreshing OAuth access token")
            try:
                renewed = self.client.refresh(grant)
            except Exception as e:
                logger.warning("Token refresh failed: %s", e)
                return RefreshFailed(str(e) or type(e).__name__)

            if not renewed.refresh_token:
                renewed = replace(renewed, refresh_token=grant.refresh_token)
            if not renewed.scopes:
                renewed = replace(renewed, scopes=grant.scopes)

            self.store.save_grant(renewed)
            logger.info("OAuth token refreshed; valid until %s", renewed.expiry.isoformat())
            return renewed
