"""
Credential management for the remote accounting service.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from ..storage.repository import CarbonStore
from .errors import AuthenticationError
from .transport import Credentials, RemoteTransport

logger = logging.getLogger(__name__)

# Refresh this long before the access token actually expires
EXPIRY_BUFFER = timedelta(seconds=60)
ROTATED_REFRESH_TOKEN_LIFETIME = timedelta(days=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialManager:
    """Provides valid request credentials, refreshing them when needed.

    Args:
        store: Open store holding the tokens
        transport: Transport used for refresh and organization lookup
        now: Clock, replaceable in tests
    """

    def __init__(
        self,
        store: CarbonStore,
        transport: RemoteTransport,
        now: Callable[[], datetime] = _utcnow
    ):
        self.store = store
        self.transport = transport
        self.now = now

    def get_access_token(self) -> Optional[str]:
        """Return a valid access token, or None if never authorized.

        Raises:
            AuthenticationError: If the refresh token has expired or was rejected
            TransportError: If the refresh request failed transiently
        """
        auth = self.store.get_auth_config()
        if auth is None:
            return None

        now = self.now()
        if auth.access_token_expires_at - EXPIRY_BUFFER > now:
            return auth.access_token

        if auth.refresh_token_expires_at <= now:
            raise AuthenticationError("Refresh token has expired; authorize again")

        logger.debug("Access token expired, refreshing")
        grant = self.transport.refresh_access_token(auth.refresh_token)

        if grant.refresh_token:
            refresh_token = grant.refresh_token
            refresh_expires_at = now + ROTATED_REFRESH_TOKEN_LIFETIME
        else:
            refresh_token = auth.refresh_token
            refresh_expires_at = auth.refresh_token_expires_at

        self.store.update_auth_tokens(
            grant.access_token,
            refresh_token,
            now + timedelta(seconds=grant.expires_in),
            refresh_expires_at,
        )
        return grant.access_token

    def get_organization_id(self, access_token: str) -> str:
        """Return the cached organization id, looking it up once."""
        auth = self.store.get_auth_config()
        if auth and auth.organization_id:
            return auth.organization_id

        organization_id = self.transport.fetch_organization_id(access_token)
        self.store.save_organization_id(organization_id)
        return organization_id

    def get_credentials(self) -> Optional[Credentials]:
        """Credentials for GraphQL calls, or None when not authorized."""
        access_token = self.get_access_token()
        if access_token is None:
            return None
        return Credentials(access_token, self.get_organization_id(access_token))
