"""
Sync orchestration.

Reads dirty session rows from the store, delivers them through the
transport, and clears their needs_sync flag only after the remote service
accepted them. Rows that fail stay dirty and are retried by the next run.
"""

import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from ..config.loader import Settings
from ..storage.repository import (
    SYNC_ENABLED_KEY,
    USER_ID_KEY,
    USER_NAME_KEY,
    CarbonStore,
    open_store,
)
from .auth import CredentialManager
from .errors import AuthenticationError, SyncError, TransportError
from .transport import MAX_BATCH_SIZE, Credentials, RemoteTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncIdentity:
    """Who the synced sessions belong to on the remote service."""
    user_id: str
    user_name: str


def get_sync_config(store: CarbonStore) -> Optional[SyncIdentity]:
    """Return the sync identity, or None if sync is disabled or incomplete."""
    if store.get_config(SYNC_ENABLED_KEY) != "true":
        return None

    user_id = store.get_config(USER_ID_KEY)
    user_name = store.get_config(USER_NAME_KEY)
    if not user_id or not user_name:
        return None

    return SyncIdentity(user_id=user_id, user_name=user_name)


def default_user_name(user_id: str) -> str:
    return f"Anonymous {user_id[:8]}"


def enable_sync(store: CarbonStore, user_name: Optional[str] = None) -> Tuple[SyncIdentity, bool]:
    """Turn sync on, creating an anonymous identity on first use.

    An existing identity is kept; a given user name replaces its name.

    Returns:
        The active identity, and whether it was created by this call
    """
    user_id = store.get_config(USER_ID_KEY)
    is_new = not user_id
    if is_new:
        user_id = str(uuid.uuid4())
        store.set_config(USER_ID_KEY, user_id)

    if user_name:
        store.set_config(USER_NAME_KEY, user_name)
    elif not store.get_config(USER_NAME_KEY):
        store.set_config(USER_NAME_KEY, default_user_name(user_id))

    store.set_config(SYNC_ENABLED_KEY, "true")
    return SyncIdentity(user_id, store.get_config(USER_NAME_KEY)), is_new


def disable_sync(store: CarbonStore) -> None:
    store.set_config(SYNC_ENABLED_KEY, "false")


def _resolve_credentials(credentials: Optional[CredentialManager]) -> Optional[Credentials]:
    """Get request credentials; AuthenticationError propagates."""
    if credentials is None:
        return None
    return credentials.get_credentials()


def sync_session(
    store: CarbonStore,
    session_id: str,
    transport: RemoteTransport,
    credentials: Optional[CredentialManager] = None
) -> bool:
    """Deliver one session.

    Returns:
        True if the session was accepted and marked clean; False if sync is
        disabled, the session is unknown, or delivery failed

    Raises:
        AuthenticationError: If credentials cannot be refreshed
    """
    identity = get_sync_config(store)
    if identity is None:
        return False

    session = store.get_session(session_id)
    if session is None:
        logger.debug("Session %s not in store, nothing to sync", session_id)
        return False

    try:
        request_credentials = _resolve_credentials(credentials)
    except TransportError as e:
        logger.warning("Could not obtain credentials: %s", e)
        return False

    if not transport.upsert_session(identity.user_id, identity.user_name, session, request_credentials):
        return False

    return store.mark_sessions_synced([session]) == 1


def sync_unsynced_sessions(
    store: CarbonStore,
    transport: RemoteTransport,
    credentials: Optional[CredentialManager] = None,
    batch_size: int = MAX_BATCH_SIZE,
    pause: float = 0.1,
    sleep: Callable[[float], None] = time.sleep
) -> int:
    """Deliver every dirty session in batches.

    Stops at the first failed batch; that batch and everything after it
    stay dirty.

    Returns:
        Number of sessions marked clean by this run

    Raises:
        AuthenticationError: If credentials cannot be refreshed
    """
    identity = get_sync_config(store)
    if identity is None:
        return 0

    batch_size = max(1, min(batch_size, MAX_BATCH_SIZE))

    synced = 0
    while True:
        batch = store.get_unsynced_sessions(batch_size)
        if not batch:
            break

        # Expiry is checked before every request
        try:
            request_credentials = _resolve_credentials(credentials)
        except TransportError as e:
            logger.warning("Could not obtain credentials: %s", e)
            break

        if not transport.upsert_sessions(identity.user_id, identity.user_name, batch, request_credentials):
            logger.warning("Batch sync stopped after %d session(s)", synced)
            break

        synced += store.mark_sessions_synced(batch)

        if len(batch) < batch_size:
            break
        sleep(pause)

    return synced


def sync_session_if_enabled(settings: Settings, session_id: str) -> bool:
    """Background single-session sync. Logs failures, never raises."""
    try:
        with open_store(settings.database_path) as store:
            if get_sync_config(store) is None:
                return False
            with RemoteTransport(settings.api) as transport:
                return sync_session(store, session_id, transport, CredentialManager(store, transport))
    except AuthenticationError as e:
        logger.warning("Sync skipped, authorization required: %s", e)
    except (SyncError, sqlite3.Error) as e:
        logger.warning("Sync of session %s failed: %s", session_id, e)
    return False


def batch_sync_if_enabled(settings: Settings) -> int:
    """Background batch sync. Logs failures, never raises."""
    try:
        with open_store(settings.database_path) as store:
            if get_sync_config(store) is None:
                return 0
            with RemoteTransport(settings.api) as transport:
                return sync_unsynced_sessions(
                    store,
                    transport,
                    CredentialManager(store, transport),
                    batch_size=settings.sync.batch_size,
                    pause=settings.sync.batch_pause_seconds,
                )
    except AuthenticationError as e:
        logger.warning("Sync skipped, authorization required: %s", e)
    except (SyncError, sqlite3.Error) as e:
        logger.warning("Batch sync failed: %s", e)
    return 0
