"""
Delivery of local session accounting to the remote service.
"""

from .errors import AuthenticationError, SyncError, TransportError
from .orchestrator import (
    SyncIdentity,
    batch_sync_if_enabled,
    disable_sync,
    enable_sync,
    get_sync_config,
    sync_session,
    sync_session_if_enabled,
    sync_unsynced_sessions,
)
from .transport import RemoteTransport

__all__ = [
    "AuthenticationError",
    "SyncError",
    "TransportError",
    "SyncIdentity",
    "RemoteTransport",
    "get_sync_config",
    "sync_session",
    "sync_unsynced_sessions",
    "sync_session_if_enabled",
    "batch_sync_if_enabled",
    "enable_sync",
    "disable_sync",
]
