"""
Exceptions raised while delivering sessions to the remote service.
"""


class SyncError(Exception):
    """Base class for sync failures."""


class TransportError(SyncError):
    """A request failed in a way that is worth retrying later.

    Covers HTTP errors, GraphQL errors and timeouts. Session uploads report
    these as a False result instead of raising.
    """


class AuthenticationError(SyncError):
    """Stored credentials are missing or can no longer be refreshed.

    The user has to authorize again; retrying will not help.
    """
