"""
Exceptions for sync operations.
"""


class SyncError(Exception):
    """Base exception for sync operations."""

    pass


class SyncInProgressError(SyncError):
    """A full sync is already running and its lock is not stale."""

    pass


class SyncNotFoundError(SyncError):
    """No active sync with the given id."""

    pass


class SyncCancelledError(SyncError):
    """Raised inside a sync loop once its session has been cancelled."""

    pass


class CredentialsMissingError(SyncError):
    """Jira credentials are not configured."""

    pass
