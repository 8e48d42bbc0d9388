"""
Analytics exceptions

Only BackendUnavailableError is allowed to reach callers of the
integration facade; everything else is caught and logged inside the
pipeline.
"""


class AnalyticsError(Exception):
    """Base class for analytics pipeline errors"""


class BackendUnavailableError(AnalyticsError):
    """Raised when a query needs a storage backend and none is configured"""

    def __init__(self, message: str = "No storage backend is configured"):
        super().__init__(message)
        self.message = message


class StorageError(AnalyticsError):
    """Raised by storage backends for unrecoverable persistence failures"""


__all__ = ["AnalyticsError", "BackendUnavailableError", "StorageError"]
