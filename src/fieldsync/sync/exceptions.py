"""Exceptions raised by the sync layer."""


class FieldSyncError(Exception):
    """Base class for fieldsync errors."""


class UploadError(FieldSyncError):
    """An upload attempt failed (network error, non-2xx response, bad body)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UploadTimeoutError(UploadError):
    """An upload attempt exceeded the configured timeout."""


class StoreError(FieldSyncError):
    """The local asset store could not complete an operation."""
