from typing import Optional


class SyncError(Exception):
    """Base for errors that map to a `{success: false, message}` response."""

    status_code = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AuthError(SyncError):
    status_code = 401


class SyncValidationError(SyncError):
    status_code = 400


class StoreError(SyncError):
    status_code = 500


class DecodeError(SyncError):
    """A stored JSON field could not be parsed. Logged by the resolver, never returned."""

    status_code = 500

    def __init__(self, collection: str, field: str, row_id, cause: Exception):
        super().__init__(f"failed to decode {collection}.{field} (id={row_id}): {cause}")
        self.collection = collection
        self.field = field
        self.row_id = row_id
