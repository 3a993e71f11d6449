# horizon/core/errors.py
"""
Error taxonomy for the sync engine.

  - LocalStorageError: fatal to the operation that triggered it.
  - RemoteSyncError / CloudKitSyncError: raised inside the backend clients,
    always caught and logged by the engine once the local write succeeded.
  - DocumentError: a remote document could not be decoded.

Validation failures, token failures and not-found lookups are not
exceptions; they come back as False / None / UserValidationError.
"""


class HorizonError(Exception):
    """Base class for all errors raised by the horizon package."""


class LocalStorageError(HorizonError):
    """The embedded database failed to read or persist changes."""

    def __init__(self, cause: BaseException, message: str = "Local storage error"):
        self.cause = cause
        super().__init__(f"{message}: {cause}")


class RemoteSyncError(HorizonError):
    """A call to the remote document store failed."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Remote sync failed during {operation}{detail}")


class CloudKitSyncError(HorizonError):
    """A CloudKit write failed (after or before retries)."""


class DocumentError(HorizonError):
    """A remote document is missing required fields or has mistyped values."""

    def __init__(self, group: str, fields: list[str]):
        self.group = group
        self.fields = fields
        joined = ", ".join(fields) if fields else "unknown"
        super().__init__(f"Missing required {group} fields: {joined}")
