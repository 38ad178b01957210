"""Error taxonomy for record sync.

Expected failures are reported as structured results by the orchestrator,
linker and webhook processor. These exceptions travel between the
collaborators (store, remote sources) and those callers.
"""

from __future__ import annotations


class RecordSyncError(Exception):
    """Base class for all record-sync errors."""


class NotFoundError(RecordSyncError):
    """Raised when a referenced record does not exist locally or remotely.

    Attributes:
        entity_type: Entity type that was looked up.
        remote_id: Identifier that was not found.
    """

    def __init__(self, entity_type: str, remote_id: str) -> None:
        self.entity_type = entity_type
        self.remote_id = remote_id
        super().__init__(f"{entity_type} '{remote_id}' not found")


class RemoteApiError(RecordSyncError):
    """Raised when a remote system rejects or fails a call.

    Attributes:
        status_code: HTTP status returned by the remote, None for transport failures.
        message: Error text from the remote or the transport layer.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        self.message = message
        prefix = f"[{status_code}] " if status_code is not None else ""
        super().__init__(f"{prefix}{message}")

    @property
    def is_transient(self) -> bool:
        """True for transport failures, rate limiting and 5xx responses."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class AuthExpiredError(RemoteApiError):
    """Raised when a remote's credentials are expired or revoked.

    The owning scheduled job disables itself when it sees this error.
    """

    def __init__(self, message: str = "authentication expired", status_code: int | None = 401) -> None:
        super().__init__(message, status_code=status_code)


class RecordValidationError(RecordSyncError):
    """Raised when a record lacks a field required to create it remotely.

    Attributes:
        field: The missing field name.
    """

    def __init__(self, field: str, message: str | None = None) -> None:
        self.field = field
        super().__init__(message or f"missing required field '{field}'")


class DuplicateEventError(RecordSyncError):
    """Raised by a store when an idempotency key already exists.

    Attributes:
        key: The colliding idempotency key.
    """

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"idempotency key '{key}' already exists")


class LinkConflictError(RecordSyncError):
    """Raised when a source record is already linked to a different target record.

    Attributes:
        source_remote_id: The source record.
        target_remote_id: The target it is currently linked to.
    """

    def __init__(self, source_remote_id: str, target_remote_id: str) -> None:
        self.source_remote_id = source_remote_id
        self.target_remote_id = target_remote_id
        super().__init__(f"'{source_remote_id}' is already linked to '{target_remote_id}'")
