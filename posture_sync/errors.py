# Error Taxonomy - exceptions raised across the measurement and sync pipeline
from typing import Optional


class PostureSyncError(Exception):
    """Base class for pipeline errors"""

    retryable = False
    kind = "error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class InputRejected(PostureSyncError):
    """Malformed, low-confidence or out-of-order landmark frame. Dropped, never fatal."""

    kind = "input_rejected"


class AuthRequired(PostureSyncError):
    """No valid session at flush time. The user must re-authenticate."""

    kind = "auth_required"


class ValidationRejected(PostureSyncError):
    """Payload failed the summary schema. Resending identical data cannot succeed."""

    kind = "validation_rejected"


class TransientSyncError(PostureSyncError):
    """Network, timeout or server-side failure. Retried with backoff."""

    retryable = True
    kind = "transient"


class StorageFailure(PostureSyncError):
    """Local durable write or read failed. Retried on the next checkpoint."""

    retryable = True
    kind = "storage_failure"
