"""Custom exceptions for the notestore persistence core.

Provides a structured exception hierarchy with error codes and
machine-readable error information, so the UI shell can tell a full disk
from a programming error without parsing messages.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Entity errors (1xxx)
    ENTITY_INVALID = 1001
    ENTITY_ID_MISSING = 1002
    ENTITY_KIND_UNKNOWN = 1003

    # Write path errors (2xxx)
    QUOTA_EXCEEDED = 2001
    VERIFICATION_FAILED = 2002
    BACKEND_TIMEOUT = 2003

    # Backend errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    BACKEND_UNAVAILABLE = 4004

    # Migration errors (5xxx)
    MIGRATION_FAILED = 5001

    # Snapshot errors (6xxx)
    SNAPSHOT_INVALID = 6001


class NoteStoreError(Exception):
    """Base exception for all notestore errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class InvalidEntityError(NoteStoreError):
    """Raised when an entity lacks its identity or a required field.

    Always raised before any I/O takes place.
    """

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.ENTITY_INVALID
    ):
        details = {}
        if kind:
            details["kind"] = kind
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.kind = kind
        self.field = field
        self.value = value


class QuotaExceededError(NoteStoreError):
    """Raised when the backend reports that it is out of space.

    Kept distinct from generic storage failures so the UI can prompt the
    user to clean up instead of retrying.
    """

    def __init__(
        self,
        message: str = "Storage quota exceeded",
        key: Optional[str] = None,
        requested_bytes: Optional[int] = None,
        quota_bytes: Optional[int] = None,
    ):
        details: Dict[str, Any] = {}
        if key:
            details["key"] = key
        if requested_bytes is not None:
            details["requested_bytes"] = requested_bytes
        if quota_bytes is not None:
            details["quota_bytes"] = quota_bytes

        super().__init__(message, code=ErrorCode.QUOTA_EXCEEDED, details=details)
        self.key = key
        self.requested_bytes = requested_bytes
        self.quota_bytes = quota_bytes


class VerificationFailedError(NoteStoreError):
    """Raised when a write appeared to succeed but the read-back disagrees."""

    def __init__(self, entity_id: str, reason: str = "entity not found after write"):
        super().__init__(
            f"Write of '{entity_id}' could not be verified: {reason}",
            code=ErrorCode.VERIFICATION_FAILED,
            details={"entity_id": entity_id, "reason": reason}
        )
        self.entity_id = entity_id
        self.reason = reason


class BackendTimeoutError(NoteStoreError):
    """Raised when a backend call does not complete within the timeout."""

    def __init__(self, operation: str, timeout: float, entity_id: Optional[str] = None):
        details: Dict[str, Any] = {"operation": operation, "timeout_seconds": timeout}
        if entity_id:
            details["entity_id"] = entity_id
        super().__init__(
            f"Backend call '{operation}' timed out after {timeout:g}s",
            code=ErrorCode.BACKEND_TIMEOUT,
            details=details
        )
        self.operation = operation
        self.timeout = timeout
        self.entity_id = entity_id


class StorageError(NoteStoreError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class BackendUnavailableError(StorageError):
    """Raised when the host file service is expected but cannot be reached."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(
            message,
            operation="probe",
            code=ErrorCode.BACKEND_UNAVAILABLE,
            original_error=original_error
        )


class MigrationFailedError(NoteStoreError):
    """Raised when legacy data is present but could not be copied.

    The legacy keys are left untouched so the next startup retries.

    Attributes:
        legacy_keys: Keys that held legacy data at the time of the attempt
        original_error: The underlying exception if applicable
    """

    def __init__(
        self,
        message: str,
        legacy_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details: Dict[str, Any] = {}
        if legacy_keys:
            details["legacy_keys"] = list(legacy_keys)
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=ErrorCode.MIGRATION_FAILED, details=details)
        self.legacy_keys = list(legacy_keys) if legacy_keys else []
        self.original_error = original_error


class SnapshotFormatError(NoteStoreError):
    """Raised when an import blob cannot be understood."""

    def __init__(self, message: str = "Invalid import data format",
                 original_error: Optional[Exception] = None):
        details = {}
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=ErrorCode.SNAPSHOT_INVALID, details=details)
        self.original_error = original_error
