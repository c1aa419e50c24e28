"""
Error handling framework for teamsync.

This module provides:
- A hierarchical exception tree rooted at TeamSyncError
- A closed ErrorKind taxonomy exposed to read-models and action outcomes
- Error context preservation for structured logging
- Backoff helpers used by reconnecting components
"""

from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ErrorKind(Enum):
    """Error kinds surfaced to callers and read-models."""
    TRANSPORT = "transport"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    QUOTA = "quota"
    CONFLICT = "conflict"
    DATA = "data"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    NETWORK = "network"
    REMOTE_STORE = "remote_store"
    OBJECT_STORAGE = "object_storage"
    REALTIME = "realtime"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class TeamSyncError(Exception):
    """Base exception for all teamsync errors."""

    code: str = "TEAMSYNC_ERROR"
    default_message: str = "An error occurred in teamsync"
    kind: ErrorKind = ErrorKind.INTERNAL
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    is_retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        status: Optional[int] = None,
    ):
        """Initialize error."""
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        self.status = status
        super().__init__(self.message)

    def get_suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error": {
                "code": self.code,
                "kind": self.kind.value,
                "message": self.message,
                "severity": self.severity.value,
                "category": self.category.value,
                "is_retryable": self.is_retryable,
                "status": self.status,
                "suggestions": self.get_suggestions(),
                "context": {
                    "timestamp": self.context.timestamp.isoformat(),
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "metadata": self.context.metadata
                }
            }
        }


class ConfigurationError(TeamSyncError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    kind = ErrorKind.CONFIGURATION
    category = ErrorCategory.CONFIGURATION

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Ensure backend.url and backend.api_key are set",
        ]


# Remote errors

class RemoteError(TeamSyncError):
    """Base class for failures reported by the remote store, storage or channel."""
    code = "REMOTE_ERROR"
    default_message = "Remote operation failed"
    category = ErrorCategory.REMOTE_STORE


class TransportError(RemoteError):
    """Network or channel unreachable. Recovered by the next signal or refresh."""
    code = "TRANSPORT_ERROR"
    default_message = "Remote backend unreachable"
    kind = ErrorKind.TRANSPORT
    category = ErrorCategory.NETWORK
    is_retryable = True

    def get_suggestions(self) -> List[str]:
        return [
            "Check your network connection",
            "Verify backend.url is reachable",
            "Check that the access token is still valid",
        ]


class SubscriptionError(TransportError):
    """Realtime channel join/leave failures."""
    code = "SUBSCRIPTION_ERROR"
    default_message = "Realtime subscription failed"
    category = ErrorCategory.REALTIME


class ValidationError(RemoteError):
    """Malformed input. Raised locally so the request is never sent."""
    code = "VALIDATION_ERROR"
    default_message = "Validation error"
    kind = ErrorKind.VALIDATION
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, field: str, value: Any, constraint: str, **kwargs):
        self.field = field
        self.value = value
        self.constraint = constraint
        message = f"Validation failed for field '{field}': {constraint}"
        super().__init__(message, **kwargs)

    def get_suggestions(self) -> List[str]:
        return [
            f"Check the value of field '{self.field}'",
            f"Ensure it meets the constraint: {self.constraint}"
        ]


class NotFoundError(RemoteError):
    """Remove target already gone."""
    code = "NOT_FOUND"
    default_message = "Target not found"
    kind = ErrorKind.NOT_FOUND
    severity = ErrorSeverity.INFO


class QuotaError(RemoteError):
    """Payload exceeds the storage size limit."""
    code = "QUOTA_EXCEEDED"
    default_message = "File exceeds the upload size limit"
    kind = ErrorKind.QUOTA
    category = ErrorCategory.OBJECT_STORAGE
    severity = ErrorSeverity.WARNING

    def __init__(self, size: Optional[int], limit: int, **kwargs):
        self.size = size
        self.limit = limit
        if size is None:
            message = f"Payload exceeds the {limit} byte limit"
        else:
            message = f"Payload of {size} bytes exceeds the {limit} byte limit"
        super().__init__(message, **kwargs)

    def get_suggestions(self) -> List[str]:
        return [f"Upload files no larger than {self.limit // (1024 * 1024)}MB"]


class ConflictError(RemoteError):
    """Insert rejected because of a uniqueness or state conflict."""
    code = "CONFLICT"
    default_message = "Conflicting write rejected by the remote store"
    kind = ErrorKind.CONFLICT


class RecordDecodeError(RemoteError):
    """Row from the remote store does not map onto a known record shape."""
    code = "RECORD_DECODE_ERROR"
    default_message = "Malformed record received from the remote store"
    kind = ErrorKind.DATA

    def __init__(self, collection: str, field: str, value: Any, reason: str, **kwargs):
        self.collection = collection
        self.field = field
        self.value = value
        message = f"Bad '{field}' in {collection} row ({reason}): {value!r}"
        super().__init__(message, **kwargs)


class SynchronizerError(TeamSyncError):
    """Collection synchronizer lifecycle misuse."""
    code = "SYNCHRONIZER_ERROR"
    default_message = "Synchronizer used outside its lifecycle"
    kind = ErrorKind.INTERNAL


def error_kind_of(error: BaseException) -> ErrorKind:
    """Map any exception onto the closed ErrorKind taxonomy."""
    if isinstance(error, TeamSyncError):
        return error.kind
    return ErrorKind.INTERNAL


class ErrorRecovery:
    """Error recovery strategies."""

    @staticmethod
    def backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
        """
        Exponential backoff delay for the given 1-based attempt.

        Args:
            attempt: Attempt number, starting at 1
            base_delay: Delay of the first attempt in seconds
            max_delay: Upper bound in seconds
        """
        if attempt < 1:
            return 0.0
        return min(base_delay * (2 ** (attempt - 1)), max_delay)


__all__ = [
    'TeamSyncError',
    'ErrorContext',
    'ErrorKind',
    'ErrorSeverity',
    'ErrorCategory',

    'ConfigurationError',
    'RemoteError',
    'TransportError',
    'SubscriptionError',
    'ValidationError',
    'NotFoundError',
    'QuotaError',
    'ConflictError',
    'RecordDecodeError',
    'SynchronizerError',

    'error_kind_of',
    'ErrorRecovery',
]
