"""
Custom exceptions for the catalog bootstrap pipeline with structured error context.

Every component raises a subclass of BootstrapException carrying a context
dictionary for debugging. The orchestrator wraps whatever reaches it in a
BootstrapError that records the phase the failure happened in.

Exception Hierarchy:
    BootstrapException (base)
    ├── RetryableError / NonRetryableError (mixins)
    ├── TransferError              (fetch, retryable)
    ├── ReleaseNotFoundError       (release has no catalog asset)
    ├── IntegrityError             (size / hash mismatch)
    ├── CorruptArchiveError        (archive unreadable or malformed)
    ├── DiskSpaceError             (staging storage exhausted)
    ├── CatalogFormatError         (parser tolerance exceeded)
    ├── StorageError               (transaction failure)
    ├── CatalogLockedError         (another run holds the writer lock)
    ├── BootstrapCancelled         (cooperative cancellation)
    └── BootstrapError             (phase-tagged wrapper used by the runner)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class BootstrapException(Exception):
    """
    Base exception for all bootstrap-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (url, path, phase, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    @property
    def kind(self) -> str:
        """Stable error kind exposed to progress subscribers."""
        return self.__class__.__name__

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(BootstrapException):
    """
    Mixin for errors that the fetcher may retry with backoff.

    Use this for transient errors like:
    - Network timeouts and dropped connections
    - Rate limiting (HTTP 429)
    - Server errors (HTTP 5xx)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retryable: bool = True
    ):
        super().__init__(message, context, original_exception)
        self.retryable = retryable


class NonRetryableError(BootstrapException):
    """
    Mixin for errors that end the run without any retry.

    Use this for permanent errors like:
    - Hash or size mismatch of a downloaded archive
    - Corrupt archives and exhausted disk space
    - Catalog format drift beyond tolerance
    """
    pass


# ============================================================================
# Fetch Errors
# ============================================================================

class TransferError(RetryableError):
    """
    Raised when the remote archive cannot be transferred.

    Context should include:
        - url: The archive URL
        - status_code: HTTP status code (if applicable)
        - attempt: Attempt number that failed
        - offset: Byte offset the attempt started from

    ``retryable`` is False for client errors (HTTP 4xx other than 408/429)
    which no amount of retrying will fix.
    """
    pass


class ReleaseNotFoundError(NonRetryableError):
    """
    Raised when the latest release carries no catalog archive asset.

    Context should include:
        - releases_url: The release endpoint queried
        - tag_name: Release tag (if any)
    """
    pass


class IntegrityError(NonRetryableError):
    """
    Raised when a downloaded archive does not match its reference.

    Context should include:
        - path: The staged archive path
        - expected_size / actual_size
        - expected_sha256 / actual_sha256
    """
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class CorruptArchiveError(NonRetryableError):
    """
    Raised when the archive cannot be fully read or lacks the catalog layout.

    Context should include:
        - archive_path: Path to the archive
        - entry_name: Entry that failed (if applicable)
    """
    pass


class DiskSpaceError(NonRetryableError):
    """
    Raised when staging storage cannot hold the extracted catalog.

    Context should include:
        - staging_dir: Staging directory
        - required_bytes / free_bytes
    """
    pass


# ============================================================================
# Parse / Storage Errors
# ============================================================================

class CatalogFormatError(NonRetryableError):
    """
    Raised when more records fail structural validation than tolerated.

    Context should include:
        - record_type: "show" or "recording"
        - skipped: Number of skipped records
        - tolerance: Configured tolerance
        - last_error: Last validation error message
    """
    pass


class StorageError(NonRetryableError):
    """
    Raised when a local storage transaction fails and is rolled back.

    Context should include:
        - operation: Operation that failed (UPSERT, DELETE, SELECT)
        - table_name: Name of the table
    """
    pass


# ============================================================================
# Run Control
# ============================================================================

class CatalogLockedError(NonRetryableError):
    """
    Raised when another bootstrap, possibly in another process, holds the
    catalog writer lock.

    Context should include:
        - holder: Owner of the lock (run id)
        - pid / hostname: Process holding the lock
        - heartbeat_at: Last time the holder renewed the lock
    """
    pass


class BootstrapCancelled(NonRetryableError):
    """Raised at a cancellation checkpoint once cancellation was requested."""
    pass


class BootstrapError(BootstrapException):
    """
    Phase-tagged failure surfaced by the orchestrator.

    Attributes:
        phase: The phase that was active when the failure occurred
        cause: The component-level exception
    """

    def __init__(self, phase, cause: Exception):
        self.phase = phase
        self.cause = cause
        message = cause.message if isinstance(cause, BootstrapException) else str(cause)
        super().__init__(
            message or type(cause).__name__,
            context={"phase": getattr(phase, "value", phase)},
            original_exception=cause
        )

    @property
    def kind(self) -> str:
        if isinstance(self.cause, BootstrapException):
            return self.cause.kind
        return "UnexpectedError"
