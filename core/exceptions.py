"""
Custom exceptions for the case sync pipeline with structured error context.

Each exception carries a context dictionary for debugging and for the
structured results returned by the pipeline.

Exception Hierarchy:
    SyncException (base)
    ├── ConfigError
    ├── TransportError
    │   └── DecodeError
    ├── DataIntegrityWarning
    ├── ResourceExhaustion
    │   ├── MemoryBudgetExceeded
    │   └── TimeBudgetExceeded
    ├── LockHeldError
    ├── ManifestError
    ├── CheckpointError
    └── EntityStoreError
"""

from typing import Optional, Dict, Any
from datetime import datetime


class SyncException(Exception):
    """
    Base exception for all sync-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (procedure, case, url, etc.)
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
# Configuration Errors
# ============================================================================

class ConfigError(SyncException):
    """
    Missing or invalid configuration (API tokens, base URL).

    Fatal: the pipeline aborts before any write.
    """
    pass


# ============================================================================
# Transport Errors
# ============================================================================

class TransportError(SyncException):
    """
    Exception raised when a call to the remote catalog fails.

    Context should include:
        - api_url: The endpoint that failed
        - status_code: HTTP status code (if applicable)
        - response_body: Response body (truncated)

    Transport errors are never retried; the failing case or procedure is
    counted and the pipeline moves on.
    """
    pass


class DecodeError(TransportError):
    """
    Malformed JSON or a payload that does not have the expected shape.
    """
    pass


# ============================================================================
# Data Integrity
# ============================================================================

class DataIntegrityWarning(SyncException):
    """
    Non-fatal data problem recorded in the run's warnings.

    Raised for a missing category mapping, a duplicate case across
    procedures or a declared-vs-actual count mismatch.

    Context should include:
        - procedure_id: External procedure ID (if applicable)
        - case_id: External case ID (if applicable)
    """
    pass


# ============================================================================
# Resource Guard
# ============================================================================

class ResourceExhaustion(SyncException):
    """
    The current invocation ran out of memory or time budget.

    Aborts only the current invocation; work resumes from the checkpoint.
    """
    pass


class MemoryBudgetExceeded(ResourceExhaustion):
    """Process memory crossed the configured ceiling threshold."""
    pass


class TimeBudgetExceeded(ResourceExhaustion):
    """The invocation deadline has passed."""
    pass


# ============================================================================
# Coordination and Persistence
# ============================================================================

class LockHeldError(SyncException):
    """
    Another sync job holds the active-job lock.

    Context should include:
        - holder: Session ID of the current holder
        - expires_at: When the lock expires if not refreshed
    """
    pass


class ManifestError(SyncException):
    """
    Manifest snapshot missing, unreadable, or built out of order.

    Context should include:
        - file_path: Path to the snapshot file
    """
    pass


class CheckpointError(SyncException):
    """
    Exception raised when checkpoint persistence fails.

    Context should include:
        - key: State key that failed
        - operation: Operation that failed (read, write, delete)
    """
    pass


class EntityStoreError(SyncException):
    """
    Exception raised when the local entity store rejects a write.

    Context should include:
        - composite_key: (procedure_id, case_id) being written
        - operation: create, update, delete, assign_category, set_order
    """
    pass
