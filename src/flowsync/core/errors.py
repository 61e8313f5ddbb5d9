"""
Structured error types for FlowSync.

Every error raised by the orchestration core is a :class:`FlowSyncError`
carrying a category, an explicit retry flag, structured context (which
flow, operation, execution unit or log stream was involved) and the
chained underlying exception.

Manifesto:
    - **Typed hierarchy:** callers branch on the class, not on message text
    - **Explicit retry semantics:** each error knows whether a retry makes sense
    - **Rich context:** flow/operation/unit ids travel with the error into logs
    - **Error chaining:** the engine or database exception is kept as ``cause``

Architecture:
    ::

        FlowSyncError
          ├── ValidationError          (VALIDATION, never retryable)
          │     ├── EmptyFlowError
          │     ├── IncompleteOperationError
          │     └── FlowAlreadyRunningError
          ├── NotFoundError            (NOT_FOUND)
          │     ├── FlowNotFoundError
          │     └── OperationNotFoundError
          ├── EngineError              (ENGINE)
          │     ├── SubmissionError
          │     ├── CancellationError
          │     └── UnitNotFoundError
          └── PersistenceError         (STORAGE, retryable)

        InvalidTransitionError(ValueError)   illegal status change

Examples:
    >>> err = IncompleteOperationError("Operation has no target remote")
    >>> err.with_context(flow_id="flow-1", operation_id="op-2").to_dict()["context"]
    {'flow_id': 'flow-1', 'operation_id': 'op-2'}

Tags:
    error-handling, exception-hierarchy, flowsync
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for routing and retry decisions."""

    VALIDATION = "VALIDATION"  # Rejected before any submission
    NOT_FOUND = "NOT_FOUND"  # Unknown flow / operation
    ENGINE = "ENGINE"  # External sync engine refused or failed
    STORAGE = "STORAGE"  # Flow persistence
    INTERNAL = "INTERNAL"  # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        flow_id: Flow being edited or executed
        operation_id: Operation inside the flow
        unit_id: Ephemeral execution unit submitted to the engine
        stream_key: Log stream the error relates to
        metadata: Additional key-value pairs
    """

    flow_id: str | None = None
    operation_id: str | None = None
    unit_id: str | None = None
    stream_key: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging (None fields omitted)."""
        result = {}
        for key in ["flow_id", "operation_id", "unit_id", "stream_key"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class FlowSyncError(Exception):
    """Base exception for all FlowSync errors.

    Subclasses set ``default_category`` and ``default_retryable``; both can
    be overridden per instance.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> FlowSyncError:
        """Add context fields, returning self for chaining.

        Known fields (``flow_id``, ``operation_id``, ``unit_id``,
        ``stream_key``) are set directly; anything else goes to
        ``context.metadata``.
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize for structured logging."""
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
            "context": self.context.to_dict(),
        }
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# VALIDATION
# =============================================================================


class ValidationError(FlowSyncError):
    """Request rejected synchronously, before anything reaches the engine."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False


class EmptyFlowError(ValidationError):
    """Executing a flow that has no operations."""


class IncompleteOperationError(ValidationError):
    """An operation lacks its source or target remote."""


class FlowAlreadyRunningError(ValidationError):
    """A flow cannot be executed twice concurrently."""


# =============================================================================
# LOOKUP
# =============================================================================


class NotFoundError(FlowSyncError):
    """Referenced entity does not exist in the current snapshot."""

    default_category = ErrorCategory.NOT_FOUND
    default_retryable = False


class FlowNotFoundError(NotFoundError):
    def __init__(self, flow_id: str):
        super().__init__(f"Flow not found: {flow_id}", context=ErrorContext(flow_id=flow_id))
        self.flow_id = flow_id


class OperationNotFoundError(NotFoundError):
    def __init__(self, flow_id: str, operation_id: str):
        super().__init__(
            f"Operation not found: {operation_id} (flow {flow_id})",
            context=ErrorContext(flow_id=flow_id, operation_id=operation_id),
        )
        self.flow_id = flow_id
        self.operation_id = operation_id


# =============================================================================
# ENGINE
# =============================================================================


class EngineError(FlowSyncError):
    """The external sync engine refused or failed a request."""

    default_category = ErrorCategory.ENGINE
    default_retryable = False


class SubmissionError(EngineError):
    """Creating or starting an execution unit failed."""


class CancellationError(EngineError):
    """The engine could not cancel a unit."""


class UnitNotFoundError(EngineError):
    """The engine holds no bookkeeping for the unit (unknown or already discarded)."""

    def __init__(self, unit_id: str, message: str | None = None):
        super().__init__(
            message or f"No active execution for unit '{unit_id}'",
            context=ErrorContext(unit_id=unit_id),
        )
        self.unit_id = unit_id


# =============================================================================
# PERSISTENCE
# =============================================================================


class PersistenceError(FlowSyncError):
    """Saving or loading flows failed. In-memory state stays authoritative."""

    default_category = ErrorCategory.STORAGE
    default_retryable = True


# =============================================================================
# STATE MACHINE
# =============================================================================


class InvalidTransitionError(ValueError):
    """Raised when an illegal status transition is attempted.

    If a legitimate transition is blocked, add it to the transition table
    explicitly rather than bypassing the guard.
    """

    def __init__(self, current: str, target: str, enum_name: str = "Status") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


# =============================================================================
# HELPERS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Return True if *error* is a FlowSyncError marked retryable."""
    if isinstance(error, FlowSyncError):
        return error.retryable
    return False


def categorize_error(error: Exception) -> ErrorCategory:
    """Best-effort category for any exception."""
    if isinstance(error, FlowSyncError):
        return error.category
    if isinstance(error, (ValueError, TypeError)):
        return ErrorCategory.VALIDATION
    if isinstance(error, OSError):
        return ErrorCategory.STORAGE
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "FlowSyncError",
    "ValidationError",
    "EmptyFlowError",
    "IncompleteOperationError",
    "FlowAlreadyRunningError",
    "NotFoundError",
    "FlowNotFoundError",
    "OperationNotFoundError",
    "EngineError",
    "SubmissionError",
    "CancellationError",
    "UnitNotFoundError",
    "PersistenceError",
    "InvalidTransitionError",
    "is_retryable",
    "categorize_error",
]
