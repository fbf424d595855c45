"""
LedgerMatch Error Handling

Typed errors for the matching engine with a stable error code, a
user-facing message and debugging context.
"""
import functools
import inspect
import logging
from typing import Optional, Dict, Any
from fastapi import HTTPException
from enum import Enum

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Input errors (400s)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"

    # Business outcomes (409s)
    CONFLICT = "CONFLICT"
    NOT_MATCHED = "NOT_MATCHED"

    # Dependency / runtime errors
    DEPENDENCY_UNAVAILABLE = "DEPENDENCY_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class LedgerMatchError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class InvalidRequestError(LedgerMatchError):
    """Malformed input to a public operation."""

    def __init__(self, field: str, detail: str):
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=f"Invalid value for '{field}'",
            detail=detail,
            context={"field": field}
        )


class UnscorableItemError(LedgerMatchError):
    """Inbox item carries no amount, date or text, so nothing can be scored."""

    def __init__(self, inbox_id: str):
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message="Inbox item has no amount, date or text to match on",
            detail="Extraction produced no usable fields",
            context={"inbox_id": inbox_id}
        )


class NotFoundError(LedgerMatchError):
    """Entity does not exist within the caller's tenant."""

    def __init__(self, entity: str, entity_id: str):
        # Tenant is deliberately left out of the context.
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{entity} not found",
            context={"entity": entity, "id": entity_id}
        )


class ConflictError(LedgerMatchError):
    """A different match is already confirmed for one side of the pairing."""

    def __init__(self, detail: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.CONFLICT,
            message="Match conflicts with an existing confirmed match",
            detail=detail,
            context=context
        )


class NotMatchedError(LedgerMatchError):
    """Unmatch requested for an item with no confirmed match."""

    def __init__(self, inbox_id: str):
        super().__init__(
            code=ErrorCode.NOT_MATCHED,
            message="Inbox item has no confirmed match",
            context={"inbox_id": inbox_id}
        )


class DependencyUnavailableError(LedgerMatchError):
    """An external collaborator (rates, extraction) could not be reached."""

    def __init__(self, dependency: str, detail: str):
        super().__init__(
            code=ErrorCode.DEPENDENCY_UNAVAILABLE,
            message=f"{dependency} is unavailable",
            detail=detail,
            context={"dependency": dependency}
        )


class TransientDependencyError(DependencyUnavailableError):
    """Dependency failure worth retrying (timeouts, 5xx, throttling)."""


class MatchTimeoutError(LedgerMatchError):
    """Per-item processing exceeded its time budget."""

    def __init__(self, inbox_id: str, timeout_seconds: float):
        super().__init__(
            code=ErrorCode.TIMEOUT,
            message=f"Matching timed out after {timeout_seconds:g}s",
            context={"inbox_id": inbox_id, "timeout_seconds": timeout_seconds}
        )


class InternalError(LedgerMatchError):
    """Unexpected failure, surfaced without internals."""

    def __init__(self, operation: str):
        super().__init__(
            code=ErrorCode.INTERNAL_ERROR,
            message=f"Internal error during {operation}",
            context={"operation": operation}
        )


def to_http_exception(error: LedgerMatchError) -> HTTPException:
    """Convert LedgerMatchError to HTTPException."""
    # Map error codes to HTTP status codes
    status_map = {
        ErrorCode.VALIDATION_ERROR: 400,
        ErrorCode.NOT_FOUND: 404,
        ErrorCode.CONFLICT: 409,
        ErrorCode.NOT_MATCHED: 409,
        ErrorCode.DEPENDENCY_UNAVAILABLE: 503,
        ErrorCode.TIMEOUT: 504,
        ErrorCode.INTERNAL_ERROR: 500,
    }

    return HTTPException(
        status_code=status_map.get(error.code, 500),
        detail=error.to_dict()
    )


def handle_safely(operation: str):
    """
    Decorator converting unexpected exceptions into ``InternalError``.

    Typed LedgerMatchErrors pass through untouched. Anything else is logged
    with its traceback and re-raised as an opaque INTERNAL_ERROR.

    Usage:
        @handle_safely("process_inbox_matching")
        def process_inbox_matching(...):
            ...
    """
    def decorator(func):
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await func(*args, **kwargs)
                except LedgerMatchError:
                    raise
                except Exception as e:
                    logger.exception("Unexpected failure in %s: %s", operation, e)
                    raise InternalError(operation) from e
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except LedgerMatchError:
                raise
            except Exception as e:
                logger.exception("Unexpected failure in %s: %s", operation, e)
                raise InternalError(operation) from e
        return wrapper
    return decorator
