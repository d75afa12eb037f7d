"""InsiderGuard Exception Hierarchy.

Rich-context exceptions for the policy resolution and execution engine.

Exception Hierarchy:
    InsiderGuardException (base)
    └── PolicyEngineException
        ├── ValidationError
        ├── PolicyNotFoundError
        ├── ResolutionError
        ├── EvaluationError
        ├── ExecutionError
        └── CacheInconsistencyError

Only ValidationError and PolicyNotFoundError are surfaced to administrative
callers. The others are recovered where they are raised and reflected in
persisted state and logs.

All exceptions include rich context:
- error_code: Unique error identifier
- context: Dictionary with error-specific details
- timestamp: When the error occurred

Example:
    >>> from insiderguard.exceptions import ValidationError
    >>> raise ValidationError(
    ...     message="Global policies cannot carry a target",
    ...     context={"scope": {"level": "global", "value": "R&D"}},
    ... )
"""

import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ==============================================================================
# Base Exception
# ==============================================================================

class InsiderGuardException(Exception):
    """Base exception for all InsiderGuard errors.

    Attributes:
        message: Human-readable error message
        error_code: Unique error identifier (e.g., "IG_POLICY_VALIDATION_ERROR")
        context: Dictionary with error-specific details
        timestamp: When the error occurred
    """

    ERROR_PREFIX = "IG"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        """Initialize exception with rich context.

        Args:
            message: Human-readable error message
            error_code: Unique error identifier (auto-generated if not provided)
            context: Dictionary with error-specific details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self._generate_error_code()
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def _generate_error_code(self) -> str:
        """Generate an error code from the exception class name.

        Returns:
            Error code like "IG_POLICY_VALIDATION_ERROR"
        """
        error_type = re.sub(r'(?<!^)(?=[A-Z])', '_', self.__class__.__name__).upper()
        return f"{self.ERROR_PREFIX}_{error_type}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization.

        Returns:
            Dictionary with all error details
        """
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        """Convert exception to JSON string."""
        return json.dumps(self.to_dict(), indent=2, default=str)

    def __str__(self) -> str:
        return f"[{self.error_code}] - {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message='{self.message}', "
            f"error_code='{self.error_code}')"
        )


# ==============================================================================
# Policy Engine Exceptions
# ==============================================================================

class PolicyEngineException(InsiderGuardException):
    """Base exception for the policy resolution and execution engine."""
    ERROR_PREFIX = "IG_POLICY"


class ValidationError(PolicyEngineException):
    """Malformed policy, condition or action rejected at write time.

    Never persisted: the store raises before anything is committed.

    Example:
        >>> raise ValidationError(
        ...     message="Group scope requires a target value",
        ...     invalid_fields={"scope.value": "field required"},
        ... )
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        invalid_fields: Optional[Dict[str, str]] = None,
    ):
        """Initialize validation error.

        Args:
            message: Error message
            context: Error context
            invalid_fields: Dictionary of field_name -> reason
        """
        if invalid_fields:
            context = context or {}
            context["invalid_fields"] = invalid_fields
        super().__init__(message, context=context)


class PolicyNotFoundError(PolicyEngineException):
    """A referenced policy, condition, action or execution record does not exist."""

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if entity_type:
            context["entity_type"] = entity_type
        if entity_id is not None:
            context["entity_id"] = entity_id
        super().__init__(message, context=context)


class ResolutionError(PolicyEngineException):
    """Directory lookup failed while resolving a subject.

    Resolution proceeds fail-closed (Global policies only).
    """

    def __init__(
        self,
        message: str,
        subject_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        context = context or {}
        if subject_id:
            context["subject_id"] = subject_id
        if cause:
            context["cause"] = str(cause)
            context["cause_type"] = type(cause).__name__
        super().__init__(message, context=context)


class EvaluationError(PolicyEngineException):
    """Operator/type mismatch in a condition; the condition evaluates false."""

    def __init__(
        self,
        message: str,
        condition_type: Optional[str] = None,
        operator: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if condition_type:
            context["condition_type"] = condition_type
        if operator:
            context["operator"] = operator
        super().__init__(message, context=context)


class ExecutionError(PolicyEngineException):
    """Handler failure, timeout or unavailability for one execution record.

    Example:
        >>> raise ExecutionError(
        ...     message="Handler timed out after 300 seconds",
        ...     execution_record_id=42,
        ...     context={"timeout_seconds": 300},
        ... )
    """

    def __init__(
        self,
        message: str,
        execution_record_id: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        context = context or {}
        if execution_record_id is not None:
            context["execution_record_id"] = execution_record_id
        if cause:
            context["cause"] = str(cause)
            context["cause_type"] = type(cause).__name__
        super().__init__(message, context=context)


class CacheInconsistencyError(PolicyEngineException):
    """A cached resolution references policies that no longer resolve.

    Never user-visible; resolved by forced recomputation.
    """

    def __init__(
        self,
        message: str,
        subject_id: Optional[str] = None,
        missing_policy_ids: Optional[list] = None,
    ):
        context: Dict[str, Any] = {}
        if subject_id:
            context["subject_id"] = subject_id
        if missing_policy_ids:
            context["missing_policy_ids"] = missing_policy_ids
        super().__init__(message, context=context)


__all__ = [
    "InsiderGuardException",
    "PolicyEngineException",
    "ValidationError",
    "PolicyNotFoundError",
    "ResolutionError",
    "EvaluationError",
    "ExecutionError",
    "CacheInconsistencyError",
]
