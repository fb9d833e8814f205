"""Error taxonomy and result envelope for the FPMS form collection core.

Every failure raised by the core is one of six kinds:

- ValidationError: missing or invalid input (always recoverable)
- ConflictError: duplicate code, duplicate grant, stale version, guarded delete
- NotFoundError: unknown form, field, assignment or submission id
- AuthorizationError: a capability check failed or the grant expired
- StateError: illegal lifecycle transition
- PersistenceError: the storage layer itself failed

Lower-layer exceptions are always translated into one of these kinds before
they reach a caller. The OperationResult envelope is what the public facade
returns: a success flag, a human-readable message, any generated identifiers
and, on failure, the serialized error.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fpms.types import ErrorKind, FieldErrorCode


@dataclass(frozen=True)
class FieldError:
    """Per-field validation error details.

    Attributes:
        path: Field code the error relates to
        code: Specific validation error code
        message: Human-readable error description
        expected: Optional - what was expected (type, format, choices, etc.)
        received: Optional - what was actually received

    Examples:
        >>> err = FieldError(
        ...     path="email",
        ...     code=FieldErrorCode.INVALID_FORMAT,
        ...     message="Invalid email format",
        ...     expected="email",
        ...     received="not-an-email"
        ... )
        >>> err.path
        'email'
    """
    path: str
    code: FieldErrorCode
    message: str
    expected: Optional[Any] = None
    received: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "path": self.path,
            "code": self.code.value if isinstance(self.code, FieldErrorCode) else self.code,
            "message": self.message,
        }
        if self.expected is not None:
            result["expected"] = self.expected
        if self.received is not None:
            result["received"] = self.received
        return result


class FPMSError(Exception):
    """Base class of every error the core raises.

    Attributes:
        kind: Error category
        message: Human-readable message, safe to show to an end user
        retryable: Whether the caller may retry the same operation unchanged
        fields: Optional per-field details (validation failures)
    """

    kind: ErrorKind = ErrorKind.PERSISTENCE
    retryable: bool = False

    def __init__(
        self,
        message: str,
        fields: Optional[List[FieldError]] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.fields: List[FieldError] = list(fields or [])
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "type": self.kind.value,
            "retryable": self.retryable,
            "message": self.message,
        }
        if self.fields:
            result["fields"] = [f.to_dict() for f in self.fields]
        return result


class ValidationError(FPMSError):
    """Missing or invalid input."""
    kind = ErrorKind.VALIDATION


class ConflictError(FPMSError):
    """The write collides with existing data."""
    kind = ErrorKind.CONFLICT


class NotFoundError(FPMSError):
    """An id does not resolve to a stored row."""
    kind = ErrorKind.NOT_FOUND


class AuthorizationError(FPMSError):
    """The principal holds no live grant for the requested capability."""
    kind = ErrorKind.AUTHORIZATION


class StateError(FPMSError):
    """The requested transition is not legal from the current state."""
    kind = ErrorKind.STATE


class PersistenceError(FPMSError):
    """The storage layer failed; the transaction has been rolled back."""
    kind = ErrorKind.PERSISTENCE


@dataclass(frozen=True)
class OperationResult:
    """Envelope returned by every public operation of the facade.

    Attributes:
        ok: Whether the operation succeeded
        message: Human-readable outcome
        data: Generated identifiers and other payload (form id, version, ...)
        error: The error that made the operation fail, if any

    Examples:
        >>> result = OperationResult.success("Form created successfully", form_id=3)
        >>> result.to_dict()
        {'ok': True, 'message': 'Form created successfully', 'formId': 3}
    """
    ok: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[FPMSError] = None

    @classmethod
    def success(cls, message: str, **data: Any) -> "OperationResult":
        return cls(ok=True, message=message, data=data)

    @classmethod
    def failure(cls, error: FPMSError) -> "OperationResult":
        return cls(ok=False, message=error.message, error=error)

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization (camelCase keys)."""
        result: Dict[str, Any] = {"ok": self.ok, "message": self.message}
        for key, value in self.data.items():
            result[_camel(key)] = value
        if self.error is not None:
            result["error"] = self.error.to_dict()
        return result


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


__all__ = [
    "FieldError",
    "FPMSError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "AuthorizationError",
    "StateError",
    "PersistenceError",
    "OperationResult",
]
