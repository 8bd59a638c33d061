"""
Error Taxonomy Module

Domain exceptions raised inside the engine and the typed Result returned at
the service boundary. Callers inspect ``result.error.kind`` instead of
catching exception types.
"""

import functools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar

from .logging_config import get_logger, log_action


T = TypeVar("T")


class ErrorKind(Enum):
    """Kinds of failure a caller can receive"""
    VALIDATION = "validation"          # Bad input shape, nothing touched
    BUSINESS_RULE = "business_rule"    # Rule violated, nothing touched
    NOT_FOUND = "not_found"            # Referenced entity absent
    CONFLICT = "conflict"              # Stale version, unit of work rolled back


class MicrocreditError(Exception):
    """Base exception for the engine"""

    kind: ErrorKind = ErrorKind.BUSINESS_RULE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MicrocreditError):
    """Input is malformed or out of range"""

    kind = ErrorKind.VALIDATION


class BusinessRuleViolation(MicrocreditError):
    """Operation is well-formed but not allowed in the current state"""

    kind = ErrorKind.BUSINESS_RULE


class NotFoundError(MicrocreditError):
    """Loan, member, installment or account does not exist"""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity_type: str, entity_id: Optional[str] = None):
        if entity_id is None:
            # Already a full message, e.g. rebuilt from an OperationError
            super().__init__(entity_type)
        else:
            super().__init__(f"{entity_type.capitalize()} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConcurrencyConflict(MicrocreditError):
    """Entity changed since it was read"""

    kind = ErrorKind.CONFLICT


@dataclass(frozen=True)
class OperationError:
    """Failure half of a Result"""
    kind: ErrorKind
    message: str

    def to_exception(self) -> MicrocreditError:
        return {
            ErrorKind.VALIDATION: ValidationError,
            ErrorKind.BUSINESS_RULE: BusinessRuleViolation,
            ErrorKind.NOT_FOUND: NotFoundError,
            ErrorKind.CONFLICT: ConcurrencyConflict,
        }[self.kind](self.message)


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success value or an OperationError, never both"""
    value: Optional[T] = None
    error: Optional[OperationError] = None

    @classmethod
    def ok(cls, value: T) -> 'Result[T]':
        return cls(value=value)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str) -> 'Result[T]':
        return cls(error=OperationError(kind, message))

    @property
    def is_ok(self) -> bool:
        return self.error is None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def unwrap(self) -> T:
        """Return the value or raise the matching domain exception"""
        if self.error is not None:
            raise self.error.to_exception()
        return self.value


_logger = get_logger("microcredit.errors")


def returns_result(func: Callable[..., Any]) -> Callable[..., Result]:
    """
    Convert domain exceptions raised by a service operation into a failed
    Result. Anything that is not a MicrocreditError propagates unchanged.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> Result:
        try:
            return Result.ok(func(*args, **kwargs))
        except MicrocreditError as e:
            log_action(
                _logger, "warning", f"{func.__qualname__} rejected: {e.message}",
                action=func.__name__,
                extra={"error_kind": e.kind.value}
            )
            return Result.fail(e.kind, e.message)

    return wrapper
