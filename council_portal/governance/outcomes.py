"""
Typed outcomes for core operations.

Core functions never raise for expected outcomes. A denied, invalid,
conflicting or missing request is reported as an ``Outcome`` carrying a
``CoreError`` whose ``kind`` tells the caller how to render it. Only
``INFRASTRUCTURE_FAILURE`` is worth retrying.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Error taxonomy shared by every core operation."""

    POLICY_DENIED = "policy_denied"
    VALIDATION_FAILED = "validation_failed"
    STATE_CONFLICT = "state_conflict"
    NOT_FOUND = "not_found"
    INFRASTRUCTURE_FAILURE = "infrastructure_failure"


@dataclass
class CoreError:
    """A failed core operation: what went wrong, and a fixed human message."""

    kind: ErrorKind
    code: str
    reason: str
    errors: list[str] = field(default_factory=list)

    @property
    def is_retryable(self) -> bool:
        return self.kind == ErrorKind.INFRASTRUCTURE_FAILURE

    @classmethod
    def denied(cls, code: str, reason: str) -> CoreError:
        return cls(ErrorKind.POLICY_DENIED, code, reason)

    @classmethod
    def invalid(cls, reason: str, errors: list[str] | None = None) -> CoreError:
        return cls(ErrorKind.VALIDATION_FAILED, "validation_failed", reason, errors or [reason])

    @classmethod
    def conflict(cls, code: str, reason: str) -> CoreError:
        return cls(ErrorKind.STATE_CONFLICT, code, reason)

    @classmethod
    def not_found(cls, code: str, reason: str) -> CoreError:
        return cls(ErrorKind.NOT_FOUND, code, reason)

    @classmethod
    def infrastructure(cls, code: str, reason: str) -> CoreError:
        return cls(ErrorKind.INFRASTRUCTURE_FAILURE, code, reason)

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.reason,
            "errors": list(self.errors),
        }


@dataclass
class Outcome(Generic[T]):
    """Either a value or a ``CoreError``."""

    value: T | None = None
    error: CoreError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None = None) -> Outcome[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: CoreError) -> Outcome[T]:
        return cls(error=error)
