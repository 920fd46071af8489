"""Domain errors.

A single exception type carries a tagged ``ErrorKind``; the HTTP layer maps
kinds to status codes through ``STATUS_BY_KIND`` instead of relying on a
class hierarchy.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    STORAGE_CONFLICT = "STORAGE_CONFLICT"


STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.BUSINESS_RULE_VIOLATION: 422,
    # exhausted retries: distinct code, clients may resubmit
    ErrorKind.STORAGE_CONFLICT: 500,
}

RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset({ErrorKind.STORAGE_CONFLICT})


class DomainError(Exception):
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        issues: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.issues = issues

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "code": self.kind.value}
        if self.issues:
            body["issues"] = self.issues
        return body

    def __repr__(self) -> str:
        return f"DomainError({self.kind.name}, {self.message!r})"


def validation_error(message: str, issues: list[dict[str, Any]] | None = None) -> DomainError:
    return DomainError(ErrorKind.VALIDATION, message, issues=issues)


def not_found(resource: str, resource_id: str | None = None) -> DomainError:
    if resource_id:
        return DomainError(ErrorKind.NOT_FOUND, f"{resource} with ID {resource_id} not found")
    return DomainError(ErrorKind.NOT_FOUND, f"{resource} not found")


def unauthorized(message: str = "Unauthorized") -> DomainError:
    return DomainError(ErrorKind.UNAUTHORIZED, message)


def forbidden(message: str = "Insufficient permissions") -> DomainError:
    return DomainError(ErrorKind.FORBIDDEN, message)


def conflict(message: str) -> DomainError:
    return DomainError(ErrorKind.CONFLICT, message)


def business_rule_violation(message: str) -> DomainError:
    return DomainError(ErrorKind.BUSINESS_RULE_VIOLATION, message)


def storage_conflict(message: str = "Conflict, please retry") -> DomainError:
    return DomainError(ErrorKind.STORAGE_CONFLICT, message)
