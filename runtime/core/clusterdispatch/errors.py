"""Core scheduler error types.

No error kind is fatal to the scheduler process. The facade converts user
visible failures into structured results; the HTTP layer maps the remaining
ones to status codes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable


class ClusterDispatchError(Exception):
    """Base class for scheduler errors."""


class ValidationError(ClusterDispatchError):
    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


@dataclass(frozen=True)
class SchemaViolation:
    path: str
    message: str


class SchemaValidationError(ValidationError):
    def __init__(self, kind: str, violations: Iterable[SchemaViolation]):
        self.kind = kind
        self.violations = list(violations)
        super().__init__(f"{kind} failed schema validation ({len(self.violations)} violation(s))")


class NotFoundError(ClusterDispatchError):
    def __init__(self, resource_type: str, resource_id: str, message: str | None = None):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(message or f"{resource_type} not found: {resource_id}")


class ConflictError(ClusterDispatchError):
    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class StorageFailure(ClusterDispatchError):
    """The persistence engine is unavailable or timed out."""


class RetryBudgetExhausted(ClusterDispatchError):
    def __init__(self, submission_id: str, retries: int):
        self.submission_id = submission_id
        self.retries = retries
        super().__init__(f"Retry budget exhausted after {retries} retries")


class ConfigurationError(ClusterDispatchError):
    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)
