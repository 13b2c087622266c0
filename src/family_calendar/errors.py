"""Domain errors and the result type returned by service operations.

Service methods never raise domain errors across their public boundary.
They return either ``Ok(value)`` or ``Err(error)``:

```python
result = await service.sync_calendar(user_id, calendar_id)
if result.is_err:
    raise_http_error(result.error)
sync_result = result.value
```

Each error carries the HTTP status code the API layer should use, so the
UI can tell "retry", "re-authenticate" and "wait and retry" apart.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E", bound="DomainError")


class DomainError(Exception):
    """Base class for errors surfaced by service operations."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def code(self) -> str:
        """Short machine-readable error code, e.g. ``rate_limit``."""
        name = type(self).__name__.removesuffix("Error")
        return "".join(
            f"_{c.lower()}" if c.isupper() and i else c.lower()
            for i, c in enumerate(name)
        )


class ValidationError(DomainError):
    """Malformed or missing input."""

    status_code = 400

    def __init__(self, message: str, fields: dict[str, str] | None = None):
        super().__init__(message)
        self.fields = fields or {}


class NotFoundError(DomainError):
    status_code = 404

    def __init__(self, resource: str, resource_id: object):
        super().__init__(f"{resource} with id {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class ForbiddenError(DomainError):
    status_code = 403

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class ConflictError(DomainError):
    status_code = 409


class RateLimitError(DomainError):
    """Raised when an operation is attempted again too soon.

    Attributes:
        retry_after: Seconds until the operation may be retried
    """

    status_code = 429

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class InternalError(DomainError):
    """Provider, encryption or persistence failure."""

    status_code = 500


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful result."""

    value: T

    @property
    def is_ok(self) -> bool:
        return True

    @property
    def is_err(self) -> bool:
        return False


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed result."""

    error: E

    @property
    def is_ok(self) -> bool:
        return False

    @property
    def is_err(self) -> bool:
        return True


Result = Union[Ok[T], Err[E]]
