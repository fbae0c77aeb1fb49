"""Provider-level exceptions raised by the resource gateway."""

from __future__ import annotations

from enum import Enum

from burrow.exceptions import BurrowError


class ErrorKind(str, Enum):
    """Classification of a failed cloud API call."""

    UNAUTHORIZED = "Unauthorized"
    NOT_FOUND = "NotFound"
    THROTTLED = "Throttled"
    CONFLICT = "Conflict"
    UNAVAILABLE = "Unavailable"
    INVALID = "Invalid"


TRANSIENT_KINDS = frozenset((ErrorKind.THROTTLED, ErrorKind.UNAVAILABLE))


class CloudApiError(BurrowError):
    """A cloud API call failed.

    Parameters
    ----------
    message : str
        Human readable description including the provider diagnostic
    kind : ErrorKind
        Classification used for retry and idempotency decisions
    error_code : str | None
        Provider error code (e.g. ``InvalidGroup.Duplicate``)
    operation : str | None
        Provider operation name (e.g. ``CreateSecurityGroup``)
    resource : str | None
        Resource identifier the call targeted, when known
    """

    component = "gateway"

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.INVALID,
        error_code: str | None = None,
        operation: str | None = None,
        resource: str | None = None,
    ) -> None:
        super().__init__(message, resource=resource)
        self.kind = kind
        self.error_code = error_code
        self.operation = operation

    @property
    def transient(self) -> bool:
        """Whether the call may succeed if retried."""
        return self.kind in TRANSIENT_KINDS


class ProviderCredentialsError(CloudApiError):
    """Cloud credentials are missing or rejected."""

    def __init__(self, message: str = "Cloud credentials not found") -> None:
        super().__init__(message, kind=ErrorKind.UNAUTHORIZED)


class ProviderConnectionError(CloudApiError):
    """The provider endpoint could not be reached."""

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message, kind=ErrorKind.UNAVAILABLE, operation=operation)
