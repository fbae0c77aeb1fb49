"""Mapping of botocore failures onto the provider error taxonomy."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterator

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)
from botocore.exceptions import (
    ConnectTimeoutError as BotoConnectTimeoutError,
)

from burrow.providers.aws.constants import (
    CONFLICT_ERROR_CODES,
    NOT_FOUND_SUFFIXES,
    THROTTLING_ERROR_CODES,
    UNAUTHORIZED_ERROR_CODES,
    UNAVAILABLE_ERROR_CODES,
)
from burrow.providers.exceptions import (
    CloudApiError,
    ErrorKind,
    ProviderConnectionError,
    ProviderCredentialsError,
)

logger = logging.getLogger(__name__)


def classify_error_code(code: str, status_code: int | None = None) -> ErrorKind:
    """Classify an AWS error code.

    Parameters
    ----------
    code : str
        Error code from the response (e.g. ``InvalidGroup.Duplicate``)
    status_code : int | None
        HTTP status, used when the code itself is not recognised

    Returns
    -------
    ErrorKind
        Classification used for retry and idempotency decisions
    """
    if code in THROTTLING_ERROR_CODES:
        return ErrorKind.THROTTLED
    if code in UNAVAILABLE_ERROR_CODES:
        return ErrorKind.UNAVAILABLE
    if code in UNAUTHORIZED_ERROR_CODES:
        return ErrorKind.UNAUTHORIZED
    if code in CONFLICT_ERROR_CODES or code.endswith(".Duplicate"):
        return ErrorKind.CONFLICT
    if code.endswith(NOT_FOUND_SUFFIXES):
        return ErrorKind.NOT_FOUND

    if status_code is not None:
        if status_code == 429:
            return ErrorKind.THROTTLED
        if status_code >= 500:
            return ErrorKind.UNAVAILABLE
        if status_code == 403:
            return ErrorKind.UNAUTHORIZED
        if status_code == 404:
            return ErrorKind.NOT_FOUND
        if status_code == 409:
            return ErrorKind.CONFLICT

    return ErrorKind.INVALID


@contextlib.contextmanager
def handle_aws_errors(resource: str | None = None, service: str | None = None) -> Iterator[None]:
    """Translate botocore exceptions raised in the block into ``CloudApiError``.

    Parameters
    ----------
    resource : str | None
        Resource identifier attached to the raised error
    service : str | None
        Service prefix for the operation name (e.g. ``iam`` gives
        ``iam:CreateRole``), so permission failures name the capability

    Raises
    ------
    ProviderCredentialsError
        If credentials are missing or incomplete
    ProviderConnectionError
        If the endpoint cannot be reached or the connection times out
    CloudApiError
        For any error response, classified by its code
    """
    try:
        yield
    except (NoCredentialsError, PartialCredentialsError) as e:
        raise ProviderCredentialsError(f"Cloud credentials not found: {e}") from e
    except (
        EndpointConnectionError,
        BotoConnectTimeoutError,
        ReadTimeoutError,
        ConnectionClosedError,
    ) as e:
        raise ProviderConnectionError(f"Cannot reach AWS endpoint: {e}") from e
    except ClientError as e:
        error = e.response.get("Error", {})
        code = error.get("Code", "Unknown")
        status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        operation = getattr(e, "operation_name", None)
        if operation and service:
            operation = f"{service}:{operation}"
        kind = classify_error_code(code, status)

        logger.debug("AWS %s failed with %s (%s)", operation, code, kind.value)

        raise CloudApiError(
            error.get("Message") or str(e),
            kind=kind,
            error_code=code,
            operation=operation,
            resource=resource,
        ) from e
    except BotoCoreError as e:
        raise CloudApiError(str(e), kind=ErrorKind.INVALID, resource=resource) from e
