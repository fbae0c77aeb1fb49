"""Cloud provider integration.

Only AWS is supported; the provider error taxonomy is re-exported here so
callers need not import the AWS package to handle it.
"""

from __future__ import annotations

from burrow.providers.exceptions import (
    CloudApiError,
    ErrorKind,
    ProviderConnectionError,
    ProviderCredentialsError,
)

__all__ = [
    "CloudApiError",
    "ErrorKind",
    "ProviderConnectionError",
    "ProviderCredentialsError",
]
