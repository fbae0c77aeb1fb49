"""CLI entry point for burrow."""

from __future__ import annotations

import logging
import os
import sys

import fire

from burrow.core.signals import setup_signal_handlers
from burrow.exceptions import (
    BurrowError,
    ConfigurationError,
    EnvironmentNotReadyError,
    InfrastructureError,
    InstanceFailedError,
    LifecycleTimeoutError,
    SyncConflictError,
    TransportError,
)
from burrow.logging import LevelFormatter
from burrow.providers.exceptions import CloudApiError, ErrorKind, ProviderCredentialsError

EXIT_FAILURE = 1
EXIT_USER_ERROR = 2
EXIT_INTERNAL_ERROR = 3
EXIT_INTERRUPTED = 130

QUIET_LOGGERS = ("botocore", "boto3", "urllib3", "paramiko")


def get_burrow_class() -> type:
    """Get Burrow class on-demand to avoid circular imports."""
    from burrow.__main__ import Burrow

    return Burrow


def get_aws_credentials_error_message() -> str:
    """Get standard AWS credentials error message."""
    return (
        "Cloud credentials not found\n\n"
        "Configure your credentials:\n"
        "  aws configure\n\n"
        "Or set environment variables:\n"
        "  export AWS_ACCESS_KEY_ID=...\n"
        "  export AWS_SECRET_ACCESS_KEY=..."
    )


def handle_credentials_error(debug_mode: bool) -> None:
    """Handle provider credentials error.

    Raises
    ------
    ProviderCredentialsError
        Re-raised if debug mode is enabled
    """
    if debug_mode:
        raise

    print(get_aws_credentials_error_message(), file=sys.stderr)
    sys.exit(EXIT_FAILURE)


def handle_user_error(error: BurrowError, debug_mode: bool) -> None:
    """Handle errors the user can fix: configuration, names, readiness, conflicts.

    Parameters
    ----------
    error : BurrowError
        The error that was raised
    debug_mode : bool
        Whether debug mode is enabled
    """
    if debug_mode:
        raise

    print(f"Error: {error.describe()}", file=sys.stderr)

    if isinstance(error, EnvironmentNotReadyError):
        print("\nCheck progress with:", file=sys.stderr)
        print(f"  burrow status {error.resource or ''}".rstrip(), file=sys.stderr)
    elif isinstance(error, SyncConflictError):
        print("\nNothing was changed. Reconcile the branches first:", file=sys.stderr)
        print("  burrow pull            # when the environment is ahead", file=sys.stderr)
        print("  burrow push --force    # to overwrite the environment's branch", file=sys.stderr)

    sys.exit(EXIT_USER_ERROR)


def handle_api_error(error: CloudApiError, debug_mode: bool) -> None:
    """Handle cloud API error with context-specific messages.

    Parameters
    ----------
    error : CloudApiError
        The API error that was raised
    debug_mode : bool
        Whether debug mode is enabled
    """
    if debug_mode:
        raise

    if error.kind is ErrorKind.UNAUTHORIZED:
        print("Insufficient IAM permissions\n", file=sys.stderr)
        print(f"  {error.operation or 'operation'}: {error.message}\n", file=sys.stderr)
        print("burrow needs EC2, IAM (role and instance profile) and", file=sys.stderr)
        print("SSM (StartSession, TerminateSession) permissions.", file=sys.stderr)
    elif error.error_code in ("ExpiredToken", "RequestExpired", "ExpiredTokenException"):
        print("Cloud credentials have expired\n", file=sys.stderr)
        print("Fix it:", file=sys.stderr)
        print("  aws sso login           # If using AWS SSO", file=sys.stderr)
        print("  aws configure           # Re-configure credentials", file=sys.stderr)
    elif error.error_code in ("InstanceLimitExceeded", "VpcLimitExceeded"):
        print("Cloud quota exceeded\n", file=sys.stderr)
        print(f"  {error.message}\n", file=sys.stderr)
        print("Fix it:", file=sys.stderr)
        print("  burrow list", file=sys.stderr)
        print("  https://console.aws.amazon.com/servicequotas/", file=sys.stderr)
    else:
        print(f"Cloud API error: {error.describe()}", file=sys.stderr)

    sys.exit(EXIT_FAILURE)


def handle_failure(error: BurrowError, debug_mode: bool) -> None:
    """Handle infrastructure, lifecycle and transport failures."""
    if debug_mode:
        raise

    print(f"Error: {error.describe()}", file=sys.stderr)

    if isinstance(error, (LifecycleTimeoutError, InstanceFailedError)) and error.resource:
        print("\nInspect the boot log with:", file=sys.stderr)
        print(f"  burrow logs {error.resource}", file=sys.stderr)

    sys.exit(EXIT_FAILURE)


def handle_internal_error(error: BaseException, debug_mode: bool) -> None:
    """Handle state corruption, invalid transitions and unexpected errors."""
    if debug_mode:
        raise

    if isinstance(error, BurrowError):
        print(f"Internal error: {error.describe()}", file=sys.stderr)
    else:
        print(f"Unexpected error: {error}", file=sys.stderr)
    print("Re-run with BURROW_DEBUG=1 for a traceback.", file=sys.stderr)
    sys.exit(EXIT_INTERNAL_ERROR)


def configure_logging(debug_mode: bool) -> None:
    """Send progress to stderr and quieten third-party loggers.

    Command results are printed to stdout, so log records never go there.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(LevelFormatter("%(message)s"))

    logging.basicConfig(
        level=logging.DEBUG if debug_mode else logging.INFO,
        handlers=[handler],
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def main() -> None:
    """Entry point for Fire CLI with graceful error handling.

    Fire maps the public methods of ``Burrow`` to commands. Errors are mapped
    to exit codes: 2 for problems the user can fix, 1 for cloud,
    infrastructure, lifecycle and transport failures, 3 for internal errors.
    ``BURROW_DEBUG=1`` re-raises instead.
    """
    debug_mode = os.environ.get("BURROW_DEBUG") == "1"
    configure_logging(debug_mode)
    setup_signal_handlers()

    try:
        fire.Fire(get_burrow_class())
    except ProviderCredentialsError:
        handle_credentials_error(debug_mode)
    except (ConfigurationError, EnvironmentNotReadyError, SyncConflictError) as e:
        handle_user_error(e, debug_mode)
    except CloudApiError as e:
        handle_api_error(e, debug_mode)
    except (InfrastructureError, LifecycleTimeoutError, InstanceFailedError, TransportError) as e:
        handle_failure(e, debug_mode)
    except KeyboardInterrupt:
        if debug_mode:
            raise
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        handle_internal_error(e, debug_mode)
