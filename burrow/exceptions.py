"""Error taxonomy for burrow.

Every error carries the component that raised it and, when known, the
environment or cloud resource involved, so command-level handlers can print
an actionable message without inspecting tracebacks.
"""

from __future__ import annotations


class BurrowError(Exception):
    """Base class for all burrow errors.

    Parameters
    ----------
    message : str
        Human readable description
    resource : str | None
        Environment name or cloud resource identifier involved
    """

    component = "burrow"

    def __init__(self, message: str, resource: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.resource = resource

    def describe(self) -> str:
        """Return message prefixed with component and resource."""
        if self.resource:
            return f"[{self.component}] {self.resource}: {self.message}"
        return f"[{self.component}] {self.message}"


class ConfigurationError(BurrowError):
    """Bad or missing profile, settings or credentials. Not retried."""

    component = "config"


class BootScriptTooLargeError(ConfigurationError):
    """Rendered boot script exceeds the provider user-data limit."""

    component = "bootstrap"


class EnvironmentNotFoundError(ConfigurationError):
    """No environment with the requested name (or link) is known."""

    component = "state"


class InfrastructureError(BurrowError):
    """Shared infrastructure could not be converged.

    Parameters
    ----------
    message : str
        Description of the failure
    resource : str | None
        Resource kind or identifier that could not be created
    capability : str | None
        Missing permission or capability, when determinable
        (e.g. ``iam:CreateRole``)
    """

    component = "infrastructure"

    def __init__(
        self,
        message: str,
        resource: str | None = None,
        capability: str | None = None,
    ) -> None:
        if capability:
            message = f"{message} (missing capability: {capability})"
        super().__init__(message, resource=resource)
        self.capability = capability


class StateConsistencyError(BurrowError):
    """State store corruption or lock contention beyond the bound."""

    component = "state"


class LifecycleTimeoutError(BurrowError):
    """A lifecycle poll exceeded its deadline.

    The environment is left in the ``Failed`` state for inspection.
    """

    component = "lifecycle"


class InvalidTransitionError(BurrowError):
    """A lifecycle event is not valid for the current state."""

    component = "lifecycle"


class TransportError(BurrowError):
    """Session open/close or mid-session I/O failure. Not retried."""

    component = "transport"


class EnvironmentNotReadyError(TransportError):
    """A session was requested for an environment that is not Ready."""


class SyncConflictError(BurrowError):
    """Local and remote history cannot be reconciled without user action.

    Parameters
    ----------
    message : str
        Description of the conflict
    resource : str | None
        Environment name
    status : str
        Relationship between local and remote refs
        (``diverged`` or ``behind``)
    """

    component = "sync"

    def __init__(self, message: str, resource: str | None = None, status: str = "diverged") -> None:
        super().__init__(message, resource=resource)
        self.status = status


class InstanceFailedError(BurrowError):
    """The instance stopped or terminated while it was booting."""

    component = "lifecycle"
