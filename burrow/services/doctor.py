"""Checks for the local tools and credentials burrow relies on."""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from burrow.providers.exceptions import CloudApiError

logger = logging.getLogger(__name__)

VERSION_TIMEOUT_SECONDS = 10

SESSION_MANAGER_PLUGIN_URL = (
    "https://docs.aws.amazon.com/systems-manager/latest/userguide/"
    "session-manager-working-with-install-plugin.html"
)


@dataclass(frozen=True)
class ToolRequirement:
    """A local executable burrow runs.

    Attributes
    ----------
    label : str
        Name shown in the report
    executable : str
        Command looked up on ``PATH``
    hint : str
        How to install it
    required : bool
        Whether burrow cannot work without it
    """

    label: str
    executable: str
    hint: str
    required: bool = True


TOOLS = (
    ToolRequirement(
        "Session Manager plugin",
        "session-manager-plugin",
        f"install it from {SESSION_MANAGER_PLUGIN_URL}",
    ),
    ToolRequirement("Git", "git", "install git to use push and pull"),
    ToolRequirement(
        "AWS CLI",
        "aws",
        "optional; `aws configure` is the easiest way to set up credentials",
        required=False,
    ),
)


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one prerequisite check."""

    label: str
    ok: bool
    detail: str
    hint: str | None = None
    required: bool = True

    @property
    def blocking(self) -> bool:
        return self.required and not self.ok


class PrerequisiteChecker:
    """Report whether the local machine can drive burrow environments.

    Parameters
    ----------
    gateway : Any
        Gateway used to confirm the AWS credentials
    which : Callable[[str], str | None] | None
        Executable lookup, ``shutil.which`` by default
    runner : Callable[..., subprocess.CompletedProcess] | None
        Process runner, ``subprocess.run`` by default
    """

    def __init__(
        self,
        gateway: Any,
        which: Callable[[str], str | None] | None = None,
        runner: Callable[..., subprocess.CompletedProcess] | None = None,
    ) -> None:
        self.gateway = gateway
        self.which = which or shutil.which
        self.runner = runner or subprocess.run

    def check_tool(self, tool: ToolRequirement) -> CheckResult:
        path = self.which(tool.executable)
        if path is None:
            return CheckResult(tool.label, False, "missing", tool.hint, tool.required)

        try:
            result = self.runner(
                [path, "--version"],
                capture_output=True,
                text=True,
                timeout=VERSION_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("%s --version failed: %s", path, e)
            return CheckResult(tool.label, False, f"not runnable: {e}", tool.hint, tool.required)

        output = (result.stdout or result.stderr or "").strip()
        version = output.splitlines()[0] if output else "unknown version"
        return CheckResult(tool.label, True, version, required=tool.required)

    async def check_credentials(self) -> CheckResult:
        try:
            account = await self.gateway.caller_account()
        except CloudApiError as e:
            return CheckResult("AWS credentials", False, str(e), "run `aws configure` or set AWS_PROFILE")
        return CheckResult("AWS credentials", True, f"account {account} in {self.gateway.region}")

    async def run(self, tools: tuple[ToolRequirement, ...] = TOOLS) -> list[CheckResult]:
        """Check every tool, then the credentials."""
        results = [self.check_tool(tool) for tool in tools]
        results.append(await self.check_credentials())
        return results
