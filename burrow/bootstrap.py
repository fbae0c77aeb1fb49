"""Boot script generation.

``render`` turns a profile and a developer identity into the user-data script
executed once on first boot. Every interpolated value is validated first so
the script can embed them without quoting tricks.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from burrow.constants import (
    INIT_LOG_PATH,
    LINK_DIR_NAME,
    MAX_USER_DATA_BYTES,
    READINESS_SENTINEL,
    READY_MARKER_FILE,
)
from burrow.core.models import DeveloperIdentity, Profile
from burrow.exceptions import BootScriptTooLargeError, ConfigurationError

logger = logging.getLogger(__name__)

SHELL_METACHARACTERS = frozenset(";&|$`(){}[]<>'\"\\\n\r!#*?~")
"""Characters rejected in any value interpolated into the boot script."""

GIT_CONFIG_MAX_LENGTH = 256
PROJECT_NAME_MAX_LENGTH = 64

USERNAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
PROJECT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]*$")
SSH_KEY_PREFIXES = ("ssh-rsa ", "ssh-ed25519 ", "ecdsa-sha2-nistp")
BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/]+={0,3}$")
STANDARD_KEY_NAMES = ("id_ed25519", "id_rsa", "id_ecdsa")

POST_RECEIVE_HOOK = """#!/bin/bash
while read oldrev newrev refname; do
    if [ "$newrev" = "0000000000000000000000000000000000000000" ]; then
        continue
    fi
    case "$refname" in
        refs/heads/*)
            branch="${{refname#refs/heads/}}"
            GIT_WORK_TREE={work_dir} git checkout -f "$branch"
            ;;
    esac
done
"""


def validate_shell_safe(value: str, context: str) -> None:
    """Reject empty values and values containing shell metacharacters.

    Raises
    ------
    ConfigurationError
        If ``value`` is empty or contains a metacharacter
    """
    if not value:
        raise ConfigurationError(f"{context} cannot be empty")

    if any(c in SHELL_METACHARACTERS for c in value):
        raise ConfigurationError(
            f"Invalid characters in {context}: '{value}'. "
            f"Shell metacharacters are not allowed."
        )


def validate_username(username: str) -> None:
    if not username or not USERNAME_PATTERN.match(username):
        raise ConfigurationError(
            f"Invalid username: '{username}'. Only alphanumeric, underscore, and dash "
            f"allowed, and it cannot start with a digit or dash."
        )


def validate_env_key(key: str) -> None:
    if not ENV_KEY_PATTERN.match(key):
        raise ConfigurationError(
            f"Invalid environment variable key: '{key}'. Only alphanumeric and underscore "
            f"allowed, and it cannot start with a number."
        )


def validate_project_name(name: str) -> None:
    """Validate a project name used in remote paths.

    Raises
    ------
    ConfigurationError
        If the name is empty, too long, starts with a dot or dash, or contains
        characters other than alphanumerics, dash, underscore and dot
    """
    if not name:
        raise ConfigurationError("Project name cannot be empty")

    if len(name) > PROJECT_NAME_MAX_LENGTH:
        raise ConfigurationError(
            f"Project name cannot exceed {PROJECT_NAME_MAX_LENGTH} characters"
        )

    if name.startswith((".", "-")):
        raise ConfigurationError(f"Project name '{name}' cannot start with a dot or dash")

    if not PROJECT_NAME_PATTERN.match(name):
        raise ConfigurationError(
            f"Invalid project name: '{name}'. Only alphanumeric, dash, underscore, "
            f"and dot allowed."
        )


def validate_git_config_value(value: str, context: str) -> None:
    if len(value) > GIT_CONFIG_MAX_LENGTH:
        raise ConfigurationError(
            f"{context} exceeds maximum length of {GIT_CONFIG_MAX_LENGTH} characters"
        )
    validate_shell_safe(value, context)


def validate_ssh_public_key(key: str) -> str:
    """Validate a single-line OpenSSH public key and return it stripped.

    Raises
    ------
    ConfigurationError
        If the key is empty, spans several lines, has an unknown type or
        malformed key material
    """
    key = key.strip()

    if not key:
        raise ConfigurationError("SSH key is empty")

    if "\n" in key or "\r" in key:
        raise ConfigurationError(
            "SSH key contains multiple lines. Only single-line keys are supported."
        )

    if not key.startswith(SSH_KEY_PREFIXES):
        raise ConfigurationError(
            f"Invalid SSH public key format. Must start with 'ssh-rsa', 'ssh-ed25519', "
            f"or 'ecdsa-sha2-nistp*'. Got: {key[:30]}..."
        )

    parts = key.split()
    if len(parts) < 2 or not BASE64_PATTERN.match(parts[1]):
        raise ConfigurationError("SSH key appears malformed (invalid key data)")

    return key


def find_ssh_public_key(directory: Path | None = None, home: Path | None = None) -> str | None:
    """Locate the developer's SSH public key.

    Checks ``.burrow/ssh_public_key`` in ``directory`` first, then the
    standard key names under ``~/.ssh``.

    Parameters
    ----------
    directory : Path | None
        Working directory holding a project-level override
    home : Path | None
        Home directory, ``Path.home()`` when omitted

    Returns
    -------
    str | None
        The validated key, or None when no key file exists

    Raises
    ------
    ConfigurationError
        If a key file exists but cannot be read or is malformed
    """
    candidates = []
    if directory is not None:
        candidates.append(Path(directory) / LINK_DIR_NAME / "ssh_public_key")

    ssh_dir = (home or Path.home()) / ".ssh"
    candidates.extend(ssh_dir / f"{name}.pub" for name in STANDARD_KEY_NAMES)

    for path in candidates:
        try:
            content = path.read_text()
        except FileNotFoundError:
            continue
        except OSError as e:
            raise ConfigurationError(f"Cannot read SSH key from {path}: {e}") from e

        logger.debug("Using SSH public key from %s", path)
        return validate_ssh_public_key(content)

    logger.debug("No SSH public key found in %s", ", ".join(str(p) for p in candidates))
    return None


def render(profile: Profile, identity: DeveloperIdentity | None = None) -> str:
    """Render the boot script for ``profile``.

    The output is a pure function of the inputs: environment variables are
    emitted in sorted order and nothing reads the clock or the filesystem.

    Parameters
    ----------
    profile : Profile
        Resolved environment profile
    identity : DeveloperIdentity | None
        SSH key, git identity and project name to embed

    Returns
    -------
    str
        Bash script suitable as EC2 user data

    Raises
    ------
    ConfigurationError
        If any interpolated value fails validation
    BootScriptTooLargeError
        If the script exceeds the provider user-data limit
    """
    identity = identity or DeveloperIdentity()
    user = profile.ssh_username
    home = f"/home/{user}"

    validate_username(user)

    ssh_key = validate_ssh_public_key(identity.ssh_public_key) if identity.ssh_public_key else None

    if identity.git_name is not None:
        validate_git_config_value(identity.git_name, "git user.name")
    if identity.git_email is not None:
        validate_git_config_value(identity.git_email, "git user.email")
    if identity.project_name is not None:
        validate_project_name(identity.project_name)

    for package in profile.packages:
        validate_shell_safe(package, "system package name")

    environment = sorted(profile.environment)
    for key, value in environment:
        validate_env_key(key)
        validate_shell_safe(value, f"environment variable value for '{key}'")

    lines = [
        "#!/bin/bash",
        "set -ex",
        "",
        f"exec > >(tee {INIT_LOG_PATH}) 2>&1",
        "",
    ]

    if ssh_key:
        lines += [
            "echo 'Configuring SSH public key...'",
            f"mkdir -p {home}/.ssh",
            f"cat >> {home}/.ssh/authorized_keys << 'SSHEOF'",
            ssh_key,
            "SSHEOF",
            f"chmod 700 {home}/.ssh",
            f"chmod 600 {home}/.ssh/authorized_keys",
            f"chown -R {user}:{user} {home}/.ssh",
            "",
        ]

    if identity.git_name or identity.git_email:
        lines.append("echo 'Configuring git user identity...'")
        if identity.git_name:
            lines.append(f"su - {user} -c 'git config --global user.name \"{identity.git_name}\"'")
        if identity.git_email:
            lines.append(f"su - {user} -c 'git config --global user.email \"{identity.git_email}\"'")
        lines.append("")

    lines += [
        "echo 'Setting up git directories...'",
        f"mkdir -p {home}/repos {home}/work",
        f"chown -R {user}:{user} {home}/repos {home}/work",
        "",
    ]

    if identity.project_name:
        lines += _project_repository(user, identity.project_name)

    lines += [
        "echo 'Ensuring SSM agent is running...'",
        "if snap list amazon-ssm-agent 2>/dev/null; then",
        "    snap start amazon-ssm-agent 2>/dev/null || true",
        "    systemctl enable snap.amazon-ssm-agent.amazon-ssm-agent.service 2>/dev/null || true",
        "    systemctl start snap.amazon-ssm-agent.amazon-ssm-agent.service 2>/dev/null || true",
        "else",
        "    systemctl enable amazon-ssm-agent 2>/dev/null || true",
        "    systemctl start amazon-ssm-agent 2>/dev/null || true",
        "fi",
        "",
    ]

    if profile.packages:
        lines += [
            "echo 'Installing system packages...'",
            "export DEBIAN_FRONTEND=noninteractive",
            "apt-get update",
            f"apt-get install -y {' '.join(profile.packages)}",
            "",
        ]

    if environment:
        lines.append("echo 'Setting environment variables...'")
        lines.append(f"cat >> {home}/.bashrc << 'ENVEOF'")
        lines += [f'export {key}="{value}"' for key, value in environment]
        lines += ["ENVEOF", ""]

    lines += [
        "echo 'burrow initialization complete!'",
        f"touch {home}/{READY_MARKER_FILE}",
        f"chown {user}:{user} {home}/{READY_MARKER_FILE}",
        f"echo '{READINESS_SENTINEL}' > /dev/console",
        "",
    ]

    script = "\n".join(lines)
    size = len(script.encode("utf-8"))

    if size > MAX_USER_DATA_BYTES:
        raise BootScriptTooLargeError(
            f"boot script is {size} bytes, exceeding the {MAX_USER_DATA_BYTES} byte "
            f"user-data limit; reduce packages or environment variables",
            resource=profile.name,
        )

    return script


def _project_repository(user: str, project: str) -> list[str]:
    """Bare repository with a worktree that pushes check out into."""
    home = f"/home/{user}"
    git_dir = f"{home}/repos/{project}.git"
    work_dir = f"{home}/work/{project}"

    return [
        f"echo 'Setting up git repo for {project}...'",
        f"su - {user} -c 'git init --bare {git_dir}'",
        f"cat > {git_dir}/hooks/post-receive << 'HOOKEOF'",
        POST_RECEIVE_HOOK.format(work_dir=work_dir).rstrip("\n"),
        "HOOKEOF",
        f"chmod +x {git_dir}/hooks/post-receive",
        f"mkdir -p {work_dir}",
        f"git --git-dir={git_dir} config core.bare false",
        f"git --git-dir={git_dir} config core.worktree {work_dir}",
        f"git --git-dir={git_dir} config receive.denyCurrentBranch updateInstead",
        f"echo 'gitdir: {git_dir}' > {work_dir}/.git",
        f"chown -R {user}:{user} {git_dir} {work_dir}",
        "",
    ]
