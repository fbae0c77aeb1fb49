"""Global constants for burrow.

This module contains application-wide constants shared by the orchestrator,
state store, transport and sync bridge. Provider-specific values live in
``burrow.providers.aws.constants``.
"""

DEFAULT_TAG_NAMESPACE = "burrow"
"""Prefix of the canonical tags placed on every managed cloud resource."""

DEFAULT_BOOT_TIMEOUT_SECONDS = 900
"""Overall deadline for an instance to go from launch to Ready.

Covers instance start, package installation in the boot script and SSM agent
registration. Fifteen minutes accommodates large package lists.
"""

DEFAULT_TERMINATE_TIMEOUT_SECONDS = 300
"""Overall deadline for a terminated instance to reach the terminated state."""

POLL_BASE_DELAY_SECONDS = 2.0
"""First delay between lifecycle polls; grows exponentially."""

POLL_MAX_DELAY_SECONDS = 15.0
"""Upper bound for the delay between lifecycle polls."""

POLL_BACKOFF_MULTIPLIER = 2.0
"""Growth factor applied to the poll delay after each attempt."""

GATEWAY_MAX_ATTEMPTS = 5
"""Attempts for a single gateway call when it fails transiently."""

GATEWAY_CALL_DEADLINE_SECONDS = 60.0
"""Deadline for a single gateway call including its retries."""

AWS_CONNECT_TIMEOUT_SECONDS = 10
"""botocore connect timeout for every client."""

AWS_READ_TIMEOUT_SECONDS = 30
"""botocore read timeout for every client."""

STATE_LOCK_TIMEOUT_SECONDS = 10.0
"""Maximum time to wait for the state file lock before giving up."""

STATE_LOCK_POLL_SECONDS = 0.05
"""Interval between non-blocking lock acquisition attempts."""

STATE_FILE_VERSION = 1
"""Schema version written to the state snapshot."""

LINK_DIR_NAME = ".burrow"
"""Directory created inside a working tree to hold the link record."""

LINK_FILE_NAME = "instance"
"""File inside ``LINK_DIR_NAME`` holding the linked environment name."""

READINESS_SENTINEL = "BURROW-READY"
"""Marker the boot script writes to the serial console when it completes."""

READY_MARKER_FILE = ".burrow-ready"
"""File the boot script touches in the user's home directory on completion."""

INIT_LOG_PATH = "/var/log/burrow-init.log"
"""Remote path of the boot script log."""

MAX_USER_DATA_BYTES = 16384
"""EC2 user-data limit (before base64 encoding)."""

DEFAULT_SSH_USERNAME = "ubuntu"
"""Login user on the default Ubuntu images."""

SSH_PORT = 22
"""Remote port the broker forwards the session to."""

SESSION_CONNECT_TIMEOUT_SECONDS = 30
"""Timeout for SSH handshake over a broker channel."""

TERMINAL_POLL_SECONDS = 0.05
"""select() timeout for the interactive shell relay."""

GIT_REMOTE_PREFIX = "burrow-"
"""Prefix of git remotes registered for environments."""

GIT_COMMAND_TIMEOUT_SECONDS = 600
"""Timeout for git subprocesses run by the sync bridge."""

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400

DEFAULT_NAME_COLUMN_WIDTH = 20
"""Width of the NAME column in tabular output."""
