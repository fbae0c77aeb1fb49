import copy
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from omegaconf import OmegaConf
from omegaconf.errors import OmegaConfBaseException

from burrow.constants import (
    DEFAULT_BOOT_TIMEOUT_SECONDS,
    DEFAULT_SSH_USERNAME,
    DEFAULT_TAG_NAMESPACE,
    DEFAULT_TERMINATE_TIMEOUT_SECONDS,
    POLL_BASE_DELAY_SECONDS,
    POLL_MAX_DELAY_SECONDS,
    STATE_LOCK_TIMEOUT_SECONDS,
)
from burrow.core.models import Profile
from burrow.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-east-1"

SSH_USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
TAG_NAMESPACE_PATTERN = re.compile(r"^[a-z][a-z0-9-]{0,31}$")
ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
ARCHITECTURES = ("x86_64", "arm64")
VOLUME_TYPES = ("gp2", "gp3", "io1", "io2")
VOLUME_IOPS_RANGES = {"gp3": (3000, 16000), "io1": (100, 64000), "io2": (100, 256000)}
VOLUME_THROUGHPUT_RANGES = {"gp3": (125, 1000)}
OPTIONAL_PROFILE_FIELDS = ("image_id", "volume_iops", "volume_throughput")
MAX_TAG_KEY_LENGTH = 128
MAX_TAG_VALUE_LENGTH = 256

PROFILE_FIELDS = {
    "instance_type": str,
    "image_id": str,
    "image_family": str,
    "architecture": str,
    "volume_size_gb": int,
    "volume_type": str,
    "volume_iops": int,
    "volume_throughput": int,
    "packages": list,
    "environment": dict,
    "tags": dict,
    "ssh_username": str,
}


@dataclass(frozen=True)
class Settings:
    """Resolved tool-wide settings.

    Attributes
    ----------
    region : str
        AWS region environments are created in
    tag_namespace : str
        Prefix of the canonical tags on managed resources
    boot_timeout : float
        Deadline in seconds from launch to Ready
    terminate_timeout : float
        Deadline in seconds for termination to complete
    poll_base_delay : float
        First delay between lifecycle polls
    poll_max_delay : float
        Maximum delay between lifecycle polls
    lock_timeout : float
        Maximum wait for the state file lock
    cleanup_on_failure : bool
        Terminate the instance when boot fails instead of keeping it for
        inspection
    resource_tags : tuple[tuple[str, str], ...]
        Tags placed on every AWS resource burrow creates
    """

    region: str = DEFAULT_REGION
    tag_namespace: str = DEFAULT_TAG_NAMESPACE
    boot_timeout: float = DEFAULT_BOOT_TIMEOUT_SECONDS
    terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT_SECONDS
    poll_base_delay: float = POLL_BASE_DELAY_SECONDS
    poll_max_delay: float = POLL_MAX_DELAY_SECONDS
    lock_timeout: float = STATE_LOCK_TIMEOUT_SECONDS
    cleanup_on_failure: bool = False
    resource_tags: tuple[tuple[str, str], ...] = ()


class ConfigLoader:
    """Load ``burrow.yaml`` and resolve settings and profiles."""

    def __init__(self) -> None:
        self.BUILT_IN_DEFAULTS = {
            "region": os.environ.get("AWS_DEFAULT_REGION", DEFAULT_REGION),
            "tag_namespace": DEFAULT_TAG_NAMESPACE,
            "boot_timeout": DEFAULT_BOOT_TIMEOUT_SECONDS,
            "terminate_timeout": DEFAULT_TERMINATE_TIMEOUT_SECONDS,
            "poll_base_delay": POLL_BASE_DELAY_SECONDS,
            "poll_max_delay": POLL_MAX_DELAY_SECONDS,
            "lock_timeout": STATE_LOCK_TIMEOUT_SECONDS,
            "cleanup_on_failure": False,
            "resource_tags": {},
            "instance_type": "t3.large",
            "image_family": "ubuntu-24.04",
            "architecture": "x86_64",
            "volume_size_gb": 30,
            "volume_type": "gp3",
            "volume_iops": None,
            "volume_throughput": None,
            "packages": [],
            "environment": {},
            "tags": {},
            "ssh_username": DEFAULT_SSH_USERNAME,
        }

    def load_config(self, config_path: str | None = None) -> dict[str, Any]:
        """Load configuration from YAML file.

        Parameters
        ----------
        config_path : str | None
            Path to YAML config file. If None, checks BURROW_CONFIG env var,
            then falls back to burrow.yaml

        Returns
        -------
        dict[str, Any]
            Parsed configuration with ``defaults`` and ``profiles`` sections,
            with all variable interpolations resolved

        Raises
        ------
        ConfigurationError
            If the file cannot be read or parsed, or interpolation fails
        """
        if config_path is None:
            config_path = os.environ.get("BURROW_CONFIG", "burrow.yaml")

        config_file = Path(config_path)

        if not config_file.exists():
            return {"defaults": {}, "profiles": {}}

        try:
            cfg = OmegaConf.load(config_file)
        except yaml.YAMLError as e:
            logger.error("Failed to parse YAML config file %s: %s", config_file, e)
            raise ConfigurationError(f"Invalid YAML in {config_file}: {e}") from e
        except OSError as e:
            logger.error("Failed to read config file %s: %s", config_file, e)
            raise ConfigurationError(f"Failed to read config file {config_file}: {e}") from e

        if cfg is None:
            return {"defaults": {}, "profiles": {}}

        if "vars" in cfg:
            vars_dict = OmegaConf.to_container(cfg.vars, resolve=False)
            for key, value in vars_dict.items():
                if key not in cfg:
                    cfg[key] = value

        try:
            config = OmegaConf.to_container(cfg, resolve=True, throw_on_missing=True)
        except (OmegaConfBaseException, ValueError, KeyError) as e:
            logger.error("Failed to resolve configuration variables: %s", e)
            raise ConfigurationError(f"Configuration variable resolution error: {e}") from e

        if not isinstance(config, dict):
            raise ConfigurationError(f"{config_file} must contain a mapping")

        config.setdefault("defaults", {})
        config.setdefault("profiles", {})
        return config

    def merged(self, config: dict[str, Any], profile_name: str | None = None) -> dict[str, Any]:
        """Merge built-in defaults, YAML defaults and a profile section.

        Parameters
        ----------
        config : dict[str, Any]
            Full configuration from YAML
        profile_name : str | None
            Profile to apply; ``None`` and ``default`` mean defaults only

        Returns
        -------
        dict[str, Any]
            Merged configuration

        Raises
        ------
        ConfigurationError
            If the profile is not defined
        """
        merged = copy.deepcopy(self.BUILT_IN_DEFAULTS)
        merged.update(config.get("defaults") or {})

        profiles = config.get("profiles") or {}

        if profile_name is not None and profile_name not in profiles:
            if profile_name == "default":
                return merged

            available = ["default", *sorted(profiles)]
            raise ConfigurationError(
                f"Profile '{profile_name}' not found in configuration. "
                f"Available profiles: {available}"
            )

        if profile_name is not None:
            merged.update(profiles[profile_name] or {})

        return merged

    def settings(self, config: dict[str, Any]) -> Settings:
        """Build ``Settings`` from the ``defaults`` section."""
        merged = self.merged(config)
        self._validate_settings(merged)

        return Settings(
            region=merged["region"],
            tag_namespace=merged["tag_namespace"],
            boot_timeout=float(merged["boot_timeout"]),
            terminate_timeout=float(merged["terminate_timeout"]),
            poll_base_delay=float(merged["poll_base_delay"]),
            poll_max_delay=float(merged["poll_max_delay"]),
            lock_timeout=float(merged["lock_timeout"]),
            cleanup_on_failure=merged["cleanup_on_failure"],
            resource_tags=tuple(sorted((str(k), str(v)) for k, v in merged["resource_tags"].items())),
        )

    def profile(self, config: dict[str, Any], profile_name: str | None = None) -> Profile:
        """Build a validated ``Profile``.

        Parameters
        ----------
        config : dict[str, Any]
            Full configuration from YAML
        profile_name : str | None
            Profile name, ``default`` when omitted

        Returns
        -------
        Profile
            Resolved profile

        Raises
        ------
        ConfigurationError
            If the profile is unknown or invalid
        """
        name = profile_name or "default"
        merged = self.merged(config, name)
        self._validate_profile(merged)

        return Profile(
            name=name,
            instance_type=merged["instance_type"],
            image_id=merged.get("image_id"),
            image_family=merged["image_family"],
            architecture=merged["architecture"],
            volume_size_gb=merged["volume_size_gb"],
            volume_type=merged["volume_type"],
            volume_iops=merged.get("volume_iops"),
            volume_throughput=merged.get("volume_throughput"),
            packages=tuple(merged["packages"]),
            environment=tuple(sorted((str(k), str(v)) for k, v in merged["environment"].items())),
            tags=tuple(sorted((str(k), str(v)) for k, v in merged["tags"].items())),
            ssh_username=merged["ssh_username"],
        )

    def _validate_settings(self, config: dict[str, Any]) -> None:
        """Validate tool-wide settings.

        Parameters
        ----------
        config : dict[str, Any]
            Merged configuration

        Raises
        ------
        ConfigurationError
            If a setting has the wrong type or an out-of-range value
        """
        if not isinstance(config["region"], str) or not config["region"]:
            raise ConfigurationError("region must be a non-empty string")

        namespace = config["tag_namespace"]
        if not isinstance(namespace, str) or not TAG_NAMESPACE_PATTERN.match(namespace):
            raise ConfigurationError(
                f"Invalid tag_namespace '{namespace}'. Must start with a lowercase letter "
                f"and contain only lowercase letters, numbers and hyphens."
            )

        for field in (
            "boot_timeout",
            "terminate_timeout",
            "poll_base_delay",
            "poll_max_delay",
            "lock_timeout",
        ):
            value = config[field]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(f"{field} must be a number")
            if value <= 0:
                raise ConfigurationError(f"{field} must be positive")

        if config["poll_base_delay"] > config["poll_max_delay"]:
            raise ConfigurationError("poll_base_delay cannot exceed poll_max_delay")

        if not isinstance(config["cleanup_on_failure"], bool):
            raise ConfigurationError("cleanup_on_failure must be a boolean")

        self._validate_tags("resource_tags", config["resource_tags"], namespace)

    def _validate_profile(self, config: dict[str, Any]) -> None:
        """Validate profile fields.

        Parameters
        ----------
        config : dict[str, Any]
            Merged profile configuration

        Raises
        ------
        ConfigurationError
            If a field has the wrong type or an invalid value
        """
        for field, expected_type in PROFILE_FIELDS.items():
            if field not in config or config[field] is None:
                if field in OPTIONAL_PROFILE_FIELDS:
                    continue
                raise ConfigurationError(f"{field} is required")

            if isinstance(config[field], bool) or not isinstance(config[field], expected_type):
                raise ConfigurationError(f"{field} must be a {expected_type.__name__}")

        if config["architecture"] not in ARCHITECTURES:
            raise ConfigurationError(
                f"architecture must be one of {list(ARCHITECTURES)}, got '{config['architecture']}'"
            )

        if config["volume_type"] not in VOLUME_TYPES:
            raise ConfigurationError(
                f"volume_type must be one of {list(VOLUME_TYPES)}, got '{config['volume_type']}'"
            )

        if not 8 <= config["volume_size_gb"] <= 16384:
            raise ConfigurationError("volume_size_gb must be between 8 and 16384")

        self._validate_volume_performance(config)
        self._validate_tags("tags", config["tags"], config.get("tag_namespace", DEFAULT_TAG_NAMESPACE))

        for package in config["packages"]:
            if not isinstance(package, str):
                raise ConfigurationError("packages entries must be strings")

        for key in config["environment"]:
            if not isinstance(key, str) or not ENV_NAME_PATTERN.match(key):
                raise ConfigurationError(f"Invalid environment variable name '{key}'")

        ssh_username = config["ssh_username"]
        if not SSH_USERNAME_PATTERN.match(ssh_username):
            raise ConfigurationError(
                f"Invalid ssh_username '{ssh_username}'. "
                f"Must start with lowercase letter or underscore, "
                f"contain only lowercase letters, numbers, underscores, "
                f"and hyphens, and be 1-32 characters long."
            )

    def _validate_volume_performance(self, config: dict[str, Any]) -> None:
        """Check IOPS and throughput against what the volume type supports."""
        volume_type = config["volume_type"]

        for field, ranges in (
            ("volume_iops", VOLUME_IOPS_RANGES),
            ("volume_throughput", VOLUME_THROUGHPUT_RANGES),
        ):
            value = config.get(field)
            if value is None:
                continue
            if volume_type not in ranges:
                raise ConfigurationError(f"{field} is not supported for {volume_type} volumes")
            low, high = ranges[volume_type]
            if not low <= value <= high:
                raise ConfigurationError(
                    f"{field} must be between {low} and {high} for {volume_type} volumes"
                )

        if volume_type in ("io1", "io2") and config.get("volume_iops") is None:
            raise ConfigurationError(f"volume_iops is required for {volume_type} volumes")

    def _validate_tags(self, field: str, tags: Any, namespace: str) -> None:
        """Validate user tags.

        Parameters
        ----------
        field : str
            Configuration key the tags came from
        tags : Any
            Value of that key
        namespace : str
            Tag namespace whose keys are reserved for ownership tags

        Raises
        ------
        ConfigurationError
            If the tags are not a mapping of strings, or use a reserved key
        """
        if not isinstance(tags, dict):
            raise ConfigurationError(f"{field} must be a dict")

        for key, value in tags.items():
            if not isinstance(key, str) or not 0 < len(key) <= MAX_TAG_KEY_LENGTH:
                raise ConfigurationError(
                    f"{field} keys must be strings of 1-{MAX_TAG_KEY_LENGTH} characters"
                )
            if key.lower().startswith("aws:") or key.startswith(f"{namespace}:") or key == "Name":
                raise ConfigurationError(f"Tag key '{key}' in {field} is reserved")
            if isinstance(value, bool) or not isinstance(value, (str, int, float)):
                raise ConfigurationError(f"Tag '{key}' in {field} must have a string value")
            if len(str(value)) > MAX_TAG_VALUE_LENGTH:
                raise ConfigurationError(
                    f"Tag '{key}' in {field} is longer than {MAX_TAG_VALUE_LENGTH} characters"
                )
