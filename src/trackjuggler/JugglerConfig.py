"""
Daemon configuration.

The trackjoy configuration file is handed to every managed process untouched;
the daemon only reads it to learn how many keyboards and trackpads a group
needs (one per entry of "keys_mappings" and "pad_mappings").
"""
import json
import os
from typing import Any, Dict, List, Optional

from trackdevice.DeviceClassifier import DEFAULT_ORACLE_COMMAND
from trackdevice.DeviceModels import Requirement
from trackdevice.DeviceWatch import DEFAULT_DEV_DIR
from trackdevice.WatchFactory import WATCH_DIRECTORY, WATCH_UDEV
from trackutils.errors import ConfigError

UNCLASSIFIED_PENDING = "pending"
UNCLASSIFIED_NON_MATCHING = "non-matching"


def load_requirement(config_path: str) -> Requirement:
    """
    Derive the group requirement from a trackjoy configuration file

    Args:
        config_path: Path to the trackjoy JSON configuration

    Returns:
        Requirement with one keyboard per keys mapping and one trackpad per pad mapping

    Raises:
        ConfigError: If the file is missing, unreadable or not a JSON object
    """
    if config_path == "-":
        raise ConfigError("Configuration must be in a file to provide to child processes")
    if not os.path.isfile(config_path):
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Error reading configuration {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration {config_path} must be a JSON object")

    keys_mappings = data.get("keys_mappings", [])
    pad_mappings = data.get("pad_mappings", [])
    if not isinstance(keys_mappings, list) or not isinstance(pad_mappings, list):
        raise ConfigError("'keys_mappings' and 'pad_mappings' must be lists")

    return Requirement(min_keyboards=len(keys_mappings), min_trackpads=len(pad_mappings))


class JugglerConfig:
    """Settings for the juggler daemon"""

    def __init__(self,
                 config_path: str = "",
                 dev_dir: str = DEFAULT_DEV_DIR,
                 watch: str = WATCH_DIRECTORY,
                 poll_interval: float = 0.5,
                 executable: str = "trackjoy",
                 oracle_command: Optional[List[str]] = None,
                 oracle_timeout: float = 5.0,
                 debounce: float = 1.0,
                 grace_period: float = 3.0,
                 shutdown_deadline: float = 5.0,
                 restart_on_crash: bool = False,
                 crash_backoff: float = 5.0,
                 bind_devices: bool = True,
                 unclassified_policy: str = UNCLASSIFIED_PENDING,
                 requirement: Optional[Requirement] = None):
        """
        Initialize daemon settings

        Args:
            config_path: trackjoy configuration file passed to each process
            dev_dir: Device namespace directory
            watch: Watch backend, "directory" or "udev"
            poll_interval: Directory watch scan interval in seconds
            executable: Managed process executable, looked up on PATH
            oracle_command: Classification oracle argv with "{node}" placeholder
            oracle_timeout: Seconds to wait for the oracle
            debounce: Quiet period before dirty groups are evaluated
            grace_period: Seconds between terminate and kill when stopping a process
            shutdown_deadline: Seconds allowed for pending work at shutdown
            restart_on_crash: Re-check a group after a crash once the backoff expires
            crash_backoff: Seconds spent in crashed-backoff
            bind_devices: Pass the group's device nodes to the process
            unclassified_policy: "pending" keeps failed classifications unresolved,
                "non-matching" treats them as not a trackpad
            requirement: Minimum keyboards/trackpads, loaded from config_path if None
        """
        self.config_path = config_path
        self.dev_dir = dev_dir
        self.watch = watch
        self.poll_interval = poll_interval
        self.executable = executable
        self.oracle_command = list(oracle_command or DEFAULT_ORACLE_COMMAND)
        self.oracle_timeout = oracle_timeout
        self.debounce = debounce
        self.grace_period = grace_period
        self.shutdown_deadline = shutdown_deadline
        self.restart_on_crash = restart_on_crash
        self.crash_backoff = crash_backoff
        self.bind_devices = bind_devices
        self.unclassified_policy = unclassified_policy
        self.requirement = requirement

    def resolve_requirement(self) -> Requirement:
        """Load the requirement from the trackjoy config unless one was given"""
        if self.requirement is None:
            self.requirement = load_requirement(self.config_path)
        return self.requirement

    def validate(self):
        """
        Check settings before the daemon starts

        Raises:
            ConfigError: On the first invalid setting
        """
        if not self.config_path:
            raise ConfigError("A trackjoy configuration file is required")
        if self.config_path == "-":
            raise ConfigError("Configuration must be in a file to provide to child processes")
        if not os.path.isfile(self.config_path):
            raise ConfigError(f"Configuration file not found: {self.config_path}")
        if self.watch not in (WATCH_DIRECTORY, WATCH_UDEV):
            raise ConfigError(f"Unknown watch kind '{self.watch}'")
        if self.unclassified_policy not in (UNCLASSIFIED_PENDING, UNCLASSIFIED_NON_MATCHING):
            raise ConfigError(f"Unknown unclassified policy '{self.unclassified_policy}'")
        for name in ("poll_interval", "oracle_timeout", "debounce", "grace_period",
                     "shutdown_deadline", "crash_backoff"):
            if getattr(self, name) < 0:
                raise ConfigError(f"'{name}' cannot be negative")
        if not self.executable:
            raise ConfigError("Managed process executable cannot be empty")
        if not self.oracle_command:
            raise ConfigError("Oracle command cannot be empty")

        requirement = self.resolve_requirement()
        if requirement.is_empty:
            raise ConfigError("Configuration has no keys or pad mappings; no group could ever be ready")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'config_path': self.config_path,
            'dev_dir': self.dev_dir,
            'watch': self.watch,
            'poll_interval': self.poll_interval,
            'executable': self.executable,
            'oracle_command': list(self.oracle_command),
            'oracle_timeout': self.oracle_timeout,
            'debounce': self.debounce,
            'grace_period': self.grace_period,
            'shutdown_deadline': self.shutdown_deadline,
            'restart_on_crash': self.restart_on_crash,
            'crash_backoff': self.crash_backoff,
            'bind_devices': self.bind_devices,
            'unclassified_policy': self.unclassified_policy,
            'requirement': self.requirement.to_dict() if self.requirement else None,
        }
