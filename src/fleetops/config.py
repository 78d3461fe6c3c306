"""Settings for fleetops.

Settings come from three layers, lowest precedence first: dataclass
defaults, an optional YAML settings file, and ``FLEETOPS_*`` environment
variables.
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "FLEETOPS_"
CONFIG_ENV_VAR = "FLEETOPS_CONFIG"

DEFAULT_STATE_DIR = Path.home() / ".fleetops" / "tasks"


@dataclass
class Settings:
    """Runtime configuration.

    Attributes:
        ansible_bin: Ad-hoc binary name or path
        ansible_playbook_bin: Playbook binary name or path
        scratch_dir: Parent directory for per-execution inventories and keys
        state_dir: Directory of the JSON task store used by the CLI
        forks: Parallelism passed to the external tool (-f)
        connect_timeout: Per-host connection timeout passed to the tool
        default_timeout: Execution timeout when a request sets none
        max_timeout: Upper bound accepted for a request timeout
        max_concurrent_executions: Cap on concurrently running tool processes
        verbosity: Number of -v flags passed to the tool
        structured_output: Use the json stdout callback for ad-hoc runs
        partial_success: Overall success when some hosts succeed and none
            report FAILED/UNREACHABLE
        cancel_kills_process: Cancelling a running task kills its process
        encryption_key: 32 character key for stored secrets
    """

    ansible_bin: str = "ansible"
    ansible_playbook_bin: str = "ansible-playbook"
    scratch_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "fleetops")
    state_dir: Path = field(default_factory=lambda: DEFAULT_STATE_DIR)
    forks: int = 10
    connect_timeout: int = 30
    default_timeout: int = 300
    max_timeout: int = 3600
    max_concurrent_executions: int = 4
    verbosity: int = 0
    structured_output: bool = False
    partial_success: bool = False
    cancel_kills_process: bool = True
    encryption_key: str = ""

    def __post_init__(self) -> None:
        """Normalize paths and validate numeric bounds."""
        self.scratch_dir = Path(self.scratch_dir)
        self.state_dir = Path(self.state_dir)

        for name in ("forks", "connect_timeout", "default_timeout", "max_timeout",
                     "max_concurrent_executions"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1", field=name)
        if self.verbosity < 0:
            raise ConfigurationError("verbosity must not be negative", field="verbosity")
        if self.default_timeout > self.max_timeout:
            raise ConfigurationError(
                f"default_timeout ({self.default_timeout}) exceeds max_timeout ({self.max_timeout})"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, masking the encryption key."""
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Path):
                value = str(value)
            result[f.name] = value
        if result["encryption_key"]:
            result["encryption_key"] = "***"
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        """Create from a dictionary, coercing string values by field type.

        Raises:
            ConfigurationError: On unknown keys or uncoercible values
        """
        known = {f.name: f for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                raise ConfigurationError(f"Unknown setting: {key}", field=key)
            kwargs[key] = _coerce(key, value, known[key].default)
        return cls(**kwargs)


def _coerce(key: str, value: Any, default: Any) -> Any:
    """Coerce a raw (often string) value to the type of the field default.

    Raises:
        ConfigurationError: If the value cannot have the field's type
    """
    if not isinstance(value, str):
        return _check_type(key, value, default)

    if isinstance(default, bool):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ConfigurationError(f"Invalid boolean for {key}: {value!r}", field=key)
    if isinstance(default, int):
        try:
            return int(value)
        except ValueError as e:
            raise ConfigurationError(f"Invalid integer for {key}: {value!r}", field=key) from e
    return value


def _check_type(key: str, value: Any, default: Any) -> Any:
    """Accept a non-string value (from YAML) only if it already has the field's type."""
    if isinstance(default, bool):
        expected: tuple[type, ...] = (bool,)
    elif isinstance(default, int):
        expected = (int,)
    elif isinstance(default, str):
        expected = (str,)
    else:
        expected = (Path,)
    if isinstance(default, int) and not isinstance(default, bool) and isinstance(value, bool):
        raise ConfigurationError(f"Invalid integer for {key}: {value!r}", field=key)
    if not isinstance(value, expected):
        raise ConfigurationError(
            f"Invalid value for {key}: expected {expected[0].__name__}, got {type(value).__name__}",
            field=key,
        )
    return value


def env_overrides(environ: dict[str, str] | None = None) -> dict[str, str]:
    """Collect ``FLEETOPS_<FIELD>`` values from the environment."""
    environ = dict(os.environ) if environ is None else environ
    names = {f.name for f in fields(Settings)}
    overrides: dict[str, str] = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX) or key == CONFIG_ENV_VAR:
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name in names:
            overrides[name] = value
    return overrides


def load_settings(
    config_file: str | Path | None = None,
    environ: dict[str, str] | None = None,
) -> Settings:
    """Load settings from defaults, a YAML file and the environment.

    Args:
        config_file: YAML settings file (defaults to $FLEETOPS_CONFIG if set)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Settings instance

    Raises:
        ConfigurationError: If the file is unreadable or values are invalid

    Example:
        >>> settings = load_settings(environ={"FLEETOPS_FORKS": "20"})
        >>> settings.forks
        20
    """
    environ = dict(os.environ) if environ is None else environ
    if config_file is None:
        config_file = environ.get(CONFIG_ENV_VAR) or None

    data: dict[str, Any] = {}
    if config_file is not None:
        path = Path(config_file)
        try:
            loaded = yaml.safe_load(path.read_text())
        except OSError as e:
            raise ConfigurationError(f"Cannot read settings file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in settings file {path}: {e}") from e
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigurationError(f"Settings file {path} must contain a mapping")
        data.update(loaded or {})
        logger.debug(f"Loaded settings file {path}")

    data.update(env_overrides(environ))
    return Settings.from_dict(data)
