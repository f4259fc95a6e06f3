"""Driver configuration management.

Configuration is loaded from a YAML file and environment variables:
- stack-driver.yaml: Driver defaults (state dir, workers, polling, backend)
- STACK_DRIVER_* environment variables: Per-invocation overrides

The merge order is: defaults → config file → environment → CLI flags.

Resolution order for the config file:
1. Explicit path (--config)
2. $STACK_DRIVER_CONFIG environment variable
3. <base>/stack-driver.yaml when present
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

SUPPORTED_BACKENDS = ('memory', 'http')

# Environment variable → (field name, converter)
ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    'STACK_DRIVER_STATE_DIR': ('state_dir', Path),
    'STACK_DRIVER_MAX_WORKERS': ('max_workers', int),
    'STACK_DRIVER_POLL_INTERVAL': ('poll_interval', float),
    'STACK_DRIVER_OPERATION_TIMEOUT': ('operation_timeout', float),
    'STACK_DRIVER_BACKEND': ('backend', str),
    'STACK_DRIVER_ENDPOINT': ('endpoint', str),
    'STACK_DRIVER_KINDS_FILE': ('kinds_file', Path),
}


class ConfigError(Exception):
    """Configuration error."""


def get_base_dir() -> Path:
    """Get the stack-driver directory."""
    return Path(__file__).parent.parent  # src/ -> stack-driver/


@dataclass
class DriverConfig:
    """Settings for planning and applying stacks.

    Attributes:
        state_dir: Directory holding per-stack state files
        max_workers: Upper bound on concurrently running backend operations
        poll_interval: Initial delay between status polls (seconds)
        poll_max_interval: Cap for the exponential poll delay (seconds)
        operation_timeout: Per-operation deadline before ProvisioningTimeoutError
        transient_retries: Re-issues of a call the backend flagged as transient
        backend: Provisioning backend name (memory, http)
        endpoint: Base URL for the http backend
        kinds_file: Optional YAML catalog of extra resource kinds
    """
    state_dir: Path = field(default_factory=lambda: get_base_dir() / '.states')
    max_workers: int = 4
    poll_interval: float = 1.0
    poll_max_interval: float = 30.0
    operation_timeout: float = 1800.0
    transient_retries: int = 3
    backend: str = 'memory'
    endpoint: str = ''
    kinds_file: Optional[Path] = None
    config_file: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)
        if isinstance(self.kinds_file, str):
            self.kinds_file = Path(self.kinds_file)

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: If any value is out of range
        """
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.poll_interval <= 0:
            raise ConfigError(f"poll_interval must be > 0, got {self.poll_interval}")
        if self.poll_max_interval < self.poll_interval:
            raise ConfigError("poll_max_interval must be >= poll_interval")
        if self.operation_timeout <= 0:
            raise ConfigError(f"operation_timeout must be > 0, got {self.operation_timeout}")
        if self.transient_retries < 0:
            raise ConfigError(f"transient_retries must be >= 0, got {self.transient_retries}")
        if self.backend not in SUPPORTED_BACKENDS:
            raise ConfigError(
                f"Unknown backend '{self.backend}'. "
                f"Supported: {', '.join(SUPPORTED_BACKENDS)}"
            )
        if self.backend == 'http' and not self.endpoint:
            raise ConfigError("backend 'http' requires an endpoint")

    def apply_overrides(self, **overrides: Any) -> None:
        """Apply non-None overrides (CLI flags)."""
        for key, value in overrides.items():
            if value is None:
                continue
            if not hasattr(self, key):
                raise ConfigError(f"Unknown config setting: {key}")
            setattr(self, key, value)
        self.__post_init__()


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def discover_config_file(path: Optional[str] = None) -> Optional[Path]:
    """Find the driver config file, or None if there is none."""
    if path:
        explicit = Path(path)
        if not explicit.exists():
            raise ConfigError(f"Config file not found: {explicit}")
        return explicit

    if env_path := os.environ.get('STACK_DRIVER_CONFIG'):
        env_file = Path(env_path)
        if env_file.exists():
            return env_file
        raise ConfigError(f"STACK_DRIVER_CONFIG={env_path} does not exist")

    default = get_base_dir() / 'stack-driver.yaml'
    if default.exists():
        return default
    return None


def load_config(path: Optional[str] = None, **overrides: Any) -> DriverConfig:
    """Load driver configuration.

    Args:
        path: Optional explicit config file path
        **overrides: CLI-level overrides (None values ignored)

    Returns:
        Validated DriverConfig

    Raises:
        ConfigError: If the file is invalid or a value is out of range
    """
    config = DriverConfig()

    config_file = discover_config_file(path)
    if config_file is not None:
        data = _parse_yaml(config_file)
        known = set(DriverConfig.__dataclass_fields__) - {'config_file'}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown settings in {config_file}: {', '.join(unknown)}")
        config.apply_overrides(**data)
        config.config_file = config_file

    for env_name, (attr, convert) in ENV_OVERRIDES.items():
        if (raw := os.environ.get(env_name)) is not None:
            try:
                setattr(config, attr, convert(raw))
            except ValueError:
                raise ConfigError(f"{env_name}={raw!r} is not a valid {attr}")
    config.__post_init__()

    config.apply_overrides(**overrides)
    config.validate()
    return config
