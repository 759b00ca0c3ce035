"""
Configuration loading for gana.

Config lives at ``<state_dir>/config.yaml``:

    default_program: claude
    auto_yes: false
    daemon_poll_interval: 1000   # milliseconds
    branch_prefix: gana/

Missing, unreadable or invalid files produce the defaults; individual invalid
values fall back to their default with a warning.
"""

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

import yaml

from .exceptions import ConfigError
from .logging_config import get_logger
from .programs import DEFAULT_PROGRAM, parse_program
from .settings import get_paths

logger = get_logger("config")

CONFIG_PATH = get_paths().config_file

DEFAULT_POLL_INTERVAL_MS = 1000
DEFAULT_BRANCH_PREFIX = "gana/"


def load_config(path: Optional[Path] = None, strict: bool = False) -> dict:
    """Load the raw config mapping.

    Args:
        path: Config file (default: CONFIG_PATH)
        strict: Raise ConfigError instead of ignoring a broken file

    Returns:
        Parsed YAML mapping, or {} if the file is missing or not a mapping
    """
    config_path = Path(path) if path else CONFIG_PATH
    if not config_path.exists():
        return {}

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f)
    except (yaml.YAMLError, OSError) as e:
        if strict:
            raise ConfigError(f"cannot read {config_path}: {e}") from e
        logger.warning(f"Ignoring unreadable config {config_path}: {e}")
        return {}

    if data is None:
        return {}
    if not isinstance(data, dict):
        if strict:
            raise ConfigError(f"{config_path} must contain a mapping, not {type(data).__name__}")
        return {}
    return data


def save_config(data: dict, path: Optional[Path] = None) -> None:
    """Write the config mapping, creating parent directories."""
    config_path = Path(path) if path else CONFIG_PATH
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


@dataclass(frozen=True)
class Config:
    """Validated, immutable configuration."""

    default_program: str = DEFAULT_PROGRAM.value
    auto_yes: bool = False
    daemon_poll_interval: int = DEFAULT_POLL_INTERVAL_MS
    branch_prefix: str = DEFAULT_BRANCH_PREFIX

    @property
    def poll_interval_seconds(self) -> float:
        return self.daemon_poll_interval / 1000.0

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        """Build a Config, replacing invalid values with defaults."""
        defaults = cls()

        program = data.get("default_program", defaults.default_program)
        try:
            program = parse_program(program).value
        except ValueError as e:
            logger.warning(f"default_program: {e}; using '{defaults.default_program}'")
            program = defaults.default_program

        auto_yes = data.get("auto_yes", defaults.auto_yes)
        if not isinstance(auto_yes, bool):
            logger.warning(f"auto_yes must be true or false, got {auto_yes!r}")
            auto_yes = defaults.auto_yes

        interval = data.get("daemon_poll_interval", defaults.daemon_poll_interval)
        if isinstance(interval, bool) or not isinstance(interval, int) or interval <= 0:
            logger.warning(
                f"daemon_poll_interval must be a positive integer (ms), got {interval!r}"
            )
            interval = defaults.daemon_poll_interval

        prefix = data.get("branch_prefix", defaults.branch_prefix)
        if prefix is None:
            prefix = ""
        if not isinstance(prefix, str):
            logger.warning(f"branch_prefix must be a string, got {prefix!r}")
            prefix = defaults.branch_prefix

        return cls(
            default_program=program,
            auto_yes=auto_yes,
            daemon_poll_interval=interval,
            branch_prefix=prefix,
        )

    def to_dict(self) -> dict:
        return asdict(self)


def get_config(path: Optional[Path] = None, strict: bool = False) -> Config:
    """Load and validate the config file."""
    return Config.from_dict(load_config(path, strict=strict))


def ensure_config(path: Optional[Path] = None) -> Config:
    """Load the config, writing the defaults first if no file exists."""
    config_path = Path(path) if path else CONFIG_PATH
    if not config_path.exists():
        save_config(Config().to_dict(), config_path)
    return get_config(config_path)
