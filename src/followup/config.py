"""Configuration loader with hot-reload support.

Loads configuration from YAML, validates it against the Pydantic schema, and
offers a ConfigWatcher that picks up file changes between scheduled runs.

Usage:
    from followup.config import ConfigWatcher, load_config

    config = load_config()

    watcher = ConfigWatcher(path)
    config = watcher.config
    if watcher.reload_if_changed():
        config = watcher.config
"""

import os
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from followup.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from followup.core.errors import ConfigLoadError, ConfigValidationError
from followup.core.logging import get_logger

logger = get_logger(__name__)

# Default config path - can be overridden via environment variable
DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "FOLLOWUP_CONFIG_PATH"


def get_config_path() -> Path:
    """Get the config file path from environment or default."""
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def _format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors into actionable messages.

    Args:
        error: Pydantic ValidationError

    Returns:
        Formatted error message with specific field errors
    """
    messages = []
    for err in error.errors():
        field_path = ".".join(str(loc) for loc in err["loc"]) or "(root)"
        msg = err["msg"]
        err_type = err["type"]

        if err_type == "missing":
            messages.append(f"  - Missing required field '{field_path}'")
        elif err_type == "string_type":
            messages.append(f"  - Field '{field_path}' must be a string")
        elif err_type in ("int_type", "int_parsing"):
            messages.append(f"  - Field '{field_path}' must be an integer")
        elif err_type in ("float_type", "float_parsing"):
            messages.append(f"  - Field '{field_path}' must be a number")
        else:
            messages.append(f"  - Field '{field_path}': {msg}")

    return "\n".join(messages)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse YAML file.

    Raises:
        ConfigLoadError: If file not found or YAML parse error
    """
    if not path.exists():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Create it by copying config/config.yaml.example to {path}"
        )

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            if data is None:
                return {}
            if not isinstance(data, dict):
                raise ConfigLoadError(
                    f"Configuration file must be a YAML mapping, got {type(data).__name__}"
                )
            return data
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e


def validate_config_data(data: dict[str, Any], source: str = "<dict>") -> AppConfig:
    """Validate config data against the Pydantic schema.

    Args:
        data: Parsed YAML data
        source: Where the data came from (for error messages)

    Returns:
        Validated AppConfig instance

    Raises:
        ConfigValidationError: If validation fails
    """
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        error_details = _format_validation_errors(e)
        raise ConfigValidationError(
            f"Configuration validation failed for {source}:\n{error_details}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. "
            "Please upgrade followup-triage or downgrade the config."
        )
    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Args:
        path: Optional path to config file. If not provided, uses
              FOLLOWUP_CONFIG_PATH env var or the default.

    Raises:
        ConfigLoadError: If file cannot be loaded
        ConfigValidationError: If validation fails
    """
    config_path = path or get_config_path()

    logger.debug("config_loading", path=str(config_path))

    data = _load_yaml(config_path)
    config = validate_config_data(data, str(config_path))

    logger.info(
        "config_loaded",
        path=str(config_path),
        schema_version=config.schema_version,
        rules_count=len(config.rules) if config.rules is not None else None,
        vips_count=len(config.vips),
        use_ai=config.classification.use_ai,
    )

    return config


class ConfigWatcher:
    """Holds the current config and reloads it when the file changes.

    Thread-safe: the APScheduler job and CLI commands may both touch it.
    An invalid file on reload keeps the previous config and logs a warning.
    """

    def __init__(self, path: Path | None = None):
        self._path = path or get_config_path()
        self._lock = threading.Lock()
        self._config = load_config(self._path)
        self._mtime = self._path.stat().st_mtime

    @property
    def config(self) -> AppConfig:
        with self._lock:
            return self._config

    @property
    def path(self) -> Path:
        return self._path

    def reload_if_changed(self) -> bool:
        """Check if the config file has changed and reload if so.

        Returns:
            True if config was reloaded, False if unchanged or invalid
        """
        with self._lock:
            try:
                current_mtime = self._path.stat().st_mtime
            except OSError as e:
                logger.warning("config_mtime_check_failed", path=str(self._path), error=str(e))
                return False

            if current_mtime <= self._mtime:
                return False

            logger.info("config_changed", path=str(self._path))

            try:
                new_config = load_config(self._path)
            except (ConfigLoadError, ConfigValidationError) as e:
                logger.warning(
                    "config_reload_failed_keeping_previous",
                    path=str(self._path),
                    error=str(e),
                )
                # Don't retry the same broken file on every check
                self._mtime = current_mtime
                return False

            self._config = new_config
            self._mtime = current_mtime
            return True


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Validate a config file without keeping it.

    Useful for CLI validation commands and testing.

    Returns:
        Tuple of (is_valid, message)
    """
    config_path = path or get_config_path()

    try:
        config = load_config(config_path)
    except ConfigLoadError as e:
        return (False, f"Load error: {e}")
    except ConfigValidationError as e:
        return (False, f"Validation error: {e}")

    rules = (
        f"{len(config.rules)} custom rules" if config.rules is not None else "built-in rules"
    )
    return (
        True,
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - {rules}\n"
        f"  - {len(config.vips)} VIP contacts\n"
        f"  - AI classifier: {'on' if config.classification.use_ai else 'off'}\n"
        f"  - timezone: {config.timezone}",
    )
