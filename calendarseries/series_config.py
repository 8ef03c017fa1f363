"""calendarseries.series_config

Configuration for calendarseries.

- Typed dataclass ``Config`` built with ``Config.from_dict``, which coerces
  values and logs a warning for anything it has to replace.
- ``load_config()`` reads a YAML file with PyYAML.
- ``ConfigManager`` layers ``.env`` defaults and ``CALENDARSERIES_*``
  environment variables on top.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import yaml

from .series_logging import configure_logging

logger = logging.getLogger(__name__)

ENV_PREFIX = "CALENDARSERIES_"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class Config:
    """Typed configuration for calendarseries.

    Fields:
        visible_start_hour: first visible hour of the day (0..23, UTC)
        visible_end_hour: end of the visible window (1..24, UTC)
        slot_minutes: display grid size in minutes
        range_padding_months: months added on each side of a materialized range
        max_occurrences_per_rule: safety cap for one expansion
        log_level: logging level name
        api_base_url: root of the REST events API, if one is used
        request_timeout_seconds: read timeout for API requests
    """

    visible_start_hour: int = 6
    visible_end_hour: int = 22
    slot_minutes: int = 30
    range_padding_months: int = 6
    max_occurrences_per_rule: int = 1000
    log_level: str = "INFO"
    api_base_url: str | None = None
    request_timeout_seconds: float = 15.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Config:
        """Create Config from a plain mapping, applying defaults and validation.

        Numeric-like values are coerced to int; out-of-range values are clamped
        and an inverted visible window falls back to the defaults, with a
        warning logged for every coercion.
        """
        if data is None:
            data = {}

        def _coerce_int(key: str, default: int) -> int:
            raw = data.get(key, default)
            if raw is None:
                return default
            try:
                return int(raw)
            except (TypeError, ValueError):
                logger.warning("Config %s=%r is not an int; using default %d", key, raw, default)
                return default

        def _clamp(key: str, value: int, low: int, high: int) -> int:
            if value < low:
                logger.warning("%s %d below minimum; coercing to %d", key, value, low)
                return low
            if value > high:
                logger.warning("%s %d above maximum; coercing to %d", key, value, high)
                return high
            return value

        start_hour = _clamp("visible_start_hour", _coerce_int("visible_start_hour", 6), 0, 24)
        end_hour = _clamp("visible_end_hour", _coerce_int("visible_end_hour", 22), 0, 24)
        if start_hour >= end_hour:
            logger.warning(
                "Visible window %d..%d is empty; using default 6..22", start_hour, end_hour
            )
            start_hour, end_hour = 6, 22

        slot_minutes = _coerce_int("slot_minutes", 30)
        if slot_minutes <= 0 or 60 % slot_minutes != 0:
            logger.warning("slot_minutes %d does not divide an hour; using 30", slot_minutes)
            slot_minutes = 30

        padding = _clamp("range_padding_months", _coerce_int("range_padding_months", 6), 0, 24)
        max_occurrences = _clamp(
            "max_occurrences_per_rule", _coerce_int("max_occurrences_per_rule", 1000), 1, 100000
        )

        log_level = data.get("log_level", "INFO")
        log_level = str(log_level).upper() if log_level is not None else "INFO"
        if log_level not in _LOG_LEVELS:
            logger.warning("Unknown log_level %r; using INFO", log_level)
            log_level = "INFO"

        api_base_url = data.get("api_base_url")
        if api_base_url is not None:
            api_base_url = str(api_base_url).strip() or None

        timeout_raw = data.get("request_timeout_seconds", 15.0)
        try:
            request_timeout = float(timeout_raw)
        except (TypeError, ValueError):
            logger.warning(
                "Config request_timeout_seconds=%r is not a number; using default 15.0", timeout_raw
            )
            request_timeout = 15.0
        if request_timeout <= 0:
            logger.warning("request_timeout_seconds %s must be positive; using 15.0", request_timeout)
            request_timeout = 15.0

        return cls(
            visible_start_hour=start_hour,
            visible_end_hour=end_hour,
            slot_minutes=slot_minutes,
            range_padding_months=padding,
            max_occurrences_per_rule=max_occurrences,
            log_level=log_level,
            api_base_url=api_base_url,
            request_timeout_seconds=request_timeout,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def configure_logging(self, debug_mode: bool = False) -> None:
        """Set up package logging with ``log_level`` as the root level."""
        configure_logging(debug_mode=debug_mode, level=self.log_level)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a mapping from a YAML file (an empty file yields an empty mapping)."""
    loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(loaded).__name__}")
    return loaded


def load_config(path: str | Path | None = None) -> Config:
    """Load configuration from a YAML file and return a Config instance.

    Args:
        path: Optional path to the config file. Defaults to ``calendarseries.yaml``
            in the current directory. A missing file yields the defaults.

    Raises:
        ValueError: If the file does not contain a mapping
        yaml.YAMLError: If the file is not valid YAML
    """
    config_path = Path(path) if path is not None else Path.cwd() / "calendarseries.yaml"
    if not config_path.exists():
        logger.debug("Config file not found at %s; using defaults", config_path)
        return Config.from_dict({})

    data = _load_yaml(config_path)
    logger.debug("Loaded config from %s (%d keys)", config_path, len(data))
    return Config.from_dict(data)


def parse_env_file(path: Path) -> dict[str, str]:
    """Parse a .env file and return key-value pairs.

    Args:
        path: Path to .env file

    Returns:
        Dictionary of key-value pairs from the .env file.
        Empty dict if file doesn't exist or cannot be read.

    Note:
        - Skips empty lines and comments (lines starting with #)
        - Strips quotes (both single and double) from values
        - Accepts an optional leading ``export``
    """
    if not path.exists():
        return {}

    result: dict[str, str] = {}
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        logger.debug("Failed to read .env file (continuing): %s", str(path), exc_info=True)
        return result

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export ") :]

        key, val = line.split("=", 1)
        key = key.strip()
        val = val.strip().strip('"').strip("'")
        if key:
            result[key] = val

    return result


class ConfigManager:
    """Builds the effective Config from a YAML file, a .env file and the environment."""

    # Environment suffix -> Config field
    ENV_FIELDS = {
        "VISIBLE_START_HOUR": "visible_start_hour",
        "VISIBLE_END_HOUR": "visible_end_hour",
        "SLOT_MINUTES": "slot_minutes",
        "RANGE_PADDING_MONTHS": "range_padding_months",
        "MAX_OCCURRENCES_PER_RULE": "max_occurrences_per_rule",
        "LOG_LEVEL": "log_level",
        "API_BASE_URL": "api_base_url",
        "REQUEST_TIMEOUT_SECONDS": "request_timeout_seconds",
    }

    def __init__(self, env_file_path: Path | None = None, config_path: str | Path | None = None):
        """Initialize configuration manager.

        Args:
            env_file_path: Optional path to .env file (defaults to .env in current directory)
            config_path: Optional YAML config path (see load_config)
        """
        self.env_file_path = env_file_path or Path.cwd() / ".env"
        self.config_path = config_path

    def load_env_file(self) -> list[str]:
        """Load .env file and set environment variables.

        Only sets variables that are not already in the environment.

        Returns:
            List of environment variable keys that were loaded from .env file
        """
        if not self.env_file_path.exists():
            logger.debug("No .env file found at %s", self.env_file_path)
            return []

        set_keys = []
        for key, val in parse_env_file(self.env_file_path).items():
            if key not in os.environ:
                os.environ[key] = val
                set_keys.append(key)

        if set_keys:
            logger.debug("Loaded .env defaults for keys: %s", ", ".join(set_keys))
        return set_keys

    def build_config_from_env(self) -> dict[str, Any]:
        """Collect ``CALENDARSERIES_*`` overrides from the environment."""
        cfg: dict[str, Any] = {}
        for suffix, field_name in self.ENV_FIELDS.items():
            value = os.environ.get(f"{ENV_PREFIX}{suffix}")
            if value is not None and value != "":
                cfg[field_name] = value
        return cfg

    def load(self) -> Config:
        """Effective configuration: file values overridden by the environment."""
        self.load_env_file()
        base = load_config(self.config_path).to_dict()
        overrides = self.build_config_from_env()
        if overrides:
            logger.debug("Applying environment overrides: %s", ", ".join(sorted(overrides)))
        return Config.from_dict({**base, **overrides})
