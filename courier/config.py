"""YAML configuration loader for courier runs.

A run file has two optional sections:

    run:
      iterations: 3
      delay_ms: 250
      stop_on_error: true
      folder: "Users"            # folder id or name
    settings:
      script_timeout_ms: 5000
      request_timeout_ms: 30000
      verify_ssl: true
      follow_redirects: true
      max_redirects: 5
      http2: false
      block_unresolved: false
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import CourierConfigError, CourierValidationError
from .logging_config import get_logger
from .models import EngineSettings, RunOptions
from .runner import validate_run_options

logger = get_logger("config")


@dataclass(slots=True)
class RunConfig:
    options: RunOptions = field(default_factory=RunOptions)
    settings: EngineSettings = field(default_factory=EngineSettings)
    # Folder reference from the file; may be a name, resolved against the collection later
    folder: str | None = None


def _validate_settings(s: EngineSettings) -> None:
    """Validate EngineSettings bounds. Raises CourierConfigError if invalid."""
    if s.script_timeout_ms <= 0:
        raise CourierConfigError("script_timeout_ms must be > 0")
    if s.request_timeout_ms <= 0:
        raise CourierConfigError("request_timeout_ms must be > 0")
    if s.max_redirects < 0:
        raise CourierConfigError("max_redirects must be >= 0")


def validate_run_config(config: RunConfig) -> None:
    """Validate RunConfig. Raises CourierConfigError if invalid."""
    try:
        validate_run_options(config.options)
    except CourierValidationError as e:
        raise CourierConfigError(e.message, context=e.context, original_error=e) from e
    _validate_settings(config.settings)


def _section(raw: dict[str, Any], name: str, path: Path) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise CourierConfigError(
            f"'{name}' must be a mapping",
            context={"path": str(path), "actual_type": type(value).__name__},
        )
    return value


def _bool(data: dict[str, Any], key: str, default: bool) -> bool:
    v = data.get(key, default)
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


def load_config(path: str | Path) -> RunConfig:
    """Load run configuration from YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated RunConfig instance

    Raises:
        CourierConfigError: If file not found, invalid YAML, or validation fails
    """
    p = Path(path)
    if not p.exists():
        raise CourierConfigError(
            f"Config file not found: {path}",
            context={"path": str(path)}
        )

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.exception("Failed to parse YAML config file")
        raise CourierConfigError(
            f"Invalid YAML syntax in config file: {e}",
            context={"path": str(path)},
            original_error=e
        ) from e
    except OSError as e:
        logger.exception("Failed to read config file")
        raise CourierConfigError(
            f"Cannot read config file: {e}",
            context={"path": str(path)},
            original_error=e
        ) from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise CourierConfigError(
            "Config must be a YAML object/dictionary",
            context={"path": str(path), "actual_type": type(raw).__name__}
        )

    run = _section(raw, "run", p)
    settings = _section(raw, "settings", p)
    defaults = EngineSettings()
    try:
        config = RunConfig(
            options=RunOptions(
                iterations=int(run.get("iterations", 1)),
                delay_ms=float(run.get("delay_ms", 0)),
                stop_on_error=_bool(run, "stop_on_error", False),
            ),
            settings=EngineSettings(
                script_timeout_ms=float(settings.get("script_timeout_ms", defaults.script_timeout_ms)),
                request_timeout_ms=float(settings.get("request_timeout_ms", defaults.request_timeout_ms)),
                verify_ssl=_bool(settings, "verify_ssl", defaults.verify_ssl),
                follow_redirects=_bool(settings, "follow_redirects", defaults.follow_redirects),
                max_redirects=int(settings.get("max_redirects", defaults.max_redirects)),
                http2=_bool(settings, "http2", defaults.http2),
                block_unresolved=_bool(settings, "block_unresolved", defaults.block_unresolved),
            ),
            folder=str(run["folder"]) if run.get("folder") is not None else None,
        )
    except (TypeError, ValueError) as e:
        raise CourierConfigError(
            f"Invalid config value: {e}",
            context={"path": str(path)},
            original_error=e
        ) from e

    validate_run_config(config)
    logger.debug(
        "Loaded config: iterations=%s, delay_ms=%s, stop_on_error=%s",
        config.options.iterations, config.options.delay_ms, config.options.stop_on_error,
    )
    return config
