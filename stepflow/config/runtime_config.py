"""Runtime configuration for the flow engine.

Provides centralized defaults for scheduling, re-entry bounds, telemetry and
persistence. Environment variables take precedence over YAML config.

Usage:
    from stepflow.config.runtime_config import (
        get_max_concurrency,
        get_default_max_reentries,
        get_telemetry_sink,
        get_state_dir,
    )

    concurrency = get_max_concurrency()  # 1..64
    sink_name = get_telemetry_sink()  # "noop" or "logging"
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent / "runtime.yaml"
_cached_config: Optional[Dict[str, Any]] = None

CONCURRENCY_MIN = 1
CONCURRENCY_MAX = 64

ENV_MAX_CONCURRENCY = "STEPFLOW_MAX_CONCURRENCY"
ENV_MAX_REENTRIES = "STEPFLOW_MAX_REENTRIES"
ENV_TELEMETRY_SINK = "STEPFLOW_TELEMETRY_SINK"
ENV_STATE_DIR = "STEPFLOW_STATE_DIR"


def _clamp_int_value(value: int, name: str, min_val: int, max_val: int) -> int:
    """Clamp a numeric setting to sanity bounds with logging.

    Args:
        value: The configured value
        name: Human-readable name for logging (e.g., "max_concurrency")
        min_val: Minimum allowed value
        max_val: Maximum allowed value

    Returns:
        Clamped value within [min_val, max_val]
    """
    if value < min_val:
        logger.warning(
            "Setting '%s' value %d is below minimum %d. Clamping to %d.",
            name,
            value,
            min_val,
            min_val,
        )
        return min_val
    if value > max_val:
        logger.warning(
            "Setting '%s' value %d exceeds maximum %d. Clamping to %d.",
            name,
            value,
            max_val,
            max_val,
        )
        return max_val
    return value


def _env_int(var: str) -> Optional[int]:
    raw = os.environ.get(var)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer", var, raw)
        return None


def _load_config() -> Dict[str, Any]:
    """Load runtime.yaml configuration, with caching."""
    global _cached_config
    if _cached_config is not None:
        return _cached_config

    if _CONFIG_PATH.exists():
        with open(_CONFIG_PATH) as f:
            _cached_config = yaml.safe_load(f) or _default_config()
    else:
        _cached_config = _default_config()

    return _cached_config


def _default_config() -> Dict[str, Any]:
    """Return default configuration if runtime.yaml doesn't exist."""
    return {
        "version": "1.0",
        "defaults": {
            "max_concurrency": 8,
            "default_max_reentries": 10,
            "state_dir": None,
        },
        "telemetry": {
            "sink": "noop",
            "batch_size": 50,
        },
    }


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _cached_config
    _cached_config = None


def get_default(key: str, fallback: Any = None) -> Any:
    """Get a default setting value.

    Args:
        key: Setting key (e.g., "max_concurrency").
        fallback: Value to return if key not found.
    """
    config = _load_config()
    defaults = config.get("defaults") or {}
    return defaults.get(key, fallback)


def get_max_concurrency() -> int:
    """Maximum number of steps executing at once within a tick.

    Precedence: STEPFLOW_MAX_CONCURRENCY, then config, then 8. The result is
    clamped to [1, 64].
    """
    value = _env_int(ENV_MAX_CONCURRENCY)
    if value is None:
        value = int(get_default("max_concurrency", 8))
    return _clamp_int_value(value, "max_concurrency", CONCURRENCY_MIN, CONCURRENCY_MAX)


def get_default_max_reentries() -> Optional[int]:
    """Re-entry bound for cyclic steps that declare none.

    Returns None when disabled (config value null), in which case unbounded
    cyclic steps fail the build.
    """
    value = _env_int(ENV_MAX_REENTRIES)
    if value is None:
        value = get_default("default_max_reentries", 10)
    if value is None:
        return None
    value = int(value)
    if value < 0:
        logger.warning("Setting 'default_max_reentries' value %d is negative. Using 0.", value)
        return 0
    return value


def get_telemetry_sink() -> str:
    """Name of the telemetry sink to build for flows without an explicit one."""
    value = os.environ.get(ENV_TELEMETRY_SINK)
    if value:
        return value.strip().lower()
    telemetry = _load_config().get("telemetry") or {}
    return str(telemetry.get("sink") or "noop").lower()


def get_telemetry_batch_size() -> int:
    telemetry = _load_config().get("telemetry") or {}
    return _clamp_int_value(int(telemetry.get("batch_size", 50)), "telemetry.batch_size", 1, 10_000)


def get_state_dir() -> Optional[Path]:
    """Directory for file-backed state, or None when persistence is off."""
    value = os.environ.get(ENV_STATE_DIR) or get_default("state_dir")
    return Path(value) if value else None
