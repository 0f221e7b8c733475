import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

PER_DEVICE_KEYS = (
    "min_voltage",
    "max_voltage",
    "start_voltage",
    "target_temperature",
    "max_temperature",
    "base_clock_offset",
    "memory_clock_offset",
)

EMIT_FAILURE_POLICIES = ("exit", "log")
TELEMETRY_MODES = ("query", "stream")


def default_reboot_command() -> List[str]:
    if os.name == "nt":
        return ["shutdown", "/r", "/t", "0"]
    return ["shutdown", "-r", "now"]


DEFAULT_CONFIG: Dict[str, Any] = {
    "nvidia_smi": "nvidia-smi",
    "nvidia_inspector": "nvidiaInspector",
    "devices": [],  # GPU indexes to control, empty = all
    "update_interval": 1.0,  # seconds between voltage updates
    "voltage_step": 6250,  # uV, voltage changes are applied in steps
    "kp": 0.1,  # 0.1 step / 1 degree
    # per GPU, the first entry is the default for unlisted GPUs
    "min_voltage": [700000],
    "max_voltage": [925000],
    "start_voltage": [850000],
    "target_temperature": [60],
    "max_temperature": [90],
    "base_clock_offset": [160],
    "memory_clock_offset": [200],
    "clock_offset_delay": 600.0,  # seconds after start
    "telemetry": {
        "mode": "query",
        "interval": 1.0,
        "history": 60,
        "average_window": 5,
    },
    "tool_timeout": 30.0,
    "on_emit_failure": "exit",
    "reboot_command": default_reboot_command(),
}


class ConfigError(Exception):
    pass


def resolve(values: Sequence[Any], index: int) -> Any:
    """Return the per-device value for a logical index.

    Falls back to the first entry when the index is past the end of the list
    or explicitly set to null. A configured 0 is a real value, not "unset".
    """
    if not values:
        raise ConfigError("Per-device parameter list is empty")
    if index < len(values) and values[index] is not None:
        return values[index]
    return values[0]


def load_config(path: Optional[Path]) -> Dict[str, Any]:
    config = copy.deepcopy(DEFAULT_CONFIG)
    if path is None or not path.exists():
        logger.info(f"No config file at {path}, using built-in defaults")
        return config

    try:
        with open(path, "r") as f:
            overrides = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not read {path}: {e}") from e

    if not isinstance(overrides, dict):
        raise ConfigError(f"{path} must contain a JSON object")

    telemetry = overrides.pop("telemetry", None)
    config.update(overrides)
    if telemetry:
        config["telemetry"].update(telemetry)

    logger.info(f"Loaded config from {path}")
    return config


def validate_config(config: Dict[str, Any], device_count: int):
    """Check the configuration against the number of managed devices.

    Raises ConfigError listing every problem found.
    """
    problems = []

    for key in PER_DEVICE_KEYS:
        values = config.get(key)
        if not isinstance(values, list) or not values or values[0] is None:
            problems.append(f"'{key}' must be a non-empty list with a default first entry")

    if config.get("voltage_step", 0) <= 0:
        problems.append("'voltage_step' must be positive")
    if config.get("update_interval", 0) <= 0:
        problems.append("'update_interval' must be positive")
    if config.get("on_emit_failure") not in EMIT_FAILURE_POLICIES:
        problems.append(f"'on_emit_failure' must be one of {EMIT_FAILURE_POLICIES}")
    if config["telemetry"].get("mode") not in TELEMETRY_MODES:
        problems.append(f"'telemetry.mode' must be one of {TELEMETRY_MODES}")
    if config["telemetry"].get("history", 0) < 1:
        problems.append("'telemetry.history' must be at least 1")
    if config["telemetry"].get("average_window", 0) < 1:
        problems.append("'telemetry.average_window' must be at least 1")

    if problems:
        raise ConfigError("; ".join(problems))

    for i in range(device_count):
        low = resolve(config["min_voltage"], i)
        start = resolve(config["start_voltage"], i)
        high = resolve(config["max_voltage"], i)
        if not low <= start <= high:
            problems.append(
                f"Managed GPU {i}: expected min_voltage <= start_voltage <= max_voltage, "
                f"got {low} / {start} / {high}"
            )

    if problems:
        raise ConfigError("; ".join(problems))
