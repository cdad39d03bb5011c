"""Controller configuration.

Values come from a YAML file (camelCase keys) with a couple of environment
overrides. Durations use the Go-style notation found in StackSet annotations,
e.g. "90s", "1m", "1h30m".
"""

import logging
import os
import re
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any

import yaml

from stackset_controller.errors import MisconfigurationError

CONFIG_PATH_ENV = "STACKSET_CONTROLLER_CONFIG"
NAMESPACE_ENV = "STACKSET_NAMESPACE"
DEFAULT_CONFIG_PATH = "/config.yaml"

API_GROUP = "zalando.org"
API_VERSION = "v1"
STACKSET_PLURAL = "stacksets"
STACK_PLURAL = "stacks"

PRESCALE_ANNOTATION = "alpha.stackset-controller.zalando.org/prescale-stacks"
PRESCALE_TIMEOUT_ANNOTATION = "alpha.stackset-controller.zalando.org/reset-hpa-min-replicas-delay"
DESIRED_WEIGHTS_ANNOTATION = "zalando.org/stack-traffic-weights"
ACTUAL_WEIGHTS_ANNOTATION = "zalando.org/backend-weights"
STACKSET_LABEL = "stackset"
VERSION_LABEL = "stack-version"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: str | int | float) -> timedelta:
    """Parse "1h30m", "90s", "1m" or a plain number of seconds."""
    if isinstance(value, bool):
        raise MisconfigurationError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise MisconfigurationError(f"negative duration: {value!r}")
        return timedelta(seconds=value)
    s = str(value).strip()
    if not s:
        raise MisconfigurationError("empty duration")
    if re.fullmatch(r"\d+(?:\.\d+)?", s):
        return timedelta(seconds=float(s))
    pos = 0
    seconds = 0.0
    for m in _DURATION_PART.finditer(s):
        if m.start() != pos:
            break
        seconds += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos != len(s):
        raise MisconfigurationError(f"invalid duration: {value!r}")
    return timedelta(seconds=seconds)


@dataclass(frozen=True)
class ControllerConfig:
    namespace: str = "default"
    interval_seconds: float = 10.0
    workers: int = 2
    default_prescaling_timeout: timedelta = field(default_factory=lambda: timedelta(minutes=5))
    convergence_tolerance: float = 0.5
    negligible_weight: float = 0.0
    weight_sum_tolerance: float = 0.01
    log_level: str = "INFO"
    log_file: str | None = None
    in_cluster: bool = True

    @property
    def log_level_value(self) -> int:
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO


_KEYS = {
    "namespace": "namespace",
    "intervalSeconds": "interval_seconds",
    "workers": "workers",
    "defaultPrescalingTimeout": "default_prescaling_timeout",
    "convergenceTolerance": "convergence_tolerance",
    "negligibleWeight": "negligible_weight",
    "weightSumTolerance": "weight_sum_tolerance",
    "logLevel": "log_level",
    "logFile": "log_file",
    "inCluster": "in_cluster",
}


def config_from_dict(raw: dict[str, Any]) -> ControllerConfig:
    unknown = set(raw) - set(_KEYS)
    if unknown:
        raise MisconfigurationError(f"unknown configuration keys: {sorted(unknown)}")

    values: dict[str, Any] = {_KEYS[k]: v for k, v in raw.items()}
    if "default_prescaling_timeout" in values:
        values["default_prescaling_timeout"] = parse_duration(values["default_prescaling_timeout"])
    for key in ("interval_seconds", "convergence_tolerance", "negligible_weight", "weight_sum_tolerance"):
        if key in values:
            try:
                values[key] = float(values[key])
            except (TypeError, ValueError):
                raise MisconfigurationError(f"{key} must be a number, got {values[key]!r}")
    if "workers" in values:
        if not isinstance(values["workers"], int) or values["workers"] < 1:
            raise MisconfigurationError(f"workers must be a positive integer, got {values['workers']!r}")
    if values.get("interval_seconds", 1.0) <= 0:
        raise MisconfigurationError("intervalSeconds must be positive")
    return ControllerConfig(**values)


def load_config(configfile: str | None = None) -> ControllerConfig:
    path = configfile or os.getenv(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH)
    cfg = ControllerConfig()
    if os.path.exists(path):
        with open(path) as file:
            try:
                raw = yaml.safe_load(file)
            except yaml.YAMLError as e:
                raise MisconfigurationError(f"failed to parse config file {path}: {e}")
        if raw is not None:
            if not isinstance(raw, dict):
                raise MisconfigurationError(f"config file {path} must contain a mapping")
            cfg = config_from_dict(raw)

    namespace = os.getenv(NAMESPACE_ENV)
    if namespace:
        cfg = replace(cfg, namespace=namespace)
    return cfg


__all__ = [
    "ControllerConfig",
    "config_from_dict",
    "load_config",
    "parse_duration",
]
