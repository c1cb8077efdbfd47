"""Annotation names, defaults and the process configuration.

Configuration is resolved once at startup from built-in defaults, an optional
YAML file and command line flags, in that order, and never changes afterwards.
"""

import re
from dataclasses import dataclass, fields, replace
from typing import Any

import yaml

from pvc_autoscaler.errors import ConfigError

ANNOTATION_PREFIX = "pvc-autoscaler.lorenzophys.io/"
ENABLED_ANNOTATION = ANNOTATION_PREFIX + "enabled"
THRESHOLD_ANNOTATION = ANNOTATION_PREFIX + "threshold"
CEILING_ANNOTATION = ANNOTATION_PREFIX + "ceiling"
INCREASE_ANNOTATION = ANNOTATION_PREFIX + "increase"
PREVIOUS_CAPACITY_ANNOTATION = ANNOTATION_PREFIX + "previous_capacity"
STATUS_ANNOTATION = ANNOTATION_PREFIX + "status"

DEFAULT_THRESHOLD = "80%"
DEFAULT_INCREASE = "20%"

ENABLED_VALUES = ("true", "enabled", "yes", "on", "1")

DEFAULT_CONFIG_FILE = "/config.yaml"

_DURATION_RE = re.compile(r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def is_enabled(annotations: dict[str, str] | None) -> bool:
    """Return True if the enablement annotation is present and truthy."""
    if not annotations:
        return False
    value = annotations.get(ENABLED_ANNOTATION)
    if value is None:
        return False
    return value.strip().lower() in ENABLED_VALUES


def parse_duration(value: Any) -> float:
    """Parse seconds from a number or a string such as "30s", "1m" or "250ms"."""
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        m = _DURATION_RE.match(str(value))
        if m is None:
            raise ConfigError(f"invalid duration {value!r}")
        seconds = float(m.group("value")) * _DURATION_UNITS[m.group("unit")]
    if seconds <= 0:
        raise ConfigError(f"duration must be positive, got {value!r}")
    return seconds


@dataclass(frozen=True)
class AutoscalerConfig:
    polling_interval: float = 30.0
    reconcile_timeout: float = 60.0
    retry_after: float = 300.0
    max_workers: int = 4
    metrics_client: str = "prometheus"
    metrics_client_url: str = "http://prometheus-server.monitoring.svc.cluster.local"
    log_level: str = "INFO"
    log_file: str | None = None
    kubeconfig: str | None = None

    def with_overrides(self, overrides: dict[str, Any]) -> "AutoscalerConfig":
        """Return a copy with the non-None values of `overrides` applied and validated."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigError(f"unknown configuration keys: {', '.join(unknown)}")

        values: dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key in ("polling_interval", "reconcile_timeout", "retry_after"):
                value = parse_duration(value)
            elif key == "max_workers":
                try:
                    value = int(value)
                except (TypeError, ValueError) as e:
                    raise ConfigError(f"max_workers must be an integer: {e}") from e
                if value < 1:
                    raise ConfigError("max_workers must be at least 1")
            else:
                value = str(value)
            values[key] = value
        return replace(self, **values)


def load_config(configfile: str = DEFAULT_CONFIG_FILE) -> dict[str, Any]:
    """Read the YAML configuration file into a mapping of overrides."""
    try:
        with open(configfile) as file:
            config = yaml.safe_load(file)
    except OSError as e:
        raise ConfigError(f"failed to read config file {configfile}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse config file: {e}") from e

    if config is None:
        raise ConfigError("config file was empty")
    if not isinstance(config, dict):
        raise ConfigError("config file must contain a mapping")
    # YAML files use the same dashed names as the command line flags
    return {str(k).replace("-", "_"): v for k, v in config.items()}


def resolve_config(
    configfile: str | None, flags: dict[str, Any] | None = None
) -> AutoscalerConfig:
    config = AutoscalerConfig()
    if configfile:
        config = config.with_overrides(load_config(configfile))
    if flags:
        config = config.with_overrides(flags)
    return config
