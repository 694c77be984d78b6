# Copyright (C) 2022-2025, Pyronear.

# This program is licensed under the Apache License 2.0.
# See LICENSE or go to <https://opensource.org/licenses/Apache-2.0> for full license details.

import logging
import math
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

import yaml

__all__ = ["ConfigError", "Settings", "load_settings", "parse_duration"]

logger = logging.getLogger(__name__)

ENV_PREFIX = "BOUNCER_"
RELAY_BACKENDS = ("gpio", "noop")

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


class ConfigError(Exception):
    pass


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Convert a duration to float seconds.

    Plain numbers are seconds, strings may also use Go style units, e.g. "1m30s", "500ms" or "1.5h".

    Args:
        value: number of seconds or duration string

    Returns:
        float: duration in seconds, sub-second precision is kept

    Raises:
        ConfigError: if the value cannot be parsed
    """
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    if not isinstance(value, str):
        raise ConfigError(f"invalid duration: {value!r}")

    text = value.strip()
    sign = 1.0
    if text[:1] in ("-", "+"):
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if not text:
        raise ConfigError(f"invalid duration: {value!r}")

    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            raise ConfigError(f"invalid duration: {value!r}")
        return sign * seconds

    total, pos = 0.0, 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ConfigError(f"invalid duration: {value!r}")
    return sign * total


def _parse_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"invalid integer: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid integer: {value!r}") from e


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ConfigError(f"invalid boolean: {value!r}")


def _parse_sites(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"sites must be a list of URLs, got {value!r}")
    sites = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"invalid site: {item!r}")
        sites.extend(site.strip() for site in item.split(",") if site.strip())
    return tuple(sites)


def _parse_low_pin(value: Any) -> Optional[int]:
    if value is None:
        return None
    pin = _parse_int(value)
    return pin if pin >= 0 else None


def _parse_relay(value: Any) -> str:
    return str(value).strip().lower()


@dataclass(frozen=True)
class Settings:
    """Fully validated runtime settings, durations are float seconds"""

    sites: Tuple[str, ...]
    check_interval: float = 120.0
    check_jitter: float = 10.0
    check_timeout: float = 30.0
    retry_interval: float = 20.0
    retry_jitter: float = 4.0
    failures: int = 5
    bounce_duration: float = 10.0
    bounce_timeout: float = 600.0
    high_pin: int = 21
    low_pin: Optional[int] = None
    relay: str = "gpio"
    debug: bool = False

    def __post_init__(self) -> None:
        if not self.sites:
            raise ConfigError("at least one site to check is required")
        if self.failures < 1:
            raise ConfigError(f"failures must be at least 1, got {self.failures}")
        if self.check_timeout <= 0:
            raise ConfigError(f"check-timeout must be positive, got {self.check_timeout}")
        for name in ("check_interval", "check_jitter", "retry_interval", "retry_jitter", "bounce_duration",
                     "bounce_timeout"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name.replace('_', '-')} must not be negative, got {getattr(self, name)}")
        if self.relay not in RELAY_BACKENDS:
            raise ConfigError(f"relay must be one of {', '.join(RELAY_BACKENDS)}, got {self.relay!r}")


_PARSERS: Dict[str, Callable[[Any], Any]] = {
    "sites": _parse_sites,
    "check_interval": parse_duration,
    "check_jitter": parse_duration,
    "check_timeout": parse_duration,
    "retry_interval": parse_duration,
    "retry_jitter": parse_duration,
    "failures": _parse_int,
    "bounce_duration": parse_duration,
    "bounce_timeout": parse_duration,
    "high_pin": _parse_int,
    "low_pin": _parse_low_pin,
    "relay": _parse_relay,
    "debug": _parse_bool,
}


def _read_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"could not read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"could not parse config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")

    options = {}
    for key, value in data.items():
        name = str(key).replace("-", "_")
        if name not in _PARSERS:
            raise ConfigError(f"unknown option {key!r} in config file {path}")
        options[name] = value
    return options


def _read_env(env: Mapping[str, str]) -> Dict[str, Any]:
    options = {}
    for name in _PARSERS:
        value = env.get(f"{ENV_PREFIX}{name.upper()}")
        if value is not None:
            options[name] = value
    return options


def load_settings(
    config_path: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Settings:
    """
    Build the settings from, in increasing order of precedence: defaults, YAML config file,
    environment variables and explicit overrides (usually command line flags).

    Args:
        config_path: YAML config file, falls back to the BOUNCER_CONFIG environment variable
        env: environment to read BOUNCER_* variables from, defaults to os.environ
        overrides: option values keyed by field name, None values are ignored

    Raises:
        ConfigError: on unreadable files, unknown options or invalid values
    """
    env = os.environ if env is None else env
    config_path = config_path or env.get(f"{ENV_PREFIX}CONFIG")

    raw: Dict[str, Any] = {}
    if config_path:
        logger.debug(f"Loading config file {config_path}")
        raw.update(_read_yaml(config_path))
    raw.update(_read_env(env))
    raw.update({k: v for k, v in (overrides or {}).items() if v is not None and k in _PARSERS})

    values = {name: _PARSERS[name](value) for name, value in raw.items()}
    if "sites" not in values:
        raise ConfigError("at least one site to check is required")

    return Settings(**values)
