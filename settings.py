import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

import yaml

SERVICE_ACCOUNT_NAMESPACE = "/var/run/secrets/kubernetes.io/serviceaccount/namespace"

ENV_VARS = {
    "namespace": "FENCING_NAMESPACE",
    "workers": "FENCING_WORKERS",
    "resync_seconds": "FENCING_RESYNC_SECONDS",
    "max_retry_delay": "FENCING_MAX_RETRY_DELAY",
    "log_level": "LOG_LEVEL",
}
CONFIG_FILE_ENV = "FENCING_CONFIG"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    """Process-wide controller configuration, fixed at startup"""
    namespace: Optional[str] = None
    workers: int = 4
    resync_seconds: int = 300
    max_retry_delay: int = 300
    log_level: str = "INFO"


_MINIMUMS = {"workers": 1, "resync_seconds": 1, "max_retry_delay": 1}


def _coerce(name: str, value: Any) -> Any:
    if name in _MINIMUMS:
        try:
            value = int(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"{name} must be an integer, got: {value!r}") from e
        if value < _MINIMUMS[name]:
            raise ValueError(f"{name} must be >= {_MINIMUMS[name]}, got: {value}")
        return value

    if name == "log_level":
        level = str(value).upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {value!r}")
        return level

    value = str(value).strip()
    if not value:
        raise ValueError(f"{name} must be a non-empty string")
    return value


def load_file(path: str) -> Dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    known = {f.name for f in fields(Settings)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown settings in {path}: {', '.join(sorted(unknown))}")
    return data


def service_account_namespace(path: str = SERVICE_ACCOUNT_NAMESPACE) -> Optional[str]:
    try:
        with open(path) as f:
            return f.read().strip() or None
    except OSError:
        return None


def load_settings(config_file: Optional[str] = None,
                  environ: Optional[Mapping[str, str]] = None,
                  **overrides) -> Settings:
    """Build Settings from defaults, a YAML file, the environment and explicit overrides.

    Later sources win. Overrides set to None are ignored so argparse results
    can be passed straight through.
    """
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {}

    config_file = config_file or environ.get(CONFIG_FILE_ENV)
    if config_file:
        values.update({k: v for k, v in load_file(config_file).items() if v is not None})
        logger.debug(f"Loaded settings from {config_file}")

    for name, var in ENV_VARS.items():
        if environ.get(var):
            values[name] = environ[var]

    values.update({k: v for k, v in overrides.items() if v is not None})

    settings = replace(Settings(), **{k: _coerce(k, v) for k, v in values.items()})
    if settings.namespace is None:
        settings = replace(settings, namespace=service_account_namespace() or "default")
    return settings
