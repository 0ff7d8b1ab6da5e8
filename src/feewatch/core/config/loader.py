"""
YAML configuration loading.

Resolution order for every setting:
1. model defaults
2. ``configs/app.yaml`` (or the file named by ``FEEWATCH_CONFIG``), with
   ``${VAR}`` / ``${VAR:-default}`` references expanded
3. ``FEEWATCH_*`` override variables (see ENV_OVERRIDES)
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from .models import AppConfig

DEFAULT_APP_CONFIG_PATH = Path("configs/app.yaml")
CONFIG_PATH_ENV = "FEEWATCH_CONFIG"

# Environment variable -> dotted config key
ENV_OVERRIDES: dict[str, str] = {
    "FEEWATCH_DATABASE_URL": "database.url",
    "FEEWATCH_RPC_URL": "chain.rpc_url",
    "FEEWATCH_CONTRACT_ADDRESS": "chain.contract_address",
    "FEEWATCH_BATCH_SIZE": "scanner.batch_size",
    "FEEWATCH_SCAN_INTERVAL_MS": "scanner.maintenance_interval_ms",
    "FEEWATCH_LOG_LEVEL": "logging.level",
}

_ENV_REFERENCE = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


class ConfigError(Exception):
    """Configuration loading or validation error."""

    def __init__(self, message: str, path: Path | None = None, details: str | None = None):
        self.path = path
        self.details = details
        super().__init__(message)


def resolve_config_path(path: Path | str | None = None) -> Path:
    """Explicit path, else ``$FEEWATCH_CONFIG``, else ``configs/app.yaml``."""
    if path is not None:
        return Path(path)
    return Path(os.environ.get(CONFIG_PATH_ENV) or DEFAULT_APP_CONFIG_PATH)


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}", path=path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}", path=path, details=str(e)) from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}", path=path, details=str(e)) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top level of {path} must be a mapping", path=path)
    return data


def expand_env_references(value: Any) -> Any:
    """Replace ``${VAR}`` / ``${VAR:-default}`` inside every string value."""
    if isinstance(value, str):
        return _ENV_REFERENCE.sub(
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            value,
        )
    if isinstance(value, dict):
        return {key: expand_env_references(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env_references(item) for item in value]
    return value


def apply_env_overrides(
    data: dict[str, Any],
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Set each configured dotted key whose override variable is non-empty."""
    environ = os.environ if environ is None else environ
    for var, dotted in ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        *parents, leaf = dotted.split(".")
        section = data
        for name in parents:
            # An empty YAML section (``scanner:``) parses as None
            if section.get(name) is None:
                section[name] = {}
            elif not isinstance(section[name], dict):
                raise ConfigError(f"Cannot apply {var}: '{name}' must be a mapping")
            section = section[name]
        section[leaf] = value
    return data


def _validate(data: dict[str, Any], path: Path) -> AppConfig:
    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid app configuration in {path}",
            path=path,
            details=str(e),
        ) from e


def load_app_config(
    path: Path | str | None = None,
    expand_env: bool = True,
) -> AppConfig:
    """Load and validate the application configuration.

    A missing file is not an error: defaults plus environment overrides
    are used instead.

    Raises:
        ConfigError: If the file cannot be parsed or fails validation
    """
    path = resolve_config_path(path)
    data = _read_yaml(path) if path.exists() else {}

    if expand_env:
        data = expand_env_references(data)
        data = apply_env_overrides(data)

    return _validate(data, path)


def validate_app_config_file(path: Path | str) -> list[str]:
    """Check a config file and return readable problems (empty when valid)."""
    path = Path(path)
    try:
        data = _read_yaml(path)
    except ConfigError as e:
        return [str(e)]

    try:
        AppConfig.model_validate(expand_env_references(data))
    except ValidationError as e:
        return [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        ]
    return []
