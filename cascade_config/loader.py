"""
Configuration loader (``cascade_config.loader``).

Responsibility
--------------
Reads a YAML file with PyYAML ``safe_load`` and parses it into the frozen
``CascadeConfig``. Keys that are absent keep their defaults; unknown keys
and values of the wrong shape are rejected.

Failure modes
-------------
* Missing file, malformed YAML, unknown key or bad value
  -> ``ConfigurationError`` naming the file and the problem.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import os
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from cascade_kernel.exceptions import ConfigurationError
from cascade_kernel.logging_config import get_logger

from cascade_config.schema import CascadeConfig, PoolAccountConfig

logger = get_logger("config.loader")

CONFIG_PATH_ENV = "COSTCASCADE_CONFIG"

_INT_FIELDS = (
    "in_query_limit",
    "write_batch_limit",
    "rate_lookback_days",
    "max_cascade_rounds",
    "poll_interval_seconds",
    "dispatch_batch_size",
)
_STR_FIELDS = ("pool_currency", "base_currency")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load one YAML file; an empty file yields ``{}``."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigurationError(str(path), "file not found") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(str(path), f"malformed YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")
    return data


def _prefixes(value: Any, source: str, key: str) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        raise ConfigurationError(source, f"pool_accounts.{key} must be a list")
    return tuple(str(v).strip() for v in value if str(v).strip())


def parse_pool_accounts(data: Any, source: str = "<dict>") -> PoolAccountConfig:
    if not isinstance(data, dict):
        raise ConfigurationError(source, "pool_accounts must be a mapping")
    unknown = set(data) - {"included", "excluded", "ignored"}
    if unknown:
        raise ConfigurationError(source, f"unknown pool_accounts keys: {sorted(unknown)}")
    defaults = PoolAccountConfig()
    return PoolAccountConfig(
        included=_prefixes(data["included"], source, "included") if "included" in data else defaults.included,
        excluded=_prefixes(data["excluded"], source, "excluded") if "excluded" in data else defaults.excluded,
        ignored=_prefixes(data["ignored"], source, "ignored") if "ignored" in data else defaults.ignored,
    )


def parse_config(data: dict[str, Any], source: str = "<dict>") -> CascadeConfig:
    """Build a CascadeConfig from a parsed YAML mapping."""
    known = {f.name for f in dataclasses.fields(CascadeConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(source, f"unknown keys: {sorted(unknown)}")

    values: dict[str, Any] = {}

    if "change_tolerance" in data:
        try:
            tolerance = Decimal(str(data["change_tolerance"]))
        except InvalidOperation as exc:
            raise ConfigurationError(source, "change_tolerance must be a number") from exc
        if not tolerance.is_finite() or tolerance < 0:
            raise ConfigurationError(source, "change_tolerance must be a non-negative number")
        values["change_tolerance"] = tolerance

    for name in _INT_FIELDS:
        if name not in data:
            continue
        value = data[name]
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ConfigurationError(source, f"{name} must be a positive integer")
        values[name] = value

    for name in _STR_FIELDS:
        if name in data:
            values[name] = str(data[name]).strip().upper()

    if "pool_accounts" in data:
        values["pool_accounts"] = parse_pool_accounts(data["pool_accounts"], source)

    if "alert_user_ids" in data:
        raw = data["alert_user_ids"] or []
        if not isinstance(raw, (list, tuple)):
            raise ConfigurationError(source, "alert_user_ids must be a list")
        values["alert_user_ids"] = tuple(str(v) for v in raw)

    return CascadeConfig(**values)


def compute_checksum(config: CascadeConfig) -> str:
    """Deterministic SHA-256 of the effective configuration."""
    canonical = json.dumps(dataclasses.asdict(config), sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def load_config(path: str | Path | None = None) -> CascadeConfig:
    """
    Load the cascade configuration.

    Resolution order: explicit ``path``, then ``$COSTCASCADE_CONFIG``,
    then the built-in defaults.
    """
    resolved = path or os.environ.get(CONFIG_PATH_ENV)
    if not resolved:
        config = CascadeConfig()
        source = "<defaults>"
    else:
        source = str(resolved)
        config = parse_config(load_yaml_file(Path(resolved)), source)

    logger.info(
        "cascade_config_loaded",
        extra={
            "source": source,
            "checksum": compute_checksum(config),
            "change_tolerance": config.change_tolerance,
            "in_query_limit": config.in_query_limit,
            "write_batch_limit": config.write_batch_limit,
        },
    )
    return config
