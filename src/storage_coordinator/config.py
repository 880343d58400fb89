"""Configuration loading: TOML file + environment variables + deployments.json."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Callable

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:
    import tomli as tomllib  # type: ignore[no-redef]

from storage_coordinator.errors import ConfigError
from storage_coordinator.models.config import CoordinatorConfig, ProviderAgentConfig

ENV_PREFIX = "STORAGE_COORD_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _read_toml(config_path: str | Path | None) -> dict:
    if config_path is None:
        return {}
    p = Path(config_path).expanduser()
    if not p.exists():
        return {}
    try:
        with open(p, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{p}: {exc}") from exc


def _apply(target: object, section: dict, fields: dict[str, Callable[[Any], Any]], where: str) -> None:
    """Copy the keys of one TOML section onto target, converting each value."""
    for key, convert in fields.items():
        if key not in section or section[key] is None:
            continue
        try:
            setattr(target, key, convert(section[key]))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"[{where}] {key}: {exc}") from None


def _apply_env(target: object, fields: dict[str, Callable[[Any], Any]], env_prefix: str) -> None:
    for key, convert in fields.items():
        value = os.environ.get(f"{env_prefix}{key.upper()}")
        if not value:
            continue
        try:
            setattr(target, key, convert(value))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{env_prefix}{key.upper()}: {exc}") from None


_COORDINATOR_FIELDS: dict[str, Callable[[Any], Any]] = {
    "host": str,
    "port": int,
    "poll_interval": int,
    "error_backoff": int,
    "log_level": str,
    "ws_heartbeat": float,
}
_STELLAR_FIELDS: dict[str, Callable[[Any], Any]] = {
    "network": str,
    "rpc_url": str,
    "contract_id": str,
    "start_ledger": int,
}
_STORAGE_FIELDS: dict[str, Callable[[Any], Any]] = {
    "db_path": str,
}
_TRANSFER_FIELDS: dict[str, Callable[[Any], Any]] = {
    "transfer_timeout": float,
    "reaper_interval": float,
    "max_upload_mb": int,
    "capacity_aware": _to_bool,
}
_PROVIDER_FIELDS: dict[str, Callable[[Any], Any]] = {
    "server_url": str,
    "provider_address": str,
    "storage_dir": str,
    "reconnect_delay": float,
}

# Overridable from the environment (highest priority)
_COORDINATOR_ENV: dict[str, Callable[[Any], Any]] = {
    "host": str,
    "port": int,
    "log_level": str,
    "network": str,
    "rpc_url": str,
    "contract_id": str,
    "start_ledger": int,
    "db_path": str,
    "transfer_timeout": float,
}


def load_config(
    config_path: str | Path | None = None,
    env_prefix: str = ENV_PREFIX,
) -> CoordinatorConfig:
    """Load coordinator configuration from TOML file, env vars, and deployments.json.

    Priority (highest wins):
        1. Environment variables (STORAGE_COORD_CONTRACT_ID, etc.)
        2. TOML config file
        3. Defaults from CoordinatorConfig
    """
    raw = _read_toml(config_path)
    cfg = CoordinatorConfig()

    _apply(cfg, raw.get("coordinator", {}), _COORDINATOR_FIELDS, "coordinator")

    stellar = raw.get("stellar", {})
    _apply(cfg, stellar, _STELLAR_FIELDS, "stellar")
    # Contract ID from deployments.json if not explicitly set
    if not cfg.contract_id:
        _load_deployments(cfg, stellar.get("deployments_path", "deployments.json"))

    _apply(cfg, raw.get("storage", {}), _STORAGE_FIELDS, "storage")
    _apply(cfg, raw.get("transfers", {}), _TRANSFER_FIELDS, "transfers")

    _apply_env(cfg, _COORDINATOR_ENV, env_prefix)

    if cfg.db_path != ":memory:":
        cfg.db_path = str(Path(cfg.db_path).expanduser())
    return cfg


def load_agent_config(
    config_path: str | Path | None = None,
    env_prefix: str = ENV_PREFIX,
) -> ProviderAgentConfig:
    """Load the [provider] section; STORAGE_COORD_PROVIDER_ADDRESS etc. override it."""
    raw = _read_toml(config_path)
    cfg = ProviderAgentConfig()
    _apply(cfg, raw.get("provider", {}), _PROVIDER_FIELDS, "provider")
    _apply_env(cfg, _PROVIDER_FIELDS, env_prefix)
    cfg.storage_dir = str(Path(cfg.storage_dir).expanduser())
    return cfg


def _load_deployments(cfg: CoordinatorConfig, deployments_path: str) -> None:
    """Read the marketplace contract id from a deployments.json file."""
    p = Path(deployments_path).expanduser()
    if not p.is_absolute():
        p = Path.cwd() / p
    if not p.exists():
        return

    try:
        with open(p) as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{p}: {exc}") from exc

    marketplace = data.get("storage_marketplace", {})
    if cid := marketplace.get("contract_id"):
        cfg.contract_id = str(cid)
