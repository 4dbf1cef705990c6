"""Configuration loader for rumdelta.

This module provides:
- Typed config models (pydantic BaseModel)
- Precedence-aware loader: file (YAML) < legacy Lambda ENV < ENV (RUMDELTA__*) < CLI overrides
- Minimal coercion for ENV values (bool/int/float)

ENV format (nested via delimiter):
  RUMDELTA__graph__client_id=00000000-0000-0000-0000-000000000000
  RUMDELTA__graph__username=svc.calendar@example.com
  RUMDELTA__store__bucket=my-export-bucket
  RUMDELTA__store__cursor_key=deltaToken.txt
  RUMDELTA__sync__start_date_time=2021-06-01T00:00:00-00:00

Legacy Lambda variables are still honored (clientId, username, password, bucket,
deltaToken_key, startDateTime, endDateTime) so existing function configurations
keep working.

Example:
  cfg = load_config("/etc/rumdelta/config.yaml", cli_overrides={"sync": {"page_size": 50}})
  print(cfg.store.bucket)
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

# ----------------------------
# Pydantic models (typed config)
# ----------------------------


class GraphConfig(BaseModel):
    client_id: str | None = None
    username: str | None = None
    password: str | None = None  # recommended to use ENV (GRAPH_PASSWORD)
    tenant: str = "organizations"
    authority_host: str = "https://login.microsoftonline.com"
    base_url: str = "https://graph.microsoft.com/v1.0"
    scopes: list[str] = Field(default_factory=lambda: ["https://graph.microsoft.com/.default"])

    @field_validator("authority_host", "base_url")
    @classmethod
    def _validate_url(cls, v: str) -> str:
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError("graph urls must start with http:// or https://")
        return v.rstrip("/")


class StoreConfig(BaseModel):
    backend: Literal["s3", "local"] = "s3"
    bucket: str | None = None
    prefix: str = "RUM-CSV-data"
    cursor_key: str = "deltaToken.txt"
    region: str = "ap-southeast-1"
    endpoint_url: str | None = None  # MinIO/LocalStack
    local_root: str = "./rumdelta-store"

    @field_validator("prefix")
    @classmethod
    def _strip_prefix(cls, v: str) -> str:
        v = v.strip("/")
        if ".." in v.split("/"):
            raise ValueError("store.prefix must not contain '..' segments")
        return v

    @field_validator("cursor_key")
    @classmethod
    def _validate_cursor_key(cls, v: str) -> str:
        v = v.strip("/")
        if not v:
            raise ValueError("store.cursor_key must not be empty")
        if ".." in v.split("/"):
            raise ValueError("store.cursor_key must not contain '..' segments")
        return v

    @model_validator(mode="after")
    def _bucket_required_for_s3(self) -> StoreConfig:
        if self.backend == "s3" and not self.bucket:
            raise ValueError("store.bucket is required when store.backend is 's3'")
        return self


class SyncConfig(BaseModel):
    # Full-window bounds used when no cursor is stored; passed through verbatim
    start_date_time: str | None = None
    end_date_time: str | None = None
    # Sent as Prefer: odata.maxpagesize on every request of a walk
    page_size: int = Field(200, ge=1, le=1000)
    work_dir: str = "/tmp"
    timeout_sec: float = Field(30.0, gt=0, le=300)


class LoggingConfig(BaseModel):
    # Allow using alias "json" in config/env while avoiding BaseModel.json clash
    model_config = ConfigDict(populate_by_name=True)
    level: str = "INFO"
    as_json: bool = Field(False, alias="json")

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, v: str) -> str:
        lv = (v or "INFO").upper()
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if lv not in allowed:
            raise ValueError(f"logging.level must be one of {sorted(allowed)}")
        return lv


def _default_graph_config() -> GraphConfig:
    return GraphConfig()


def _default_sync_config() -> SyncConfig:
    return SyncConfig()


def _default_logging_config() -> LoggingConfig:
    return LoggingConfig(json=False)


class AppConfig(BaseModel):
    graph: GraphConfig = Field(default_factory=_default_graph_config)
    store: StoreConfig
    sync: SyncConfig = Field(default_factory=_default_sync_config)
    logging: LoggingConfig = Field(default_factory=_default_logging_config)


__all__ = [
    "AppConfig",
    "GraphConfig",
    "LoggingConfig",
    "StoreConfig",
    "SyncConfig",
    "load_config",
    "merge_dicts",
    "read_env_config",
    "read_legacy_env_config",
]


# ----------------------------
# Utilities
# ----------------------------


_BOOL_TRUE = {"1", "true", "yes", "on", "y", "t"}
_BOOL_FALSE = {"0", "false", "no", "off", "n", "f"}

# Flat variable names used by earlier Lambda deployments
_LEGACY_ENV: dict[str, tuple[str, str]] = {
    "clientId": ("graph", "client_id"),
    "username": ("graph", "username"),
    "password": ("graph", "password"),
    "bucket": ("store", "bucket"),
    "deltaToken_key": ("store", "cursor_key"),
    "startDateTime": ("sync", "start_date_time"),
    "endDateTime": ("sync", "end_date_time"),
}


def _coerce_value(val: str) -> Any:
    """Best-effort coercion for ENV values."""
    s = val.strip()

    ls = s.lower()
    if ls in _BOOL_TRUE:
        return True
    if ls in _BOOL_FALSE:
        return False

    if re.fullmatch(r"[+-]?\d+", s):
        return int(s)
    if re.fullmatch(r"[+-]?\d+\.\d*", s):
        return float(s)

    return s


def merge_dicts(
    base: MutableMapping[str, Any], override: Mapping[str, Any]
) -> MutableMapping[str, Any]:
    """Deep-merge override into base (mutates base). Lists/atoms are replaced."""
    for k, v in override.items():
        if k in base and isinstance(base[k], dict) and isinstance(v, Mapping):
            merge_dicts(base[k], v)
        else:
            base[k] = v
    return base


def read_yaml_config(path: Path | None) -> dict[str, Any]:
    if not path:
        return {}
    p = Path(path).resolve()

    # Only read configuration from expected locations
    allowed_prefixes = [
        Path.home(),
        Path("/etc/rumdelta"),
        Path("/opt/rumdelta"),
        Path("/var/task"),  # Lambda deployment package
        Path.cwd(),
        Path("/tmp"),
    ]

    path_allowed = False
    for prefix in allowed_prefixes:
        try:
            p.relative_to(prefix.resolve())
            path_allowed = True
            break
        except ValueError:
            continue

    if not path_allowed:
        raise ValueError(
            f"Configuration file path '{p}' is outside allowed directories. "
            f"Allowed prefixes: {[str(prefix) for prefix in allowed_prefixes]}"
        )

    if not p.exists():
        return {}
    with p.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Top-level YAML must be a mapping in {p}")
        return data


def read_legacy_env_config() -> dict[str, Any]:
    """Map the flat variables of earlier Lambda deployments to nested config.

    Values are kept as strings; window bounds and passwords must not be coerced.
    """
    result: dict[str, Any] = {}
    for env_key, (section, field) in _LEGACY_ENV.items():
        raw = os.environ.get(env_key)
        if raw:
            result.setdefault(section, {})[field] = raw
    graph_password = os.environ.get("GRAPH_PASSWORD")
    if graph_password:
        result.setdefault("graph", {})["password"] = graph_password
    return result


def read_env_config(prefix: str = "RUMDELTA__", nested_delim: str = "__") -> dict[str, Any]:
    """Build nested dict from environment variables.

    Keys must start with `prefix` (default 'RUMDELTA__').
    Nested keys split by `nested_delim`.

    Example:
      RUMDELTA__store__bucket=...
      RUMDELTA__sync__page_size=100
    """
    if not prefix.endswith(nested_delim):
        raise ValueError("prefix must end with the nested_delim (default 'RUMDELTA__' and '__').")

    result: dict[str, Any] = {}
    plen = len(prefix)
    for key, raw in os.environ.items():
        if not key.startswith(prefix):
            continue
        path_parts = key[plen:].split(nested_delim)
        cursor = result
        for part in path_parts[:-1]:
            cursor = cursor.setdefault(part, {})
        leaf = path_parts[-1]
        # Secrets and timestamps stay verbatim
        if leaf in {"password", "start_date_time", "end_date_time", "client_id"}:
            cursor[leaf] = raw
        else:
            cursor[leaf] = _coerce_value(raw)
    return result


# ----------------------------
# Loader (precedence: file < legacy env < env < cli_overrides)
# ----------------------------


def load_config(
    file_path: str | Path | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
    env_prefix: str = "RUMDELTA__",
    env_nested_delim: str = "__",
) -> AppConfig:
    """Load AppConfig with precedence: file < legacy env < env < CLI overrides.

    Args:
        file_path: YAML path or None
        cli_overrides: nested mapping of overrides (e.g., from CLI args)
        env_prefix: environment variable prefix (must end with env_nested_delim)
        env_nested_delim: nested delimiter for env vars

    Returns:
        AppConfig instance (validated)
    """
    merged: dict[str, Any] = {}

    merge_dicts(merged, read_yaml_config(Path(file_path) if file_path else None))
    merge_dicts(merged, read_legacy_env_config())
    merge_dicts(merged, read_env_config(prefix=env_prefix, nested_delim=env_nested_delim))

    if cli_overrides:
        if not isinstance(cli_overrides, Mapping):
            raise TypeError("cli_overrides must be a mapping (nested dict-like).")
        merge_dicts(merged, cli_overrides)

    merged.setdefault("store", {})

    try:
        return AppConfig.model_validate(merged)
    except ValidationError as ve:
        raise ValueError(f"Invalid configuration: {ve}") from ve
