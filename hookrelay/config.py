"""Application configuration: webhook settings, storage location, ingress server."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from hookrelay.errors import ConfigError

logger = logging.getLogger(__name__)

HOME_ENV_VAR = "HOOKRELAY_HOME"
_DEFAULT_HOME = "~/.hookrelay"


class _CamelModel(BaseModel):
    """Accepts both ``snake_case`` field names and ``camelCase`` aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InjectionConfig(_CamelModel):
    """Settings for surfacing pending events into the assistant context."""

    enabled: bool = True
    max_per_turn: int = Field(default=5, gt=0)


class StorageConfig(_CamelModel):
    """Settings for on-disk event storage and retention."""

    base_path: str = ""
    max_events: int = Field(default=1000, gt=0)
    max_age_days: int = Field(default=30, gt=0)
    cleanup_interval_minutes: int = Field(default=60, gt=0)


class SecurityConfig(_CamelModel):
    """Replay protection and per-webhook rate limiting."""

    max_timestamp_age_ms: int = Field(default=300_000, gt=0)
    rate_limit_per_minute: int = Field(default=60, gt=0)


class WebhooksConfig(_CamelModel):
    """Settings consumed by ``WebhooksManager``."""

    enabled: bool = False
    injection: InjectionConfig = Field(default_factory=InjectionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)


class ServerConfig(_CamelModel):
    """Settings for the HTTP ingress adapter."""

    host: str = "127.0.0.1"
    port: int = 8743
    max_body_bytes: int = 262144


class HookrelayConfig(_CamelModel):
    """Top-level configuration loaded from config.json."""

    log_level: str = "INFO"
    home: str = ""
    webhooks: WebhooksConfig = Field(default_factory=WebhooksConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


def resolve_home(configured: str = "") -> Path:
    """Resolve the data directory: config value -> ``$HOOKRELAY_HOME`` -> ``~/.hookrelay``."""
    raw = configured.strip() or os.environ.get(HOME_ENV_VAR, "").strip() or _DEFAULT_HOME
    return Path(raw).expanduser()


def resolve_base_path(config: WebhooksConfig, home: str = "") -> Path:
    """Return the webhook storage root, defaulting to ``<home>/webhooks``."""
    if config.storage.base_path.strip():
        return Path(config.storage.base_path).expanduser()
    return resolve_home(home) / "webhooks"


def deep_merge_config(
    user: dict[str, object],
    defaults: dict[str, object],
) -> tuple[dict[str, object], bool]:
    """Recursively merge *defaults* into *user*, preserving user values.

    Returns ``(merged_dict, changed)`` where *changed* is True when new keys were added.
    """
    result: dict[str, object] = dict(user)
    changed = False
    new_keys = 0
    for key, default_val in defaults.items():
        if key not in result:
            result[key] = default_val
            changed = True
            new_keys += 1
        elif isinstance(default_val, dict) and isinstance(result[key], dict):
            sub_merged, sub_changed = deep_merge_config(
                result[key],  # type: ignore[arg-type]
                default_val,
            )
            result[key] = sub_merged
            changed = changed or sub_changed
    if new_keys:
        logger.info("Config deep-merge: %d new keys added", new_keys)
    return result, changed


def load_config(config_path: Path) -> HookrelayConfig:
    """Load config.json, creating it with defaults on first use.

    New default keys from framework updates are merged into the user's file
    and written back. Raises ``ConfigError`` for unreadable or invalid files.
    """
    defaults = HookrelayConfig().model_dump(mode="json", by_alias=True)

    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        _write_json(config_path, defaults)
        logger.info("Created default config at %s", config_path)
        return HookrelayConfig.model_validate(defaults)

    try:
        user_data = json.loads(config_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        msg = f"Failed to read config at {config_path}: {exc}"
        raise ConfigError(msg) from exc
    if not isinstance(user_data, dict):
        msg = f"Config at {config_path} must be a JSON object"
        raise ConfigError(msg)

    try:
        config = HookrelayConfig.model_validate(user_data)
    except ValidationError as exc:
        msg = f"Invalid config at {config_path}: {exc}"
        raise ConfigError(msg) from exc

    merged, changed = deep_merge_config(user_data, defaults)
    if changed:
        _write_json(config_path, merged)
        logger.info("Extended config with new default fields")
    return config


def _write_json(path: Path, data: dict[str, object]) -> None:
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
