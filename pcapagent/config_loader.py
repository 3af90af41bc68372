from __future__ import annotations

import logging
import os
import platform
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_BATCH_SIZE = 20
DEFAULT_PORT = 59037

ENV_OVERRIDES = {
    "PCAPAGENT_REDIS_CONNECTION": "redis_connection",
    "PCAPAGENT_STREAM_KEY": "stream_key",
    "PCAPAGENT_PORT": "port",
    "PCAPAGENT_MAX_BATCH_SIZE": "max_batch_size",
    "PCAPAGENT_FILTERS": "filters",
}


def default_stream_key() -> str:
    return f"host_{platform.node().lower()}"


def _blank_to_none(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class AgentConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    redis_connection: Optional[str] = None
    stream_key: Optional[str] = None
    port: int = DEFAULT_PORT
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE
    filters: Optional[str] = None

    poll_interval_seconds: float = Field(default=1.0, gt=0, le=5.0)
    statistics_interval_seconds: float = Field(default=1.0, gt=0)
    stop_timeout_seconds: float = Field(default=30.0, gt=0)

    forward_workers: int = Field(default=2, ge=1)
    forward_max_attempts: int = Field(default=1, ge=1)
    forward_retry_backoff_seconds: float = Field(default=0.5, ge=0)
    forward_max_pending: int = Field(default=256, ge=1)
    stream_maxlen: Optional[int] = Field(default=None, gt=0)

    @field_validator("redis_connection", "stream_key", "filters", mode="before")
    @classmethod
    def normalize_optional_text(cls, value: object) -> Optional[str]:
        return _blank_to_none(value)

    @field_validator("max_batch_size", mode="before")
    @classmethod
    def fallback_max_batch_size(cls, value: object) -> int:
        # Unlike the sink and filter settings this one has a documented fallback.
        if value is None or (isinstance(value, str) and not value.strip()):
            LOGGER.warning(
                "max_batch_size is not set, using default=%s",
                DEFAULT_MAX_BATCH_SIZE,
                extra={"category": "CONFIG"},
            )
            return DEFAULT_MAX_BATCH_SIZE
        try:
            parsed = int(str(value).strip())
        except (TypeError, ValueError):
            parsed = 0
        if parsed <= 0:
            LOGGER.warning(
                "Invalid max_batch_size=%r, using default=%s",
                value,
                DEFAULT_MAX_BATCH_SIZE,
                extra={"category": "CONFIG"},
            )
            return DEFAULT_MAX_BATCH_SIZE
        return parsed

    @field_validator("port")
    @classmethod
    def validate_port(cls, port: int) -> int:
        if not 0 < port < 65536:
            raise ValueError(f"Port must be between 1 and 65535, got {port}")
        return port

    @property
    def resolved_stream_key(self) -> str:
        return self.stream_key or default_stream_key()

    @property
    def sink_configured(self) -> bool:
        return bool(self.redis_connection)


def _validate(data: Dict[str, Any]) -> AgentConfig:
    try:
        return AgentConfig.model_validate(data)
    except ValidationError as exc:
        LOGGER.error("Config validation failed error=%s", exc, extra={"category": "ERRORS"})
        raise ValueError(f"Invalid configuration: {exc}") from exc


def _read_yaml(config_path: Path) -> Dict[str, Any]:
    try:
        parsed = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in config file: {exc}") from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ValueError("Configuration root must be a YAML object")
    return parsed


def load_config(config_path: Path) -> AgentConfig:
    LOGGER.info("Loading config path=%s", config_path, extra={"category": "CONFIG"})
    if not config_path.exists():
        raise ValueError(f"Config file not found: {config_path}")
    cfg = _validate(_read_yaml(config_path))
    LOGGER.info(
        "Config loaded port=%s max_batch_size=%s sink_configured=%s filter_configured=%s",
        cfg.port,
        cfg.max_batch_size,
        cfg.sink_configured,
        bool(cfg.filters),
        extra={"category": "CONFIG"},
    )
    return cfg


def apply_env_overrides(cfg: AgentConfig) -> AgentConfig:
    overrides: Dict[str, Any] = {}
    for env_name, field_name in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None:
            continue
        overrides[field_name] = raw
    if not overrides:
        return cfg
    LOGGER.info("Applying env overrides fields=%s", sorted(overrides), extra={"category": "CONFIG"})
    data = cfg.model_dump()
    data.update(overrides)
    return _validate(data)


def load_agent_config(config_path: Path) -> AgentConfig:
    if config_path.exists():
        cfg = load_config(config_path)
    else:
        LOGGER.info("No config file at path=%s, using defaults", config_path, extra={"category": "CONFIG"})
        cfg = AgentConfig()
    return apply_env_overrides(cfg)
