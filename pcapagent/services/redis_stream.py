from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import redis

from pcapagent.config_loader import AgentConfig
from pcapagent.errors import MissingSinkConfig, SinkUnavailable

LOGGER = logging.getLogger(__name__)

STREAM_CREATED_VALUE = "created"

StreamEntry = Tuple[str, str]


def normalize_connection_url(value: str) -> str:
    """Accept ``host:port`` (optionally ``host``) as well as full ``redis://``/``rediss://``/``unix://`` URLs."""
    text = (value or "").strip()
    if not text:
        return ""
    if "://" in text:
        return text
    if ":" not in text:
        text = f"{text}:6379"
    return f"redis://{text}/0"


@dataclass
class RedisStreamConfig:
    url: str
    maxlen: Optional[int] = None
    socket_timeout: float = 5.0

    @classmethod
    def from_agent_config(cls, cfg: AgentConfig) -> "RedisStreamConfig":
        return cls(url=normalize_connection_url(cfg.redis_connection or ""), maxlen=cfg.stream_maxlen)

    def ready(self) -> bool:
        return bool(self.url)


class RedisStreamSink:
    """Append-only Redis stream sink; one XADD per forwarded batch."""

    def __init__(self, cfg: RedisStreamConfig, client: Optional[redis.Redis] = None) -> None:
        self._cfg = cfg
        self._client = client
        self._client_lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return self._client is not None or self._cfg.ready()

    def _build_client(self) -> redis.Redis:
        with self._client_lock:
            if self._client is not None:
                return self._client
            if not self._cfg.ready():
                raise MissingSinkConfig()
            self._client = redis.Redis.from_url(
                self._cfg.url,
                socket_timeout=self._cfg.socket_timeout,
                socket_connect_timeout=self._cfg.socket_timeout,
            )
            LOGGER.info("Redis client created url=%s", _redact(self._cfg.url), extra={"category": "STREAM"})
            return self._client

    def append_batch(self, stream_key: str, entries: Sequence[StreamEntry]) -> str:
        if not entries:
            return ""
        args: list = ["XADD", stream_key]
        if self._cfg.maxlen:
            args += ["MAXLEN", "~", self._cfg.maxlen]
        args.append("*")
        # Field tags repeat within one entry, so redis-py's dict-based xadd() cannot be used.
        for field_tag, value in entries:
            args += [field_tag, value]
        try:
            entry_id = self._build_client().execute_command(*args)
        except redis.RedisError as exc:
            raise SinkUnavailable(f"Redis stream append failed key={stream_key}: {exc}") from exc
        if isinstance(entry_id, bytes):
            entry_id = entry_id.decode("ascii", errors="replace")
        return str(entry_id)

    def ensure_stream_exists(self, stream_key: str) -> bool:
        """Write a marker entry when the stream is missing. Returns True if it was created."""
        client = self._build_client()
        try:
            if client.exists(stream_key):
                return False
            client.xadd(stream_key, {stream_key: STREAM_CREATED_VALUE})
        except redis.RedisError as exc:
            raise SinkUnavailable(f"Could not create Redis stream key={stream_key}: {exc}") from exc
        LOGGER.info("Created Redis stream key=%s", stream_key, extra={"category": "STREAM"})
        return True

    def ping(self) -> bool:
        try:
            return bool(self._build_client().ping())
        except (redis.RedisError, MissingSinkConfig) as exc:
            LOGGER.warning("Redis ping failed reason=%s", exc, extra={"category": "STREAM"})
            return False

    def close(self) -> None:
        with self._client_lock:
            client, self._client = self._client, None
        if client is not None:
            client.close()


def _redact(url: str) -> str:
    if "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[1]}"
