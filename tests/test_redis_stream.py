from typing import Dict, List

import pytest
import redis

from pcapagent.config_loader import AgentConfig
from pcapagent.errors import MissingSinkConfig, SinkUnavailable
from pcapagent.services.redis_stream import RedisStreamConfig, RedisStreamSink, normalize_connection_url


class FakeRedis:
    def __init__(self) -> None:
        self.commands: List[tuple] = []
        self.streams: Dict[str, List[dict]] = {}
        self.fail = False
        self.closed = False

    def execute_command(self, *args):
        if self.fail:
            raise redis.ConnectionError("connection refused")
        self.commands.append(args)
        return f"{len(self.commands)}-0".encode("ascii")

    def exists(self, key: str) -> int:
        if self.fail:
            raise redis.ConnectionError("connection refused")
        return int(key in self.streams)

    def xadd(self, key: str, fields: dict) -> bytes:
        self.streams.setdefault(key, []).append(dict(fields))
        return b"1-0"

    def ping(self) -> bool:
        if self.fail:
            raise redis.ConnectionError("connection refused")
        return True

    def close(self) -> None:
        self.closed = True


def _sink(maxlen=None):
    client = FakeRedis()
    return RedisStreamSink(RedisStreamConfig(url="redis://localhost:6379/0", maxlen=maxlen), client=client), client


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("localhost:6379", "redis://localhost:6379/0"),
        ("cache.internal", "redis://cache.internal:6379/0"),
        ("  redis://:secret@cache:6380/2 ", "redis://:secret@cache:6380/2"),
        ("rediss://cache:6380/0", "rediss://cache:6380/0"),
        ("", ""),
    ],
)
def test_normalize_connection_url(raw: str, expected: str) -> None:
    assert normalize_connection_url(raw) == expected


def test_append_batch_writes_one_entry_with_repeated_fields() -> None:
    sink, client = _sink()
    entry_id = sink.append_batch("host_test", [("raw_packets", "a"), ("raw_packets", "b")])

    assert entry_id == "1-0"
    assert client.commands == [("XADD", "host_test", "*", "raw_packets", "a", "raw_packets", "b")]


def test_append_batch_applies_approximate_maxlen() -> None:
    sink, client = _sink(maxlen=1000)
    sink.append_batch("host_test", [("statistics", "{}")])

    assert client.commands[0][:6] == ("XADD", "host_test", "MAXLEN", "~", 1000, "*")


def test_append_batch_skips_empty_batch() -> None:
    sink, client = _sink()
    assert sink.append_batch("host_test", []) == ""
    assert client.commands == []


def test_append_batch_wraps_redis_errors() -> None:
    sink, client = _sink()
    client.fail = True

    with pytest.raises(SinkUnavailable) as excinfo:
        sink.append_batch("host_test", [("raw_packets", "a")])
    assert excinfo.value.status_code == 503


def test_ensure_stream_exists_writes_marker_once() -> None:
    sink, client = _sink()

    assert sink.ensure_stream_exists("host_test") is True
    assert client.streams["host_test"] == [{"host_test": "created"}]
    assert sink.ensure_stream_exists("host_test") is False
    assert len(client.streams["host_test"]) == 1


def test_ping_reports_failure_without_raising() -> None:
    sink, client = _sink()
    assert sink.ping() is True
    client.fail = True
    assert sink.ping() is False


def test_unconfigured_sink_refuses_to_connect() -> None:
    sink = RedisStreamSink(RedisStreamConfig.from_agent_config(AgentConfig()))

    assert sink.configured is False
    assert sink.ping() is False
    with pytest.raises(MissingSinkConfig):
        sink.append_batch("host_test", [("raw_packets", "a")])


def test_close_releases_client() -> None:
    sink, client = _sink()
    sink.close()
    assert client.closed is True
