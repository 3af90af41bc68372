import logging
from pathlib import Path

import pytest

from pcapagent.config_loader import AgentConfig, DEFAULT_PORT, load_agent_config, load_config


def _write(tmp_path: Path, text: str) -> Path:
    config_file = tmp_path / "agent.yaml"
    config_file.write_text(text.strip(), encoding="utf-8")
    return config_file


def test_load_config_success(tmp_path: Path) -> None:
    config_file = _write(
        tmp_path,
        """
redis_connection: cache.internal:6379
stream_key: host_probe-01
port: 60000
max_batch_size: 50
filters: "udp or tcp"
forward_max_attempts: 3
""",
    )

    config = load_config(config_file)
    assert config.redis_connection == "cache.internal:6379"
    assert config.resolved_stream_key == "host_probe-01"
    assert config.port == 60000
    assert config.max_batch_size == 50
    assert config.filters == "udp or tcp"
    assert config.forward_max_attempts == 3
    assert config.sink_configured is True


@pytest.mark.parametrize("value", ["0", "-4", "lots", "''"])
def test_invalid_max_batch_size_falls_back_to_default(tmp_path: Path, caplog, value: str) -> None:
    config_file = _write(tmp_path, f"max_batch_size: {value}\n")

    with caplog.at_level(logging.WARNING, logger="pcapagent.config_loader"):
        config = load_config(config_file)

    assert config.max_batch_size == 20
    assert any("max_batch_size" in record.getMessage() for record in caplog.records)


def test_blank_settings_are_treated_as_missing(tmp_path: Path) -> None:
    config_file = _write(tmp_path, "redis_connection: '  '\nfilters: ''\n")

    config = load_config(config_file)
    assert config.redis_connection is None
    assert config.filters is None
    assert config.sink_configured is False


def test_load_config_rejects_invalid_port(tmp_path: Path) -> None:
    config_file = _write(tmp_path, "port: 70000\n")

    with pytest.raises(ValueError):
        load_config(config_file)


def test_load_config_rejects_non_mapping_root(tmp_path: Path) -> None:
    config_file = _write(tmp_path, "- a\n- b\n")

    with pytest.raises(ValueError):
        load_config(config_file)


def test_load_config_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        load_config(tmp_path / "missing.yaml")


def test_load_agent_config_defaults_without_file(tmp_path: Path, monkeypatch) -> None:
    for name in ("PCAPAGENT_REDIS_CONNECTION", "PCAPAGENT_STREAM_KEY", "PCAPAGENT_PORT", "PCAPAGENT_MAX_BATCH_SIZE", "PCAPAGENT_FILTERS"):
        monkeypatch.delenv(name, raising=False)

    config = load_agent_config(tmp_path / "missing.yaml")
    assert config.port == DEFAULT_PORT
    assert config.max_batch_size == 20
    assert config.redis_connection is None
    assert config.resolved_stream_key.startswith("host_")
    assert config.resolved_stream_key == config.resolved_stream_key.lower()


def test_env_overrides_win_over_file(tmp_path: Path, monkeypatch) -> None:
    config_file = _write(tmp_path, "redis_connection: localhost:6379\nfilters: ip\nport: 59037\n")
    monkeypatch.setenv("PCAPAGENT_FILTERS", "udp port 5060")
    monkeypatch.setenv("PCAPAGENT_PORT", "59100")
    monkeypatch.delenv("PCAPAGENT_REDIS_CONNECTION", raising=False)
    monkeypatch.delenv("PCAPAGENT_STREAM_KEY", raising=False)
    monkeypatch.delenv("PCAPAGENT_MAX_BATCH_SIZE", raising=False)

    config = load_agent_config(config_file)
    assert config.filters == "udp port 5060"
    assert config.port == 59100
    assert config.redis_connection == "localhost:6379"


def test_poll_interval_is_bounded() -> None:
    with pytest.raises(ValueError):
        AgentConfig(poll_interval_seconds=0)
    with pytest.raises(ValueError):
        AgentConfig(poll_interval_seconds=10)
