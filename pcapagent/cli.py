from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path

import click
import uvicorn

from pcapagent.config_loader import load_agent_config
from pcapagent.errors import AgentError
from pcapagent.logging_setup import setup_logging
from pcapagent.pcap.scapy_backend import ScapyCaptureBackend
from pcapagent.services.device_directory import DeviceDirectory
from pcapagent.services.pcap_agent import build_agent
from pcapagent.services.redis_stream import RedisStreamConfig, RedisStreamSink

LOGGER = logging.getLogger(__name__)
DEFAULT_CONFIG_PATH = Path("config/agent.yaml")


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=lambda: os.environ.get("PCAPAGENT_CONFIG", str(DEFAULT_CONFIG_PATH)),
    show_default="config/agent.yaml",
    help="Agent YAML configuration.",
)
@click.pass_context
def main(ctx: click.Context, config_path: Path) -> None:
    """pcapagent commands."""
    setup_logging()
    LOGGER.info("CLI bootstrap config=%s", config_path, extra={"category": "CONFIG"})
    try:
        ctx.obj = load_agent_config(config_path)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", type=int, default=None, help="Defaults to the configured port.")
@click.pass_obj
def serve(config, host: str, port: int | None) -> None:
    """Start the HTTP control surface."""
    listen_port = port or config.port
    LOGGER.info("CLI serve command host=%s port=%s", host, listen_port, extra={"category": "CONFIG"})
    uvicorn.run("pcapagent.web.app:app", host=host, port=listen_port, reload=False)


@main.command()
def devices() -> None:
    """Print capture devices as JSON."""
    try:
        listed = DeviceDirectory(ScapyCaptureBackend()).list_devices()
    except AgentError as exc:
        raise click.ClickException(exc.reason) from exc
    click.echo(json.dumps([d.to_dict() for d in listed], indent=2))


@main.command()
@click.option("--adapter", "-a", required=True, help="Adapter description as listed by `devices`.")
@click.pass_obj
def capture(config, adapter: str) -> None:
    """Capture in the foreground until Ctrl+C."""
    sink = RedisStreamSink(RedisStreamConfig.from_agent_config(config))
    agent = build_agent(config, sink)
    try:
        if config.sink_configured:
            sink.ensure_stream_exists(config.resolved_stream_key)
        session = agent.start(adapter)
    except AgentError as exc:
        agent.shutdown()
        raise click.ClickException(exc.reason) from exc
    click.echo(f"Capturing on {session.device.description} session_id={session.session_id}; Ctrl+C to stop")
    try:
        while agent.status():
            time.sleep(1.0)
    except KeyboardInterrupt:
        click.echo("Stopping capture")
    finally:
        agent.shutdown()
        sink.close()
    click.echo(json.dumps(agent.session_info()["forwarder"]))


if __name__ == "__main__":
    main()
