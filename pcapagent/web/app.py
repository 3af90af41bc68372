from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request
from starlette.responses import Response

from pcapagent.config_loader import load_agent_config
from pcapagent.env_loader import load_env_file
from pcapagent.errors import AgentError, SinkUnavailable
from pcapagent.logging_setup import correlation_context, get_access_logger, setup_logging, short_uuid
from pcapagent.services.pcap_agent import PcapAgent, build_agent
from pcapagent.services.redis_stream import RedisStreamConfig, RedisStreamSink

LOGGER = logging.getLogger(__name__)
ACCESS_LOGGER = get_access_logger()

BASE_DIR = Path(__file__).resolve().parents[2]
ENV_PATH = Path(os.environ.get("PCAPAGENT_ENV_FILE", BASE_DIR / "config" / "runtime.env"))
load_env_file(ENV_PATH)
CONFIG_PATH = Path(os.environ.get("PCAPAGENT_CONFIG", BASE_DIR / "config" / "agent.yaml"))

setup_logging()

CONFIG = load_agent_config(CONFIG_PATH)
SINK = RedisStreamSink(RedisStreamConfig.from_agent_config(CONFIG))
AGENT = build_agent(CONFIG, SINK)

app = FastAPI(title="Packet Capture Agent")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_agent() -> PcapAgent:
    return AGENT


def get_sink() -> RedisStreamSink:
    return SINK


@app.on_event("startup")
async def on_startup() -> None:
    stream_key = CONFIG.resolved_stream_key
    if CONFIG.sink_configured:
        try:
            SINK.ensure_stream_exists(stream_key)
        except SinkUnavailable as exc:
            LOGGER.error("Stream could not be prepared key=%s reason=%s", stream_key, exc, extra={"category": "ERRORS"})
    else:
        LOGGER.warning("Redis connection is not configured; capture start will be refused", extra={"category": "CONFIG"})
    LOGGER.info(
        "Application startup base_dir=%s config=%s stream_key=%s port=%s log_level=%s",
        BASE_DIR,
        CONFIG_PATH,
        stream_key,
        CONFIG.port,
        os.environ.get("PCAPAGENT_LOG_LEVEL", "INFO").upper(),
        extra={"category": "CONFIG"},
    )


@app.on_event("shutdown")
async def on_shutdown() -> None:
    AGENT.shutdown()
    SINK.close()
    LOGGER.info("Application shutdown", extra={"category": "CONFIG"})


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_cid = request.headers.get("X-Correlation-Id") or short_uuid()
    start_ts = time.perf_counter()
    with correlation_context(request_cid):
        try:
            response: Response = await call_next(request)
        except Exception:
            elapsed_ms = int((time.perf_counter() - start_ts) * 1000)
            ACCESS_LOGGER.warning(
                "HTTP request failed method=%s path=%s client=%s duration_ms=%s",
                request.method,
                request.url.path,
                request.client.host if request.client else "-",
                elapsed_ms,
            )
            LOGGER.exception("HTTP request failed method=%s path=%s", request.method, request.url.path, extra={"category": "ERRORS"})
            raise
        elapsed_ms = int((time.perf_counter() - start_ts) * 1000)
        ACCESS_LOGGER.info(
            "HTTP %s %s status=%s duration_ms=%s client=%s",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request.client.host if request.client else "-",
        )
        response.headers["X-Correlation-Id"] = request_cid
        return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    LOGGER.warning(
        "HTTP exception method=%s path=%s status=%s detail=%s",
        request.method,
        request.url.path,
        exc.status_code,
        exc.detail,
        extra={"category": "ERRORS"},
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    LOGGER.exception(
        "Unhandled exception method=%s path=%s",
        request.method,
        request.url.path,
        extra={"category": "ERRORS"},
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/pcap/info")
def host_info(agent: PcapAgent = Depends(get_agent)) -> Dict[str, Any]:
    return agent.get_host_info().to_dict()


@app.get("/pcap/status")
def capture_status(agent: PcapAgent = Depends(get_agent)) -> bool:
    return agent.status()


@app.get("/pcap/start")
def start_capture(a: str = Query("", description="Adapter description"), agent: PcapAgent = Depends(get_agent)) -> Dict[str, Any]:
    LOGGER.info("API start capture adapter=%s", a, extra={"category": "CAPTURE"})
    try:
        session = agent.start(a)
    except AgentError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.reason) from exc
    return session.info()


@app.get("/pcap/stop")
def stop_capture(agent: PcapAgent = Depends(get_agent)) -> Dict[str, Any]:
    try:
        session = agent.stop()
    except AgentError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.reason) from exc
    if session is None:
        return {"stopped": False, "session": None}
    LOGGER.info(
        "API stop capture session_id=%s",
        session.session_id,
        extra={"category": "CAPTURE", "correlation_id": session.session_id},
    )
    return {"stopped": True, "session": session.info()}


@app.get("/pcap/devices")
def list_devices(agent: PcapAgent = Depends(get_agent)) -> List[Dict[str, Any]]:
    try:
        devices = agent.devices()
    except AgentError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.reason) from exc
    return [d.to_dict() for d in devices]


@app.get("/pcap/session")
def session_details(agent: PcapAgent = Depends(get_agent)) -> Dict[str, Any]:
    return agent.session_info()


@app.get("/api/health")
def health(agent: PcapAgent = Depends(get_agent), sink: RedisStreamSink = Depends(get_sink)) -> Dict[str, Any]:
    sink_ok = sink.configured and sink.ping()
    status_value = "ok" if sink_ok else "degraded"
    LOGGER.debug("Health check status=%s", status_value, extra={"category": "PERF"})
    return {
        "status": status_value,
        "capturing": agent.status(),
        "state": agent.state.value,
        "sink_reachable": sink_ok,
    }
