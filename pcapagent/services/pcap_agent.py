from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Dict, List, Optional

from pcapagent.config_loader import AgentConfig
from pcapagent.errors import MissingSinkConfig, StopTimedOut, UnsupportedPlatform
from pcapagent.pcap.backend import CaptureBackend
from pcapagent.services.capture_session import CaptureSession, CaptureState
from pcapagent.services.device_directory import CaptureDevice, DeviceDirectory
from pcapagent.services.host_info import HostInfo, collect_host_info
from pcapagent.services.stream_forwarder import StreamForwarder

LOGGER = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


_STATE_BY_CAPTURE_STATE = {
    CaptureState.OPENING: SessionState.STARTING,
    CaptureState.CAPTURING: SessionState.RUNNING,
    CaptureState.STOPPING: SessionState.STOPPING,
    CaptureState.CLOSED: SessionState.IDLE,
}


class PcapAgent:
    """
    Process-wide owner of at most one capture session.

    Start and Stop are serialized on one lock so two concurrent Start calls can
    never produce two live sessions. Status reads the slot without locking.
    """

    def __init__(self, config: AgentConfig, backend: CaptureBackend, forwarder: StreamForwarder) -> None:
        self._config = config
        self._backend = backend
        self._forwarder = forwarder
        self._directory = DeviceDirectory(backend)
        self._lock = threading.Lock()
        self._session: Optional[CaptureSession] = None

    @property
    def state(self) -> SessionState:
        session = self._session
        if session is None:
            return SessionState.IDLE
        return _STATE_BY_CAPTURE_STATE[session.state]

    def status(self) -> bool:
        session = self._session
        return session is not None and session.capturing

    def active_session(self) -> Optional[CaptureSession]:
        return self._session

    def devices(self) -> List[CaptureDevice]:
        return self._directory.list_devices()

    def get_host_info(self) -> HostInfo:
        return collect_host_info(is_capture_processing=self.status())

    def session_info(self) -> Dict[str, Any]:
        session = self._session
        return {
            "state": self.state.value,
            "session": session.info() if session else None,
            "forwarder": self._forwarder.stats(),
            "stream_key": self._forwarder.stream_key,
        }

    def start(self, adapter: str) -> CaptureSession:
        adapter = (adapter or "").strip()
        LOGGER.info("Start capture requested adapter=%s", adapter, extra={"category": "CAPTURE"})
        if not self._config.sink_configured:
            LOGGER.error("Redis connection is not configured", extra={"category": "ERRORS"})
            raise MissingSinkConfig()
        if not self._backend.supported():
            LOGGER.error("Capture library is not supported on this platform", extra={"category": "ERRORS"})
            raise UnsupportedPlatform()
        device = self._directory.resolve_by_description(adapter)

        with self._lock:
            current = self._session
            if current is not None and not current.terminal:
                LOGGER.info(
                    "Capture already active, start ignored session_id=%s device=%s requested=%s",
                    current.session_id,
                    current.device.description,
                    adapter,
                    extra={"category": "CAPTURE", "correlation_id": current.session_id},
                )
                return current

            session = CaptureSession(
                device=device,
                filter_expression=self._config.filters,
                backend=self._backend,
                forwarder=self._forwarder,
                max_batch_size=self._config.max_batch_size,
                poll_interval_seconds=self._config.poll_interval_seconds,
                statistics_interval_seconds=self._config.statistics_interval_seconds,
            )
            self._session = None
            session.open()
            session.start_supervisor()
            self._session = session

        LOGGER.info(
            "Local sniffing started session_id=%s device=%s",
            session.session_id,
            device.name,
            extra={"category": "CAPTURE", "correlation_id": session.session_id},
        )
        return session

    def stop(self, timeout: Optional[float] = None) -> Optional[CaptureSession]:
        wait_s = self._config.stop_timeout_seconds if timeout is None else timeout
        with self._lock:
            session = self._session
            if session is None:
                LOGGER.debug("Stop requested with no active session", extra={"category": "CAPTURE"})
                return None
            session.cancel()
            finished = session.join(wait_s)
            # A session that misses the deadline is already cancelled; it finishes on its own thread.
            self._session = None

        if not finished:
            LOGGER.error(
                "Capture session teardown timed out session_id=%s timeout_s=%s",
                session.session_id,
                wait_s,
                extra={"category": "ERRORS", "correlation_id": session.session_id},
            )
            raise StopTimedOut(wait_s)
        LOGGER.info(
            "Local sniffing stopped session_id=%s frames=%s statistics=%s",
            session.session_id,
            session.frames_captured,
            session.statistics_captured,
            extra={"category": "CAPTURE", "correlation_id": session.session_id},
        )
        return session

    def shutdown(self) -> None:
        try:
            self.stop()
        except StopTimedOut:
            LOGGER.warning("Shutdown continued with a capture still tearing down", extra={"category": "CAPTURE"})
        self._forwarder.shutdown(wait_for_pending=True)


def build_agent(config: AgentConfig, sink, backend: Optional[CaptureBackend] = None) -> PcapAgent:
    if backend is None:
        from pcapagent.pcap.scapy_backend import ScapyCaptureBackend

        backend = ScapyCaptureBackend()
    forwarder = StreamForwarder(
        sink,
        config.resolved_stream_key,
        max_workers=config.forward_workers,
        max_attempts=config.forward_max_attempts,
        retry_backoff_seconds=config.forward_retry_backoff_seconds,
        max_pending=config.forward_max_pending,
    )
    LOGGER.info(
        "Agent configured stream_key=%s max_batch_size=%s forward_attempts=%s",
        config.resolved_stream_key,
        config.max_batch_size,
        config.forward_max_attempts,
        extra={"category": "CONFIG"},
    )
    return PcapAgent(config, backend, forwarder)
