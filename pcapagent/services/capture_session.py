from __future__ import annotations

import datetime as dt
import logging
import threading
from enum import Enum
from typing import Any, Dict, List, Optional

from pcapagent.errors import AgentError, CaptureOpenError, MissingFilter
from pcapagent.logging_setup import correlation_context, short_uuid
from pcapagent.pcap.backend import CaptureBackend, InterfaceHandle, PacketSource, StatisticsSnapshot
from pcapagent.services.batch_buffer import BatchBuffer
from pcapagent.services.captured_units import BatchKind, CapturedFrame, TrafficStatisticsSample
from pcapagent.services.stream_forwarder import StreamForwarder

LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_FLUSH_TIMEOUT_SECONDS = 10.0


class CaptureState(str, Enum):
    OPENING = "opening"
    CAPTURING = "capturing"
    STOPPING = "stopping"
    CLOSED = "closed"


class CaptureSession:
    """
    One capture on one device: Opening -> Capturing -> Stopping -> Closed.

    ``open`` runs on the caller's thread and either reaches Capturing or releases
    whatever it acquired and raises. ``start_supervisor`` then hands the session to
    a background thread that waits for ``cancel`` and tears everything down.
    A closed session is never reopened.
    """

    def __init__(
        self,
        device: InterfaceHandle,
        filter_expression: Optional[str],
        backend: CaptureBackend,
        forwarder: StreamForwarder,
        max_batch_size: int,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        statistics_interval_seconds: float = 1.0,
        flush_timeout_seconds: float = DEFAULT_FLUSH_TIMEOUT_SECONDS,
        session_id: Optional[str] = None,
    ) -> None:
        self.session_id = session_id or short_uuid()
        self.device = device
        self.filter_expression = (filter_expression or "").strip()
        self.state = CaptureState.OPENING
        self.started_at: Optional[dt.datetime] = None
        self.stopped_at: Optional[dt.datetime] = None
        self.failure_reason: Optional[str] = None
        self.frames_captured = 0
        self.statistics_captured = 0

        self._backend = backend
        self._forwarder = forwarder
        self._poll_interval = poll_interval_seconds
        self._statistics_interval = statistics_interval_seconds
        self._flush_timeout = flush_timeout_seconds
        self._frames: BatchBuffer[CapturedFrame] = BatchBuffer(max_batch_size)
        self._statistics: BatchBuffer[TrafficStatisticsSample] = BatchBuffer(max_batch_size)
        self._cancel = threading.Event()
        self._teardown_lock = threading.Lock()
        self._opened: List[PacketSource] = []
        self._running: List[PacketSource] = []
        self._supervisor: Optional[threading.Thread] = None

    @property
    def capturing(self) -> bool:
        return self.state == CaptureState.CAPTURING

    @property
    def terminal(self) -> bool:
        return self.state == CaptureState.CLOSED

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def open(self) -> None:
        if self.state != CaptureState.OPENING:
            raise RuntimeError(f"Capture session {self.session_id} cannot be opened from state={self.state.value}")
        if not self.filter_expression:
            LOGGER.error(
                "Capture filter is not configured session_id=%s",
                self.session_id,
                extra={"category": "ERRORS", "correlation_id": self.session_id},
            )
            self.failure_reason = str(MissingFilter())
            self.state = CaptureState.CLOSED
            raise MissingFilter()

        LOGGER.info(
            "Opening capture session_id=%s device=%s description=%s filter=%s",
            self.session_id,
            self.device.name,
            self.device.description,
            self.filter_expression,
            extra={"category": "CAPTURE", "correlation_id": self.session_id},
        )
        try:
            statistics_source = self._backend.create_statistics_source(
                self.device, self._on_statistics, self._statistics_interval
            )
            frame_source = self._backend.create_frame_source(self.device, self._on_frame)
            for source in (statistics_source, frame_source):
                source.open()
                self._opened.append(source)
                source.set_filter(self.filter_expression)
            for source in (statistics_source, frame_source):
                source.start_capture()
                self._running.append(source)
        except Exception as exc:
            self.failure_reason = str(exc) or exc.__class__.__name__
            LOGGER.error(
                "Opening capture failed session_id=%s device=%s reason=%s",
                self.session_id,
                self.device.name,
                self.failure_reason,
                extra={"category": "ERRORS", "correlation_id": self.session_id},
            )
            self._stop_sources()
            self._release_sources()
            self.state = CaptureState.CLOSED
            if isinstance(exc, AgentError):
                raise
            raise CaptureOpenError(f"Failed to open capture on {self.device.description}: {self.failure_reason}") from exc

        self.started_at = dt.datetime.utcnow()
        self.state = CaptureState.CAPTURING
        LOGGER.info(
            "Capture started session_id=%s device=%s",
            self.session_id,
            self.device.name,
            extra={"category": "CAPTURE", "correlation_id": self.session_id},
        )

    def start_supervisor(self) -> None:
        if self._supervisor is not None:
            return
        self._supervisor = threading.Thread(
            target=self._supervise,
            name=f"capture-supervisor-{self.session_id}",
            daemon=True,
        )
        self._supervisor.start()

    def cancel(self) -> None:
        self._cancel.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for teardown. Returns False if the supervisor is still running after ``timeout``."""
        supervisor = self._supervisor
        if supervisor is None:
            return True
        supervisor.join(timeout)
        return not supervisor.is_alive()

    def close(self) -> None:
        """Tear down from any state; safe after a failed open and safe to repeat."""
        self.cancel()
        self._teardown()

    def info(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "device": self.device.name,
            "description": self.device.description,
            "filter": self.filter_expression,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "stopped_at": self.stopped_at.isoformat() if self.stopped_at else None,
            "frames_captured": self.frames_captured,
            "statistics_captured": self.statistics_captured,
            "buffered_frames": len(self._frames),
            "buffered_statistics": len(self._statistics),
            "failure_reason": self.failure_reason,
        }

    def _on_frame(self, data: bytes, timestamp: float, link_type: int) -> None:
        self.frames_captured += 1
        batch = self._frames.add(
            CapturedFrame(data=data, timestamp=timestamp, device=self.device.name, link_type=link_type)
        )
        if batch:
            self._forwarder.submit(BatchKind.FRAMES, batch)

    def _on_statistics(self, snapshot: StatisticsSnapshot) -> None:
        self.statistics_captured += 1
        sample = TrafficStatisticsSample(
            timestamp=snapshot.timestamp,
            device=self.device.name,
            received_packets=snapshot.received_packets,
            received_bytes=snapshot.received_bytes,
            dropped_packets=snapshot.dropped_packets,
            interface_errors=snapshot.interface_errors,
        )
        batch = self._statistics.add(sample)
        if batch:
            self._forwarder.submit(BatchKind.STATISTICS, batch)

    def _supervise(self) -> None:
        with correlation_context(self.session_id):
            LOGGER.info("Capture supervisor start session_id=%s", self.session_id, extra={"category": "CAPTURE"})
            try:
                # Bounded cancellation latency: at most one poll interval.
                while not self._cancel.wait(self._poll_interval):
                    pass
            finally:
                self._teardown()
                LOGGER.info(
                    "Capture supervisor stop session_id=%s frames=%s statistics=%s",
                    self.session_id,
                    self.frames_captured,
                    self.statistics_captured,
                    extra={"category": "CAPTURE"},
                )

    def _teardown(self) -> None:
        with self._teardown_lock:
            if self.state == CaptureState.CLOSED:
                return
            self.state = CaptureState.STOPPING
            try:
                self._stop_sources()
                self._flush_remainders()
            finally:
                # Device handles are released and the session closed even if flushing failed.
                try:
                    self._release_sources()
                    if not self._forwarder.wait_pending(self._flush_timeout):
                        LOGGER.warning(
                            "Pending stream forwards still running after flush timeout session_id=%s timeout_s=%s",
                            self.session_id,
                            self._flush_timeout,
                            extra={"category": "STREAM", "correlation_id": self.session_id},
                        )
                finally:
                    self.stopped_at = dt.datetime.utcnow()
                    self.state = CaptureState.CLOSED

    def _stop_sources(self) -> None:
        while self._running:
            source = self._running.pop()
            try:
                source.stop_capture()
            except Exception:
                LOGGER.exception(
                    "Failed to stop capture source session_id=%s",
                    self.session_id,
                    extra={"category": "ERRORS", "correlation_id": self.session_id},
                )

    def _release_sources(self) -> None:
        while self._opened:
            source = self._opened.pop()
            try:
                source.close()
            except Exception:
                LOGGER.exception(
                    "Failed to close capture source session_id=%s",
                    self.session_id,
                    extra={"category": "ERRORS", "correlation_id": self.session_id},
                )

    def _flush_remainders(self) -> None:
        for kind, buffer in ((BatchKind.FRAMES, self._frames), (BatchKind.STATISTICS, self._statistics)):
            remainder = buffer.drain_remainder()
            if remainder:
                LOGGER.debug(
                    "Forwarding partial batch kind=%s units=%s session_id=%s",
                    kind.value,
                    len(remainder),
                    self.session_id,
                    extra={"category": "STREAM", "correlation_id": self.session_id},
                )
                self._forwarder.submit(kind, remainder)
