from __future__ import annotations

import threading
from typing import Dict, List, Optional, Set, Tuple

import pytest

from pcapagent.config_loader import AgentConfig
from pcapagent.errors import SinkUnavailable
from pcapagent.pcap.backend import (
    CaptureBackend,
    DeviceAddress,
    FrameCallback,
    InterfaceHandle,
    PacketSource,
    StatisticsCallback,
    StatisticsSnapshot,
)
from pcapagent.services.pcap_agent import PcapAgent, build_agent
from pcapagent.services.stream_forwarder import StreamForwarder

ADAPTER = "Realtek PCIe GbE Family Controller"


def make_devices() -> List[InterfaceHandle]:
    return [
        InterfaceHandle(
            name="eth0",
            description=ADAPTER,
            friendly_name="Ethernet",
            addresses=[DeviceAddress("192.168.1.10", "255.255.255.0", "192.168.1.255")],
            gateways=["192.168.1.1"],
            mac="00:11:22:33:44:55",
        ),
        InterfaceHandle(
            name="wg0",
            description="WireGuard Tunnel",
            friendly_name="wg0",
            addresses=[DeviceAddress("10.0.0.2")],
        ),
    ]


class FakeSource(PacketSource):
    def __init__(self, backend: "FakeCaptureBackend", kind: str, callback) -> None:
        self.backend = backend
        self.kind = kind
        self.callback = callback
        self.calls: List[str] = []
        self.filter: Optional[str] = None

    def _record(self, name: str) -> None:
        self.calls.append(name)
        self.backend.calls.append((self.kind, name))
        if name in self.backend.fail_on.get(self.kind, set()):
            raise RuntimeError(f"{self.kind} {name} failed")

    def open(self) -> None:
        self._record("open")

    def set_filter(self, expression: str) -> None:
        self._record("set_filter")
        self.filter = expression

    def start_capture(self) -> None:
        self._record("start_capture")

    def stop_capture(self) -> None:
        gate = self.backend.stop_gate
        if gate is not None:
            gate.wait(5)
        self._record("stop_capture")

    def close(self) -> None:
        self._record("close")


class FakeCaptureBackend(CaptureBackend):
    def __init__(self, devices: Optional[List[InterfaceHandle]] = None, is_supported: bool = True) -> None:
        self.devices = make_devices() if devices is None else devices
        self.is_supported = is_supported
        self.sources: List[FakeSource] = []
        self.calls: List[Tuple[str, str]] = []
        self.fail_on: Dict[str, Set[str]] = {}
        self.stop_gate: Optional[threading.Event] = None

    def supported(self) -> bool:
        return self.is_supported

    def list_devices(self) -> List[InterfaceHandle]:
        return list(self.devices)

    def create_frame_source(self, device: InterfaceHandle, on_frame: FrameCallback) -> PacketSource:
        source = FakeSource(self, "frames", on_frame)
        self.sources.append(source)
        return source

    def create_statistics_source(
        self,
        device: InterfaceHandle,
        on_statistics: StatisticsCallback,
        interval_seconds: float,
    ) -> PacketSource:
        source = FakeSource(self, "statistics", on_statistics)
        self.sources.append(source)
        return source

    def count(self, name: str, kind: Optional[str] = None) -> int:
        return sum(1 for k, n in self.calls if n == name and (kind is None or k == kind))

    def source(self, kind: str) -> FakeSource:
        return [s for s in self.sources if s.kind == kind][-1]

    def emit_frame(self, data: bytes, timestamp: float = 0.0, link_type: int = 1) -> None:
        self.source("frames").callback(data, timestamp, link_type)

    def emit_statistics(self, packets: int, byte_count: int, timestamp: float = 0.0) -> None:
        self.source("statistics").callback(
            StatisticsSnapshot(timestamp=timestamp, received_packets=packets, received_bytes=byte_count)
        )


class FakeSink:
    def __init__(self) -> None:
        self.appended: List[Tuple[str, List[Tuple[str, str]]]] = []
        self.calls = 0
        self.fail = False
        self._lock = threading.Lock()

    def append_batch(self, stream_key: str, entries) -> str:
        with self._lock:
            self.calls += 1
            if self.fail:
                raise SinkUnavailable("sink down")
            self.appended.append((stream_key, list(entries)))
            return f"{len(self.appended)}-0"

    def entries(self, tag: Optional[str] = None) -> List[Tuple[str, str]]:
        with self._lock:
            flat = [entry for _key, batch in self.appended for entry in batch]
        return [e for e in flat if tag is None or e[0] == tag]


@pytest.fixture
def backend() -> FakeCaptureBackend:
    return FakeCaptureBackend()


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def forwarder(sink: FakeSink):
    fwd = StreamForwarder(sink, "host_test", max_workers=1)
    yield fwd
    fwd.shutdown()


@pytest.fixture
def agent_config() -> AgentConfig:
    return AgentConfig(
        redis_connection="redis://localhost:6379/0",
        stream_key="host_test",
        filters="ip or ip6",
        max_batch_size=3,
        poll_interval_seconds=0.05,
        stop_timeout_seconds=5,
    )


@pytest.fixture
def agent(agent_config: AgentConfig, sink: FakeSink, backend: FakeCaptureBackend):
    pcap_agent: PcapAgent = build_agent(agent_config, sink, backend=backend)
    yield pcap_agent
    if backend.stop_gate is not None:
        backend.stop_gate.set()
    pcap_agent.shutdown()
