"""
Capture library boundary.

The session only talks to these interfaces; the scapy implementation lives in
``scapy_backend`` and tests plug in an in-memory fake.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional

# pcap DLT number of the frames a device delivers.
LINKTYPE_ETHERNET = 1

# (frame bytes, capture timestamp, link-layer type)
FrameCallback = Callable[[bytes, float, int], None]


@dataclass(frozen=True)
class DeviceAddress:
    address: str
    netmask: Optional[str] = None
    broadcast: Optional[str] = None


@dataclass
class InterfaceHandle:
    """Device as reported by the capture library. ``name`` is what the library opens."""

    name: str
    description: str
    friendly_name: str
    addresses: List[DeviceAddress] = field(default_factory=list)
    gateways: List[str] = field(default_factory=list)
    mac: Optional[str] = None


@dataclass(frozen=True)
class StatisticsSnapshot:
    """Counters for one statistics interval (deltas, not running totals)."""

    timestamp: float
    received_packets: int
    received_bytes: int
    dropped_packets: int = 0
    interface_errors: int = 0


StatisticsCallback = Callable[[StatisticsSnapshot], None]


class PacketSource(ABC):
    """One handle on a device delivering either frames or statistics."""

    @abstractmethod
    def open(self) -> None:
        pass

    @abstractmethod
    def set_filter(self, expression: str) -> None:
        pass

    @abstractmethod
    def start_capture(self) -> None:
        pass

    @abstractmethod
    def stop_capture(self) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class CaptureBackend(ABC):
    @abstractmethod
    def supported(self) -> bool:
        """True when the host platform can run this capture library."""

    @abstractmethod
    def list_devices(self) -> List[InterfaceHandle]:
        pass

    @abstractmethod
    def create_frame_source(self, device: InterfaceHandle, on_frame: FrameCallback) -> PacketSource:
        pass

    @abstractmethod
    def create_statistics_source(
        self,
        device: InterfaceHandle,
        on_statistics: StatisticsCallback,
        interval_seconds: float,
    ) -> PacketSource:
        pass
