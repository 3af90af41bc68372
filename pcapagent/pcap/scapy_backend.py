from __future__ import annotations

import logging
import platform
import socket
import threading
import time
from typing import Dict, List, Optional

import psutil
from scapy.all import AsyncSniffer, conf
from scapy.arch.common import compile_filter
from scapy.error import Scapy_Exception

from pcapagent.errors import CaptureOpenError
from pcapagent.pcap.backend import (
    LINKTYPE_ETHERNET,
    CaptureBackend,
    DeviceAddress,
    FrameCallback,
    InterfaceHandle,
    PacketSource,
    StatisticsCallback,
    StatisticsSnapshot,
)

LOGGER = logging.getLogger(__name__)

SUPPORTED_SYSTEMS = {"Linux", "Darwin", "Windows"}
_NO_GATEWAY = {"", "0.0.0.0", "::"}


def _psutil_addresses(nic_addrs: Dict[str, list], *names: str) -> List[DeviceAddress]:
    for name in names:
        entries = nic_addrs.get(name)
        if not entries:
            continue
        return [
            DeviceAddress(address=e.address, netmask=e.netmask, broadcast=e.broadcast)
            for e in entries
            if e.family in (socket.AF_INET, socket.AF_INET6)
        ]
    return []


def _gateways_by_iface() -> Dict[str, List[str]]:
    result: Dict[str, List[str]] = {}
    tables = [conf.route]
    route6 = getattr(conf, "route6", None)
    if route6 is not None:
        tables.append(route6)
    for table in tables:
        for route in getattr(table, "routes", []):
            gw, iface = str(route[2]), str(route[3])
            if gw in _NO_GATEWAY:
                continue
            bucket = result.setdefault(iface, [])
            if gw not in bucket:
                bucket.append(gw)
    return result


def link_type_of(packet) -> int:
    """DLT number for the packet's outermost layer as scapy dissected it; Ethernet when unknown."""
    return int(conf.l2types.layer2num.get(type(packet), LINKTYPE_ETHERNET))


class ScapyFrameSource(PacketSource):
    def __init__(self, device: InterfaceHandle, on_frame: FrameCallback, promisc: bool = True) -> None:
        self._device = device
        self._on_frame = on_frame
        self._promisc = promisc
        self._filter: Optional[str] = None
        self._sniffer: Optional[AsyncSniffer] = None
        self._opened = False

    def open(self) -> None:
        try:
            conf.ifaces.dev_from_name(self._device.name)
        except ValueError as exc:
            raise CaptureOpenError(f"Cannot open device {self._device.name}: {exc}") from exc
        self._opened = True
        LOGGER.debug("Opened frame source device=%s", self._device.name, extra={"category": "CAPTURE"})

    def set_filter(self, expression: str) -> None:
        self._require_open()
        try:
            compile_filter(expression, iface=self._device.name)
        except Scapy_Exception as exc:
            raise CaptureOpenError(f"Invalid capture filter {expression!r}: {exc}") from exc
        self._filter = expression

    def start_capture(self) -> None:
        self._require_open()
        self._sniffer = AsyncSniffer(
            iface=self._device.name,
            filter=self._filter,
            prn=self._handle_packet,
            store=False,
            promisc=self._promisc,
        )
        self._sniffer.start()

    def stop_capture(self) -> None:
        sniffer, self._sniffer = self._sniffer, None
        if sniffer is None or not sniffer.running:
            return
        try:
            sniffer.stop(join=True)
        except Scapy_Exception as exc:
            LOGGER.warning(
                "Sniffer did not stop cleanly device=%s reason=%s",
                self._device.name,
                exc,
                extra={"category": "CAPTURE"},
            )

    def close(self) -> None:
        self.stop_capture()
        self._opened = False

    def _require_open(self) -> None:
        if not self._opened:
            raise CaptureOpenError(f"Device {self._device.name} must be opened first")

    def _handle_packet(self, packet) -> None:
        self._on_frame(bytes(packet), float(packet.time), link_type_of(packet))


class ScapyStatisticsSource(PacketSource):
    """
    Companion of the frame source: a separate filtered sniffer that only counts,
    reporting per-interval deltas. Drop/error counters come from the OS NIC counters.
    """

    def __init__(self, device: InterfaceHandle, on_statistics: StatisticsCallback, interval_seconds: float) -> None:
        self._device = device
        self._on_statistics = on_statistics
        self._interval = interval_seconds
        self._counter = ScapyFrameSource(device, self._count, promisc=False)
        self._lock = threading.Lock()
        self._packets = 0
        self._bytes = 0
        self._last_nic = (0, 0)
        self._stop = threading.Event()
        self._ticker: Optional[threading.Thread] = None

    def open(self) -> None:
        self._counter.open()

    def set_filter(self, expression: str) -> None:
        self._counter.set_filter(expression)

    def start_capture(self) -> None:
        self._counter.start_capture()
        self._last_nic = self._nic_counters()
        self._stop.clear()
        self._ticker = threading.Thread(
            target=self._tick_loop,
            name=f"statistics-{self._device.friendly_name}",
            daemon=True,
        )
        self._ticker.start()

    def stop_capture(self) -> None:
        self._stop.set()
        ticker, self._ticker = self._ticker, None
        if ticker is not None:
            ticker.join(timeout=self._interval + 1.0)
        self._counter.stop_capture()

    def close(self) -> None:
        self.stop_capture()
        self._counter.close()

    def _count(self, data: bytes, _timestamp: float, _link_type: int = LINKTYPE_ETHERNET) -> None:
        with self._lock:
            self._packets += 1
            self._bytes += len(data)

    def _nic_counters(self) -> tuple[int, int]:
        per_nic = psutil.net_io_counters(pernic=True)
        stats = per_nic.get(self._device.friendly_name) or per_nic.get(self._device.name)
        if stats is None:
            return 0, 0
        return int(stats.dropin), int(stats.errin)

    def _tick_loop(self) -> None:
        while not self._stop.wait(self._interval):
            with self._lock:
                packets, self._packets = self._packets, 0
                byte_count, self._bytes = self._bytes, 0
            dropin, errin = self._nic_counters()
            last_dropin, last_errin = self._last_nic
            self._last_nic = (dropin, errin)
            self._on_statistics(
                StatisticsSnapshot(
                    timestamp=time.time(),
                    received_packets=packets,
                    received_bytes=byte_count,
                    dropped_packets=max(0, dropin - last_dropin),
                    interface_errors=max(0, errin - last_errin),
                )
            )


class ScapyCaptureBackend(CaptureBackend):
    def supported(self) -> bool:
        system = platform.system()
        if system not in SUPPORTED_SYSTEMS:
            return False
        if system == "Windows":
            # Needs Npcap/WinPcap for layer-2 sniffing.
            return bool(getattr(conf, "use_pcap", False))
        return True

    def list_devices(self) -> List[InterfaceHandle]:
        nic_addrs = psutil.net_if_addrs()
        gateways = _gateways_by_iface()
        handles: List[InterfaceHandle] = []
        for iface in conf.ifaces.values():
            name = str(iface.name)
            network_name = str(getattr(iface, "network_name", "") or name)
            addresses = _psutil_addresses(nic_addrs, name, network_name)
            if not addresses:
                ips = getattr(iface, "ips", {}) or {}
                addresses = [DeviceAddress(address=ip) for family in (4, 6) for ip in ips.get(family, [])]
            handles.append(
                InterfaceHandle(
                    name=name,
                    description=str(getattr(iface, "description", "") or name),
                    friendly_name=name,
                    addresses=addresses,
                    gateways=gateways.get(name, []) or gateways.get(network_name, []),
                    mac=getattr(iface, "mac", None) or None,
                )
            )
        LOGGER.debug("Enumerated capture devices count=%s", len(handles), extra={"category": "DEVICES"})
        return handles

    def create_frame_source(self, device: InterfaceHandle, on_frame: FrameCallback) -> PacketSource:
        return ScapyFrameSource(device, on_frame)

    def create_statistics_source(
        self,
        device: InterfaceHandle,
        on_statistics: StatisticsCallback,
        interval_seconds: float,
    ) -> PacketSource:
        return ScapyStatisticsSource(device, on_statistics, interval_seconds)
