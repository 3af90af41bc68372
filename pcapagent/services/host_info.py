from __future__ import annotations

import logging
import platform
import socket
import subprocess
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import psutil

LOGGER = logging.getLogger(__name__)

DMI_DIR = Path("/sys/class/dmi/id")
GPU_PCI_CLASSES = ("VGA compatible controller", "3D controller", "Display controller")
COMMAND_TIMEOUT_SECONDS = 5


@dataclass
class HardwareInfo:
    processor: str
    machine: str
    physical_cores: Optional[int]
    logical_cores: Optional[int]
    max_clock_mhz: Optional[float]
    total_memory_mb: int
    motherboard_manufacturer: Optional[str] = None
    motherboard_model: Optional[str] = None
    graphics_cards: List[str] = field(default_factory=list)


@dataclass
class NetworkInformation:
    name: str
    is_up: bool
    speed_mbps: int
    mtu: int
    mac: Optional[str] = None
    addresses: List[str] = field(default_factory=list)


@dataclass
class HostInfo:
    machine_name: str
    os_version: str
    hardware: HardwareInfo
    ip_addresses: List[str]
    network_information: List[NetworkInformation]
    is_capture_processing: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _host_ip_addresses(hostname: str) -> List[str]:
    try:
        infos = socket.getaddrinfo(hostname, None)
    except socket.gaierror as exc:
        LOGGER.warning("Could not resolve host addresses hostname=%s reason=%s", hostname, exc, extra={"category": "HOST"})
        return []
    seen: List[str] = []
    for info in infos:
        ip = str(info[4][0])
        if ip not in seen:
            seen.append(ip)
    return seen


def _run(cmd: List[str]) -> Optional[str]:
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=COMMAND_TIMEOUT_SECONDS)
    except (OSError, subprocess.TimeoutExpired) as exc:
        LOGGER.debug("Hardware query unavailable cmd=%s reason=%s", cmd[0], exc, extra={"category": "HOST"})
        return None
    if proc.returncode != 0:
        LOGGER.debug(
            "Hardware query failed cmd=%s returncode=%s stderr=%s",
            cmd[0],
            proc.returncode,
            (proc.stderr or "").strip(),
            extra={"category": "HOST"},
        )
        return None
    return proc.stdout or ""


def _cim_rows(class_name: str, *properties: str) -> List[List[str]]:
    """Windows management (CIM) instances as rows of the requested properties."""
    fields = "+'|'+".join(f"$_.{p}" for p in properties)
    script = f"Get-CimInstance -ClassName {class_name} | ForEach-Object {{ {fields} }}"
    output = _run(["powershell", "-NoProfile", "-Command", script])
    if not output:
        return []
    return [line.strip().split("|") for line in output.splitlines() if line.strip()]


def _read_dmi(name: str) -> Optional[str]:
    try:
        return (DMI_DIR / name).read_text(encoding="utf-8").strip() or None
    except OSError:
        return None


def _motherboard() -> Tuple[Optional[str], Optional[str]]:
    system = platform.system()
    if system == "Linux":
        return _read_dmi("board_vendor"), _read_dmi("board_name")
    if system == "Windows":
        rows = _cim_rows("Win32_BaseBoard", "Manufacturer", "Product")
        if rows and len(rows[0]) == 2:
            return rows[0][0] or None, rows[0][1] or None
    return None, None


def _graphics_cards() -> List[str]:
    system = platform.system()
    if system == "Linux":
        output = _run(["lspci"]) or ""
        cards = []
        for line in output.splitlines():
            _slot, _, rest = line.partition(" ")
            pci_class, sep, name = rest.partition(": ")
            if sep and pci_class in GPU_PCI_CLASSES:
                cards.append(name.strip())
        return cards
    if system == "Windows":
        return [row[0] for row in _cim_rows("Win32_VideoController", "Name") if row and row[0]]
    return []


def _hardware() -> HardwareInfo:
    freq = None
    try:
        cpu_freq = psutil.cpu_freq()
        freq = float(cpu_freq.max or cpu_freq.current) if cpu_freq else None
    except (NotImplementedError, OSError):
        freq = None
    manufacturer, model = _motherboard()
    return HardwareInfo(
        processor=platform.processor() or platform.machine(),
        machine=platform.machine(),
        physical_cores=psutil.cpu_count(logical=False),
        logical_cores=psutil.cpu_count(logical=True),
        max_clock_mhz=freq,
        total_memory_mb=int(psutil.virtual_memory().total / (1024 * 1024)),
        motherboard_manufacturer=manufacturer,
        motherboard_model=model,
        graphics_cards=_graphics_cards(),
    )


def _network_information() -> List[NetworkInformation]:
    stats = psutil.net_if_stats()
    addrs = psutil.net_if_addrs()
    result: List[NetworkInformation] = []
    for name, st in sorted(stats.items()):
        mac = None
        ips: List[str] = []
        for entry in addrs.get(name, []):
            if entry.family == psutil.AF_LINK:
                mac = entry.address
            elif entry.family in (socket.AF_INET, socket.AF_INET6):
                ips.append(entry.address)
        result.append(
            NetworkInformation(name=name, is_up=bool(st.isup), speed_mbps=int(st.speed), mtu=int(st.mtu), mac=mac, addresses=ips)
        )
    return result


def collect_host_info(is_capture_processing: bool) -> HostInfo:
    hostname = socket.gethostname()
    info = HostInfo(
        machine_name=platform.node() or hostname,
        os_version=f"{platform.system()} {platform.release()} {platform.version()}".strip(),
        hardware=_hardware(),
        ip_addresses=_host_ip_addresses(hostname),
        network_information=_network_information(),
        is_capture_processing=is_capture_processing,
    )
    LOGGER.debug(
        "Collected host info machine=%s interfaces=%s",
        info.machine_name,
        len(info.network_information),
        extra={"category": "HOST"},
    )
    return info
