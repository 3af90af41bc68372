from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pcapagent.errors import NoDevicesFound, NoSuchInterface
from pcapagent.pcap.backend import CaptureBackend, DeviceAddress, InterfaceHandle

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureDevice:
    name: str
    description: str
    friendly_name: str
    addresses: Tuple[DeviceAddress, ...] = ()
    gateways: Tuple[str, ...] = ()
    mac: Optional[str] = None

    @classmethod
    def from_handle(cls, handle: InterfaceHandle) -> "CaptureDevice":
        return cls(
            name=handle.name,
            description=handle.description,
            friendly_name=handle.friendly_name,
            addresses=tuple(handle.addresses),
            gateways=tuple(handle.gateways),
            mac=handle.mac,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "friendly_name": self.friendly_name,
            "addresses": [
                {"address": a.address, "netmask": a.netmask, "broadcast": a.broadcast} for a in self.addresses
            ],
            "gateways": list(self.gateways),
            "mac": self.mac,
        }


class DeviceDirectory:
    def __init__(self, backend: CaptureBackend) -> None:
        self._backend = backend

    def _handles(self) -> List[InterfaceHandle]:
        handles = self._backend.list_devices()
        if not handles:
            LOGGER.error("No capture devices were found", extra={"category": "ERRORS"})
            raise NoDevicesFound()
        return handles

    def list_devices(self) -> List[CaptureDevice]:
        return [CaptureDevice.from_handle(h) for h in self._handles()]

    def resolve_by_description(self, name: str) -> InterfaceHandle:
        """
        Exact, case-sensitive match on the platform description; only the input is trimmed.
        Devices sharing a description resolve to the first one listed.
        """
        wanted = (name or "").strip()
        for handle in self._handles():
            if handle.description == wanted:
                LOGGER.debug(
                    "Resolved adapter description=%s device=%s",
                    wanted,
                    handle.name,
                    extra={"category": "DEVICES"},
                )
                return handle
        LOGGER.error("No such interface adapter=%s", wanted, extra={"category": "ERRORS"})
        raise NoSuchInterface(wanted)
