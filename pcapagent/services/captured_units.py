from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from enum import Enum

from pcapagent.pcap.backend import LINKTYPE_ETHERNET


class BatchKind(str, Enum):
    # Values are the field tags written to the stream.
    FRAMES = "raw_packets"
    STATISTICS = "statistics"


@dataclass(frozen=True)
class CapturedFrame:
    data: bytes
    timestamp: float
    device: str
    link_type: int = LINKTYPE_ETHERNET

    def to_record(self) -> str:
        return json.dumps(
            {
                "device": self.device,
                "timestamp": self.timestamp,
                "link_type": self.link_type,
                "length": len(self.data),
                "data": base64.b64encode(self.data).decode("ascii"),
            },
            separators=(",", ":"),
        )


@dataclass(frozen=True)
class TrafficStatisticsSample:
    timestamp: float
    device: str
    received_packets: int
    received_bytes: int
    dropped_packets: int = 0
    interface_errors: int = 0

    def to_record(self) -> str:
        return json.dumps(
            {
                "device": self.device,
                "timestamp": self.timestamp,
                "received_packets": self.received_packets,
                "received_bytes": self.received_bytes,
                "dropped_packets": self.dropped_packets,
                "interface_errors": self.interface_errors,
            },
            separators=(",", ":"),
        )
