"""Core value types and wire constants shared by the capture pipeline."""

from __future__ import annotations

import enum
from dataclasses import dataclass

TOPIC_GID_LEN = 16
IP_ADDR_LEN = 16
IP_FAMILY_V4 = 4
IP_FAMILY_V6 = 6

MAX_TOPIC_GIDS = 1024
MAX_FRAGMENT_FLOWS = 4096

TOPIC_GID_STATE_AVAILABLE = 1
TOPIC_GID_STATE_UNAVAILABLE = 2

MIDDLEWARE_FASTDDS = 1
MIDDLEWARE_CYCLONEDDS = 2
MIDDLEWARE_ZENOH = 3

RTPS_SIGNATURE = b"RTPS"
RTPS_HEADER_LEN = 20
RTPS_SIGNATURE_OFFSET = 0
RTPS_VERSION_OFFSET = 4
RTPS_VENDOR_ID_OFFSET = 6
RTPS_GUID_PREFIX_OFFSET = 8
RTPS_GUID_PREFIX_LEN = 12
RTPS_WRITER_ENTITY_ID_LEN = 4

RTPS_SUBMESSAGE_INFO_TS = 0x09
RTPS_SUBMESSAGE_DATA = 0x15
RTPS_SUBMESSAGE_DATA_FRAG = 0x16
RTPS_SUBMESSAGE_HEARTBEAT = 0x07
RTPS_SUBMESSAGE_HEARTBEAT_FRAG = 0x13
RTPS_SUBMESSAGE_ACKNACK = 0x06
RTPS_SUBMESSAGE_NACK_FRAG = 0x12
RTPS_SUBMESSAGE_GAP = 0x08

RTPS_INFO_TS_INVALIDATE_FLAG = 0x02

RTPS_WRITER_ENTITY_ID_SPDP_PARTICIPANT = bytes([0x00, 0x01, 0x00, 0xC2])
RTPS_WRITER_ENTITY_ID_SEDP_PUBLICATIONS = bytes([0x00, 0x00, 0x03, 0xC2])
RTPS_WRITER_ENTITY_ID_SEDP_SUBSCRIPTIONS = bytes([0x00, 0x00, 0x04, 0xC2])

# GUID suffix used for participant discovery entries.
RTPS_PARTICIPANT_ENTITY_ID = bytes([0x00, 0x00, 0x01, 0xC1])


@dataclass(frozen=True, order=True)
class IpAddr:
    """An IPv4 or IPv6 address stored in a fixed 16-byte field."""

    family: int
    data: bytes

    def __post_init__(self) -> None:
        if len(self.data) != IP_ADDR_LEN:
            raise ValueError(f"IP address field must be {IP_ADDR_LEN} bytes, got {len(self.data)}")
        object.__setattr__(self, "data", bytes(self.data))

    @classmethod
    def from_v4(cls, v4: int) -> IpAddr:
        """Build from a host-order 32-bit IPv4 address."""
        if not 0 <= v4 <= 0xFFFFFFFF:
            raise ValueError(f"IPv4 address out of range: {v4}")
        return cls(IP_FAMILY_V4, v4.to_bytes(4, "big") + bytes(IP_ADDR_LEN - 4))

    @classmethod
    def from_v6(cls, data: bytes) -> IpAddr:
        """Build from the 16 raw bytes of an IPv6 address."""
        return cls(IP_FAMILY_V6, bytes(data))

    def is_v4(self) -> bool:
        return self.family == IP_FAMILY_V4

    def is_v6(self) -> bool:
        return self.family == IP_FAMILY_V6


@dataclass(frozen=True, order=True)
class TopicGid:
    """A 16-byte RTPS GUID: 12-byte prefix followed by a 4-byte entity id."""

    data: bytes

    def __post_init__(self) -> None:
        if len(self.data) != TOPIC_GID_LEN:
            raise ValueError(f"topic GID must be {TOPIC_GID_LEN} bytes, got {len(self.data)}")
        object.__setattr__(self, "data", bytes(self.data))

    @classmethod
    def from_rtps_parts(cls, guid_prefix: bytes, writer_entity_id: bytes) -> TopicGid:
        if len(guid_prefix) != RTPS_GUID_PREFIX_LEN:
            raise ValueError(f"GUID prefix must be {RTPS_GUID_PREFIX_LEN} bytes")
        if len(writer_entity_id) != RTPS_WRITER_ENTITY_ID_LEN:
            raise ValueError(f"entity id must be {RTPS_WRITER_ENTITY_ID_LEN} bytes")
        return cls(bytes(guid_prefix) + bytes(writer_entity_id))

    def guid_prefix(self) -> bytes:
        return self.data[:RTPS_GUID_PREFIX_LEN]

    def writer_entity_id(self) -> bytes:
        return self.data[RTPS_GUID_PREFIX_LEN:]


@dataclass(frozen=True, order=True)
class FlowTuple:
    src_ip: IpAddr
    dst_ip: IpAddr
    src_port: int = 0
    dst_port: int = 0


@dataclass(frozen=True, order=True)
class Ipv4FragmentKey:
    src_ip: int
    dst_ip: int
    identification: int
    protocol: int


class PacketDirection(enum.IntEnum):
    """Direction of a captured frame, as reported by the packet socket."""

    HOST = 0
    BROADCAST = 1
    MULTICAST = 2
    OTHERHOST = 3
    OUTGOING = 4

    @classmethod
    def _missing_(cls, value: object) -> PacketDirection | None:
        if isinstance(value, int) and 0 <= value <= 0xFF:
            member = int.__new__(cls, value)
            member._name_ = "UNKNOWN"
            member._value_ = value
            return member
        return None

    @classmethod
    def from_pkttype(cls, value: int) -> PacketDirection:
        """Map a packet-type byte; unrecognised values become UNKNOWN."""
        return cls(value)

    @property
    def is_unknown(self) -> bool:
        return self.name == "UNKNOWN"