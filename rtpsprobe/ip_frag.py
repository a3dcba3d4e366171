"""IP layer parsing of captured frames and reassembly of fragmented datagrams."""

from __future__ import annotations

from bisect import bisect_right
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

from rtpsprobe.types import FlowTuple, IpAddr, PacketDirection

ETH_HDR_LEN = 14
VLAN_HDR_LEN = 4
ETH_P_IPV4 = 0x0800
ETH_P_8021Q = 0x8100
ETH_P_8021AD = 0x88A8
ETH_P_8021QINQ = 0x9100
ETH_P_IPV6 = 0x86DD
IPV4_FLAG_MORE_FRAGMENTS = 0x2000
IPV4_FRAGMENT_OFFSET_MASK = 0x1FFF
IPV4_MIN_HDR_LEN = 20
IPV6_HDR_LEN = 40
UDP_PROTOCOL = 17
UDP_HDR_LEN = 8
IPV6_NEXT_HEADER_HOP_BY_HOP = 0
IPV6_NEXT_HEADER_ROUTING = 43
IPV6_NEXT_HEADER_FRAGMENT = 44
IPV6_NEXT_HEADER_ESP = 50
IPV6_NEXT_HEADER_AUTH = 51
IPV6_NEXT_HEADER_DESTINATION = 60
IPV6_NEXT_HEADER_NO_NEXT = 59
IPV6_FRAGMENT_OFFSET_MASK = 0xFFF8

_VLAN_ETHERTYPES = frozenset({ETH_P_8021Q, ETH_P_8021AD, ETH_P_8021QINQ})
_MAX_VLAN_TAGS = 2


class PacketParseError(ValueError):
    """A frame or datagram could not be parsed as IP/UDP."""


@dataclass(frozen=True)
class IpFragmentKey:
    """Identifies the datagram a fragment belongs to."""

    src_ip: IpAddr
    dst_ip: IpAddr
    identification: int
    protocol: int


@dataclass(frozen=True)
class IpFragmentInfo:
    key: IpFragmentKey
    offset_bytes: int
    more_fragments: bool


@dataclass
class CapturedIpPacket:
    """One parsed IP packet.

    ``ip_payload`` is everything after the IP header, including the UDP header.
    """

    socket_timestamp: datetime
    frame_len: int
    direction: PacketDirection
    flow: FlowTuple
    ip_identification: int
    ip_payload: bytes
    fragment: IpFragmentInfo | None = None


@dataclass
class ReassembledUdpPayload:
    socket_timestamp: datetime
    frame_len: int
    direction: PacketDirection
    flow: FlowTuple
    ip_identification: int
    udp_payload: bytes
    fragment_count: int
    was_fragmented: bool


@dataclass
class ReassembledIpDatagram:
    socket_timestamp: datetime
    frame_len: int
    direction: PacketDirection
    flow: FlowTuple
    ip_identification: int
    ip_payload: bytes
    fragment_count: int
    was_fragmented: bool

    def into_udp_payload(self) -> ReassembledUdpPayload:
        """Strip the UDP header, honouring the UDP length field."""
        payload = self.ip_payload
        if len(payload) < UDP_HDR_LEN:
            raise PacketParseError("reassembled IP payload shorter than UDP header")
        udp_len = int.from_bytes(payload[4:6], "big")
        if udp_len < UDP_HDR_LEN:
            raise PacketParseError("UDP length shorter than header")
        available = min(len(payload), udp_len)
        if available < UDP_HDR_LEN:
            raise PacketParseError("reassembled UDP datagram shorter than header")
        return ReassembledUdpPayload(
            socket_timestamp=self.socket_timestamp,
            frame_len=self.frame_len,
            direction=self.direction,
            flow=self.flow,
            ip_identification=self.ip_identification,
            udp_payload=bytes(payload[UDP_HDR_LEN:available]),
            fragment_count=self.fragment_count,
            was_fragmented=self.was_fragmented,
        )


@dataclass
class _FragmentFlowState:
    socket_timestamp: datetime
    frame_len: int
    direction: PacketDirection
    flow: FlowTuple
    ip_identification: int
    total_len: int | None = None
    ranges: list[tuple[int, int]] = field(default_factory=list)
    chunks: dict[int, bytes] = field(default_factory=dict)

    def is_complete(self) -> bool:
        if self.total_len is None or not self.ranges:
            return False
        start, end = self.ranges[0]
        return start == 0 and end >= self.total_len and len(self.ranges) == 1


class IpFragmentReassembler:
    """Collects IP fragments and yields whole datagrams once all bytes arrived.

    At most ``capacity`` datagrams are tracked; the oldest is dropped to make room.
    """

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        self._flows: dict[IpFragmentKey, _FragmentFlowState] = {}
        self._order: deque[IpFragmentKey] = deque()

    def __len__(self) -> int:
        return len(self._flows)

    def accept(self, packet: CapturedIpPacket) -> list[ReassembledIpDatagram]:
        """Feed one packet; return the datagrams it completes (zero or one)."""
        fragment = packet.fragment
        if fragment is None:
            return [
                ReassembledIpDatagram(
                    socket_timestamp=packet.socket_timestamp,
                    frame_len=packet.frame_len,
                    direction=packet.direction,
                    flow=packet.flow,
                    ip_identification=packet.ip_identification,
                    ip_payload=packet.ip_payload,
                    fragment_count=1,
                    was_fragmented=False,
                )
            ]

        key = fragment.key
        state = self._flows.get(key)
        if state is None:
            if len(self._flows) == self.capacity:
                while self._order:
                    if self._flows.pop(self._order.popleft(), None) is not None:
                        break
            self._order.append(key)
            state = _FragmentFlowState(
                socket_timestamp=packet.socket_timestamp,
                frame_len=packet.frame_len,
                direction=packet.direction,
                flow=packet.flow,
                ip_identification=packet.ip_identification,
            )
            self._flows[key] = state

        if packet.socket_timestamp < state.socket_timestamp:
            state.socket_timestamp = packet.socket_timestamp
        state.frame_len = max(state.frame_len, packet.frame_len)

        fragment_end = fragment.offset_bytes + len(packet.ip_payload)
        if not fragment.more_fragments:
            state.total_len = fragment_end

        insert_range(state.ranges, fragment.offset_bytes, fragment_end)
        state.chunks[fragment.offset_bytes] = packet.ip_payload

        if not state.is_complete():
            return []

        flow = self._flows.pop(key)
        total_len = flow.total_len or 0
        payload = bytearray(total_len)
        for offset, chunk in sorted(flow.chunks.items()):
            end = min(offset + len(chunk), total_len)
            if end > offset:
                payload[offset:end] = chunk[: end - offset]

        return [
            ReassembledIpDatagram(
                socket_timestamp=flow.socket_timestamp,
                frame_len=flow.frame_len,
                direction=flow.direction,
                flow=flow.flow,
                ip_identification=flow.ip_identification,
                ip_payload=bytes(payload),
                fragment_count=len(flow.chunks),
                was_fragmented=True,
            )
        ]


def parse_l3_offset(frame: bytes) -> tuple[int, int]:
    """Return ``(ethertype, l3_offset)``, skipping up to two VLAN tags."""
    if len(frame) < ETH_HDR_LEN:
        raise PacketParseError("packet shorter than Ethernet header")
    offset = ETH_HDR_LEN
    ethertype = int.from_bytes(frame[12:14], "big")
    for _ in range(_MAX_VLAN_TAGS):
        if ethertype not in _VLAN_ETHERTYPES:
            break
        if len(frame) < offset + VLAN_HDR_LEN:
            raise PacketParseError("packet shorter than VLAN header")
        ethertype = int.from_bytes(frame[offset + 2 : offset + 4], "big")
        offset += VLAN_HDR_LEN
    return ethertype, offset


def _l3_offset_for(frame: bytes, expected: int, family: str) -> int:
    ethertype, offset = parse_l3_offset(frame)
    if ethertype != expected:
        raise PacketParseError(f"EtherType {ethertype:#06x} is not {family}")
    return offset


def parse_ipv4_packet(
    frame: bytes,
    frame_len: int,
    direction: PacketDirection,
    socket_timestamp: datetime,
) -> CapturedIpPacket:
    """Parse an Ethernet frame carrying IPv4/UDP (possibly a fragment)."""
    l3_offset = _l3_offset_for(frame, ETH_P_IPV4, "IPv4")
    if len(frame) < l3_offset + IPV4_MIN_HDR_LEN:
        raise PacketParseError("packet shorter than Ethernet/VLAN + minimum IPv4 header")

    packet = bytes(frame[l3_offset:])
    version_ihl = packet[0]
    version = version_ihl >> 4
    if version != 4:
        raise PacketParseError(f"unexpected IPv4 version nibble {version}")
    ihl_words = version_ihl & 0x0F
    if ihl_words < 5:
        raise PacketParseError(f"unexpected IPv4 header length nibble {ihl_words}")
    header_len = ihl_words * 4
    if len(packet) < header_len:
        raise PacketParseError("packet shorter than declared IPv4 header length")

    protocol = packet[9]
    if protocol != UDP_PROTOCOL:
        raise PacketParseError("IPv4 packet is not UDP")

    total_len = int.from_bytes(packet[2:4], "big")
    payload_end = min(total_len, len(packet))
    if payload_end < header_len:
        raise PacketParseError("IPv4 total length shorter than header")

    src_ip = IpAddr.from_v4(int.from_bytes(packet[12:16], "big"))
    dst_ip = IpAddr.from_v4(int.from_bytes(packet[16:20], "big"))
    identification = int.from_bytes(packet[4:6], "big")
    fragment_bits = int.from_bytes(packet[6:8], "big")
    more_fragments = bool(fragment_bits & IPV4_FLAG_MORE_FRAGMENTS)
    offset_bytes = (fragment_bits & IPV4_FRAGMENT_OFFSET_MASK) * 8

    fragment = None
    if more_fragments or offset_bytes != 0:
        fragment = IpFragmentInfo(
            key=IpFragmentKey(src_ip, dst_ip, identification, protocol),
            offset_bytes=offset_bytes,
            more_fragments=more_fragments,
        )

    return CapturedIpPacket(
        socket_timestamp=socket_timestamp,
        frame_len=frame_len,
        direction=direction,
        flow=FlowTuple(src_ip, dst_ip, 0, 0),
        ip_identification=identification,
        ip_payload=packet[header_len:payload_end],
        fragment=fragment,
    )


def parse_ipv6_packet(
    frame: bytes,
    frame_len: int,
    direction: PacketDirection,
    socket_timestamp: datetime,
) -> CapturedIpPacket:
    """Parse an Ethernet frame carrying IPv6/UDP, walking extension headers."""
    frame = bytes(frame)
    l3_offset = _l3_offset_for(frame, ETH_P_IPV6, "IPv6")
    if len(frame) < l3_offset + IPV6_HDR_LEN:
        raise PacketParseError("packet shorter than Ethernet/VLAN + IPv6 header")

    packet = frame[l3_offset:]
    version = packet[0] >> 4
    if version != 6:
        raise PacketParseError(f"unexpected IPv6 version nibble {version}")

    payload_len = int.from_bytes(packet[4:6], "big")
    packet_end = min(l3_offset + IPV6_HDR_LEN + payload_len, len(frame))
    if packet_end < l3_offset + IPV6_HDR_LEN:
        raise PacketParseError("IPv6 payload shorter than header")

    src_ip = IpAddr.from_v6(packet[8:24])
    dst_ip = IpAddr.from_v6(packet[24:40])
    flow = FlowTuple(src_ip, dst_ip, 0, 0)

    next_header = packet[6]
    offset = IPV6_HDR_LEN
    while next_header != UDP_PROTOCOL:
        if next_header in (
            IPV6_NEXT_HEADER_HOP_BY_HOP,
            IPV6_NEXT_HEADER_ROUTING,
            IPV6_NEXT_HEADER_DESTINATION,
        ):
            if l3_offset + offset + 2 > packet_end:
                raise PacketParseError("IPv6 extension header shorter than minimum length")
            next_header, ext_len = packet[offset], packet[offset + 1]
            offset += (ext_len + 1) * 8
        elif next_header == IPV6_NEXT_HEADER_FRAGMENT:
            if l3_offset + offset + 8 > packet_end:
                raise PacketParseError("IPv6 fragment header shorter than minimum length")
            ext = packet[offset : offset + 8]
            fragment_bits = int.from_bytes(ext[2:4], "big")
            offset_bytes = (fragment_bits & IPV6_FRAGMENT_OFFSET_MASK) >> 3
            more_fragments = bool(fragment_bits & 0x1)
            identification = int.from_bytes(ext[4:8], "big")
            payload_start = offset + 8
            payload_stop = packet_end - l3_offset
            if payload_stop < payload_start:
                raise PacketParseError("IPv6 fragment payload shorter than header")
            return CapturedIpPacket(
                socket_timestamp=socket_timestamp,
                frame_len=frame_len,
                direction=direction,
                flow=flow,
                ip_identification=identification & 0xFFFF,
                ip_payload=packet[payload_start:payload_stop],
                fragment=IpFragmentInfo(
                    key=IpFragmentKey(src_ip, dst_ip, identification, ext[0]),
                    offset_bytes=offset_bytes,
                    more_fragments=more_fragments,
                ),
            )
        elif next_header == IPV6_NEXT_HEADER_AUTH:
            if l3_offset + offset + 2 > packet_end:
                raise PacketParseError("IPv6 authentication header shorter than minimum length")
            next_header, ext_len = packet[offset], packet[offset + 1]
            offset += (ext_len + 2) * 4
        elif next_header == IPV6_NEXT_HEADER_ESP:
            raise PacketParseError("IPv6 ESP payload is not supported")
        elif next_header == IPV6_NEXT_HEADER_NO_NEXT:
            raise PacketParseError("IPv6 packet has no next header")
        else:
            raise PacketParseError(f"unsupported IPv6 next header {next_header}")

        if l3_offset + offset > packet_end:
            raise PacketParseError("IPv6 extension headers exceed payload length")

    udp_offset = l3_offset + offset
    if udp_offset + UDP_HDR_LEN > packet_end:
        raise PacketParseError("IPv6 UDP datagram shorter than UDP header")
    udp = frame[udp_offset:packet_end]
    udp_len = int.from_bytes(udp[4:6], "big")
    if udp_len < UDP_HDR_LEN:
        raise PacketParseError("IPv6 UDP length shorter than header")
    available = min(len(udp), udp_len)
    if available < UDP_HDR_LEN:
        raise PacketParseError("IPv6 UDP payload shorter than header")

    return CapturedIpPacket(
        socket_timestamp=socket_timestamp,
        frame_len=frame_len,
        direction=direction,
        flow=flow,
        ip_identification=0,
        ip_payload=udp[:available],
        fragment=None,
    )


def insert_range(ranges: list[tuple[int, int]], start: int, end: int) -> None:
    """Add ``[start, end)`` to a sorted list of disjoint ranges, merging in place.

    Ranges that touch or overlap are merged. Empty ranges are ignored.
    """
    if start >= end:
        return
    at = bisect_right([s for s, _ in ranges], start)
    ranges.insert(at, (start, end))

    if at > 0 and ranges[at - 1][1] >= ranges[at][0]:
        ranges[at - 1] = (ranges[at - 1][0], max(ranges[at - 1][1], ranges[at][1]))
        del ranges[at]
        at -= 1

    while at + 1 < len(ranges) and ranges[at][1] >= ranges[at + 1][0]:
        ranges[at] = (ranges[at][0], max(ranges[at][1], ranges[at + 1][1]))
        del ranges[at + 1]