"""Packet filter deciding which captured frames carry interesting RTPS traffic.

The filter sees raw Ethernet frames. It keeps a frame when it carries RTPS
discovery traffic, or user data whose writer or reader GUID is marked
available. It also keeps the headerless trailing IP fragments of a datagram
whose first fragment was kept.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field

from rtpsprobe.rtps_classify import PacketTooShort, classify
from rtpsprobe.types import (
    MAX_FRAGMENT_FLOWS,
    MAX_TOPIC_GIDS,
    TOPIC_GID_STATE_AVAILABLE,
    TopicGid,
)

ETH_HDR_LEN = 14
VLAN_HDR_LEN = 4
ETH_P_IPV4 = 0x0800
ETH_P_IPV6 = 0x86DD
ETH_P_8021Q = 0x8100
ETH_P_8021AD = 0x88A8
ETH_P_8021QINQ = 0x9100
IPV4_MIN_HDR_LEN = 20
IPV6_HDR_LEN = 40
IPV4_FLAG_MORE_FRAGMENTS = 0x2000
IPV4_FRAGMENT_OFFSET_MASK = 0x1FFF
IPPROTO_UDP = 17
UDP_HDR_LEN = 8
IPV6_NEXT_HEADER_HOP_BY_HOP = 0
IPV6_NEXT_HEADER_ROUTING = 43
IPV6_NEXT_HEADER_FRAGMENT = 44
IPV6_NEXT_HEADER_ESP = 50
IPV6_NEXT_HEADER_AUTH = 51
IPV6_NEXT_HEADER_DESTINATION = 60
IPV6_NEXT_HEADER_NO_NEXT = 59

_VLAN_ETHERTYPES = frozenset({ETH_P_8021Q, ETH_P_8021AD, ETH_P_8021QINQ})
_MAX_VLAN_TAGS = 2
_MAX_IPV6_EXT_HEADERS = 4


def _load(frame: bytes, offset: int, length: int) -> bytes:
    if offset < 0 or offset + length > len(frame):
        raise PacketTooShort(offset, length, len(frame))
    return bytes(frame[offset : offset + length])


def _u8(frame: bytes, offset: int) -> int:
    return _load(frame, offset, 1)[0]


def _u16(frame: bytes, offset: int) -> int:
    return int.from_bytes(_load(frame, offset, 2), "big")


def _u32(frame: bytes, offset: int) -> int:
    return int.from_bytes(_load(frame, offset, 4), "big")


@dataclass(frozen=True)
class FragmentFlowKey:
    """Identifies one fragmented IP datagram."""

    src_ip: bytes = bytes(16)
    dst_ip: bytes = bytes(16)
    identification: int = 0
    protocol: int = 0


@dataclass(frozen=True)
class IpPacket:
    """Layer-3 facts the filter needs about a frame.

    ``fragment_offset`` is the raw offset field in 8-byte blocks; it is 0 for
    unfragmented packets and for the first fragment of a datagram.
    """

    l4_offset: int
    fragmented: bool = False
    fragment_offset: int = 0
    more_fragments: bool = False
    frag_key: FragmentFlowKey = field(default_factory=FragmentFlowKey)


@dataclass
class FilterState:
    """Shared tables the filter consults: GID states and approved fragment flows."""

    gid_capacity: int = MAX_TOPIC_GIDS
    frag_capacity: int = MAX_FRAGMENT_FLOWS
    _gids: dict[TopicGid, int] = field(default_factory=dict, init=False, repr=False)
    _frag_flows: OrderedDict[FragmentFlowKey, None] = field(
        default_factory=OrderedDict, init=False, repr=False
    )

    def gid_state(self, gid: TopicGid) -> int | None:
        """State recorded for ``gid``, or None when it is unknown."""
        return self._gids.get(gid)

    def set_gid_state(self, gid: TopicGid, state: int) -> None:
        """Record the state of ``gid``; fails when the table is full."""
        if gid not in self._gids and len(self._gids) >= self.gid_capacity:
            raise OverflowError(f"topic GID table is full ({self.gid_capacity} entries)")
        self._gids[gid] = state

    def frag_flow_approved(self, key: FragmentFlowKey) -> bool:
        return key in self._frag_flows

    def frag_flow_mark(self, key: FragmentFlowKey) -> None:
        """Approve a fragmented datagram, evicting the oldest entry when full."""
        if key in self._frag_flows:
            self._frag_flows.move_to_end(key)
            return
        while len(self._frag_flows) >= self.frag_capacity > 0:
            self._frag_flows.popitem(last=False)
        if self.frag_capacity > 0:
            self._frag_flows[key] = None

    def frag_flow_forget(self, key: FragmentFlowKey) -> None:
        self._frag_flows.pop(key, None)


def _parse_l3_offset(frame: bytes) -> tuple[int, int] | None:
    offset = ETH_HDR_LEN
    ethertype = _u16(frame, 12)
    for _ in range(_MAX_VLAN_TAGS):
        if ethertype not in _VLAN_ETHERTYPES:
            break
        ethertype = _u16(frame, offset + 2)
        offset += VLAN_HDR_LEN
    if ethertype not in (ETH_P_IPV4, ETH_P_IPV6):
        return None
    return ethertype, offset


def _parse_ipv4(frame: bytes, l3_offset: int) -> IpPacket | None:
    version_ihl = _u8(frame, l3_offset)
    if version_ihl >> 4 != 4:
        return None
    ihl_words = version_ihl & 0x0F
    if ihl_words < 5:
        return None
    header_len = ihl_words * 4
    if header_len < IPV4_MIN_HDR_LEN:
        return None

    protocol = _u8(frame, l3_offset + 9)
    if protocol != IPPROTO_UDP:
        return None

    identification = _u16(frame, l3_offset + 4)
    fragment_bits = _u16(frame, l3_offset + 6)
    fragment_offset = fragment_bits & IPV4_FRAGMENT_OFFSET_MASK
    more_fragments = bool(fragment_bits & IPV4_FLAG_MORE_FRAGMENTS)

    src = _load(frame, l3_offset + 12, 4)
    dst = _load(frame, l3_offset + 16, 4)

    return IpPacket(
        l4_offset=l3_offset + header_len,
        fragmented=fragment_offset != 0 or more_fragments,
        fragment_offset=fragment_offset,
        more_fragments=more_fragments,
        frag_key=FragmentFlowKey(
            src_ip=src + bytes(12),
            dst_ip=dst + bytes(12),
            identification=identification,
            protocol=protocol,
        ),
    )


def _parse_ipv6(frame: bytes, l3_offset: int) -> IpPacket | None:
    if _u8(frame, l3_offset) >> 4 != 6:
        return None

    _u16(frame, l3_offset + 4)  # payload length must be readable
    src_ip = _load(frame, l3_offset + 8, 16)
    dst_ip = _load(frame, l3_offset + 24, 16)

    next_header = _u8(frame, l3_offset + 6)
    offset = l3_offset + IPV6_HDR_LEN

    for _ in range(_MAX_IPV6_EXT_HEADERS):
        if next_header == IPPROTO_UDP:
            return IpPacket(
                l4_offset=offset,
                frag_key=FragmentFlowKey(src_ip, dst_ip, 0, IPPROTO_UDP),
            )
        if next_header in (
            IPV6_NEXT_HEADER_HOP_BY_HOP,
            IPV6_NEXT_HEADER_ROUTING,
            IPV6_NEXT_HEADER_DESTINATION,
        ):
            ext_next = _u8(frame, offset)
            ext_len = _u8(frame, offset + 1)
            next_header = ext_next
            offset += (ext_len + 1) * 8
        elif next_header == IPV6_NEXT_HEADER_FRAGMENT:
            ext_next = _u8(frame, offset)
            fragment_bits = _u16(frame, offset + 2)
            identification = _u32(frame, offset + 4)
            fragment_offset = fragment_bits >> 3
            more_fragments = bool(fragment_bits & 0x1)
            next_header = ext_next
            offset += 8
            if fragment_offset != 0 or more_fragments:
                return IpPacket(
                    l4_offset=offset,
                    fragmented=True,
                    fragment_offset=fragment_offset,
                    more_fragments=more_fragments,
                    frag_key=FragmentFlowKey(src_ip, dst_ip, identification, ext_next),
                )
            # An atomic fragment header: keep walking towards UDP.
        elif next_header == IPV6_NEXT_HEADER_AUTH:
            ext_next = _u8(frame, offset)
            ext_len = _u8(frame, offset + 1)
            next_header = ext_next
            offset += (ext_len + 2) * 4
        else:
            # ESP, no-next-header and anything unknown cannot be inspected.
            return None

    return None


def parse_ip_packet(frame: bytes) -> IpPacket | None:
    """Parse the IP layer of an Ethernet frame; None when it is not IP/UDP.

    Raises PacketTooShort when a header field lies beyond the frame.
    """
    parsed = _parse_l3_offset(frame)
    if parsed is None:
        return None
    ethertype, l3_offset = parsed
    if ethertype == ETH_P_IPV4:
        return _parse_ipv4(frame, l3_offset)
    return _parse_ipv6(frame, l3_offset)


def _udp_length_ok(frame: bytes, packet: IpPacket) -> bool:
    return _u16(frame, packet.l4_offset + 4) >= UDP_HDR_LEN


def _gid_available(state: FilterState, gid: TopicGid) -> bool:
    return state.gid_state(gid) == TOPIC_GID_STATE_AVAILABLE


def run(frame: bytes, state: FilterState) -> int:
    """Number of bytes of ``frame`` to keep: the whole frame, or 0 to drop it.

    Raises PacketTooShort when the frame ends inside a header being read.
    """
    packet = parse_ip_packet(frame)
    if packet is None:
        return 0

    # Trailing fragments carry no UDP/RTPS header; rely on the first fragment's verdict.
    if packet.fragmented and packet.fragment_offset > 0:
        approved = state.frag_flow_approved(packet.frag_key)
        if approved and not packet.more_fragments:
            state.frag_flow_forget(packet.frag_key)
        return len(frame) if approved else 0

    if not _udp_length_ok(frame, packet):
        return 0

    route = classify(frame, packet.l4_offset + UDP_HDR_LEN)
    if route is None:
        return 0

    if route.is_discovery:
        keep = True
    elif not route.has_writer_gid and not route.has_reader_gid:
        keep = False
    else:
        keep = (route.has_writer_gid and _gid_available(state, route.writer_gid)) or (
            route.has_reader_gid and _gid_available(state, route.reader_gid)
        )

    if keep and packet.fragmented:
        state.frag_flow_mark(packet.frag_key)

    return len(frame) if keep else 0


def filter_packet(frame: bytes, state: FilterState) -> int:
    """Like :func:`run`, but a malformed or truncated frame is simply dropped."""
    try:
        return run(frame, state)
    except PacketTooShort:
        return 0