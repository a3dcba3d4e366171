import pytest

from rtpsprobe import socket_filter as sf
from rtpsprobe.rtps_classify import PacketTooShort
from rtpsprobe.types import (
    RTPS_WRITER_ENTITY_ID_SPDP_PARTICIPANT,
    TOPIC_GID_STATE_AVAILABLE,
    TOPIC_GID_STATE_UNAVAILABLE,
    TopicGid,
)

PREFIX = bytes(range(1, 13))
WRITER = bytes([0x00, 0x00, 0x12, 0x03])
READER = bytes([0x00, 0x00, 0x12, 0x04])
SRC4 = bytes([10, 0, 0, 1])
DST4 = bytes([10, 0, 0, 2])
SRC6 = bytes(range(16))
DST6 = bytes(range(16, 32))


def rtps_data(writer=WRITER, reader=READER, submessage_id=0x15):
    header = b"RTPS" + bytes([2, 3, 1, 15]) + PREFIX
    body = bytes(4) + reader + writer + bytes(8)
    sub = bytes([submessage_id, 0x01]) + len(body).to_bytes(2, "little") + body
    return header + sub


def udp(payload, length=None):
    if length is None:
        length = 8 + len(payload)
    return (7400).to_bytes(2, "big") + (7401).to_bytes(2, "big") + length.to_bytes(2, "big") + bytes(2) + payload


def eth(ethertype, body, vlan_tags=()):
    frame = bytes(12)
    for tpid, inner in vlan_tags:
        frame += tpid.to_bytes(2, "big") + bytes(2)
    if vlan_tags:
        # The last tag carries the real ethertype in its trailing two bytes.
        frame = bytes(12)
        types = [t for t, _ in vlan_tags] + [ethertype]
        frame += types[0].to_bytes(2, "big")
        for nxt in types[1:]:
            frame += bytes(2) + nxt.to_bytes(2, "big")
        return frame + body
    return frame + ethertype.to_bytes(2, "big") + body


def ipv4(payload, protocol=17, ident=0x1234, frag_bits=0):
    total = 20 + len(payload)
    header = (
        bytes([0x45, 0])
        + total.to_bytes(2, "big")
        + ident.to_bytes(2, "big")
        + frag_bits.to_bytes(2, "big")
        + bytes([64, protocol])
        + bytes(2)
        + SRC4
        + DST4
    )
    return header + payload


def ipv6(payload, next_header=17):
    header = bytes([0x60, 0, 0, 0]) + len(payload).to_bytes(2, "big") + bytes([next_header, 64]) + SRC6 + DST6
    return header + payload


def v4_frame(payload=None, **kw):
    if payload is None:
        payload = udp(rtps_data())
    return eth(sf.ETH_P_IPV4, ipv4(payload, **kw))


def writer_gid():
    return TopicGid.from_rtps_parts(PREFIX, WRITER)


def reader_gid():
    return TopicGid.from_rtps_parts(PREFIX, READER)


def test_discovery_traffic_is_kept():
    frame = v4_frame(udp(rtps_data(writer=RTPS_WRITER_ENTITY_ID_SPDP_PARTICIPANT)))
    assert sf.run(frame, sf.FilterState()) == len(frame)


def test_unknown_writer_is_dropped():
    assert sf.run(v4_frame(), sf.FilterState()) == 0


def test_available_writer_is_kept():
    state = sf.FilterState()
    state.set_gid_state(writer_gid(), TOPIC_GID_STATE_AVAILABLE)
    frame = v4_frame()
    assert sf.run(frame, state) == len(frame)


def test_unavailable_writer_is_dropped():
    state = sf.FilterState()
    state.set_gid_state(writer_gid(), TOPIC_GID_STATE_UNAVAILABLE)
    assert sf.run(v4_frame(), state) == 0


def test_available_reader_is_kept():
    state = sf.FilterState()
    state.set_gid_state(reader_gid(), TOPIC_GID_STATE_AVAILABLE)
    frame = v4_frame()
    assert sf.run(frame, state) == len(frame)


def test_non_rtps_payload_dropped():
    frame = v4_frame(udp(b"HELLO" + bytes(40)))
    assert sf.run(frame, sf.FilterState()) == 0


def test_rtps_without_data_submessage_dropped():
    header = b"RTPS" + bytes([2, 3, 1, 15]) + PREFIX
    heartbeat = bytes([0x07, 0x01, 0x00, 0x00])
    state = sf.FilterState()
    state.set_gid_state(writer_gid(), TOPIC_GID_STATE_AVAILABLE)
    assert sf.run(v4_frame(udp(header + heartbeat)), state) == 0


def test_non_udp_protocol_dropped():
    frame = v4_frame(protocol=6)
    assert sf.parse_ip_packet(frame) is None
    assert sf.run(frame, sf.FilterState()) == 0


def test_non_ip_ethertype_dropped():
    frame = eth(0x0806, bytes(28))
    assert sf.parse_ip_packet(frame) is None
    assert sf.run(frame, sf.FilterState()) == 0


def test_udp_length_below_header_dropped():
    frame = v4_frame(udp(rtps_data(writer=RTPS_WRITER_ENTITY_ID_SPDP_PARTICIPANT), length=4))
    assert sf.run(frame, sf.FilterState()) == 0


def test_ipv4_parse_fields():
    packet = sf.parse_ip_packet(v4_frame())
    assert packet.l4_offset == sf.ETH_HDR_LEN + sf.IPV4_MIN_HDR_LEN
    assert not packet.fragmented
    assert packet.frag_key.src_ip == SRC4 + bytes(12)
    assert packet.frag_key.dst_ip == DST4 + bytes(12)
    assert packet.frag_key.identification == 0x1234
    assert packet.frag_key.protocol == sf.IPPROTO_UDP


def test_vlan_tagged_frame():
    body = ipv4(udp(rtps_data(writer=RTPS_WRITER_ENTITY_ID_SPDP_PARTICIPANT)))
    frame = eth(sf.ETH_P_IPV4, body, vlan_tags=[(sf.ETH_P_8021Q, None)])
    packet = sf.parse_ip_packet(frame)
    assert packet.l4_offset == sf.ETH_HDR_LEN + sf.VLAN_HDR_LEN + sf.IPV4_MIN_HDR_LEN
    assert sf.run(frame, sf.FilterState()) == len(frame)


def test_truncated_frame_raises_and_filter_drops():
    frame = v4_frame()[:30]
    with pytest.raises(PacketTooShort):
        sf.run(frame, sf.FilterState())
    assert sf.filter_packet(frame, sf.FilterState()) == 0


def test_ipv4_fragment_flow():
    state = sf.FilterState()
    state.set_gid_state(writer_gid(), TOPIC_GID_STATE_AVAILABLE)
    first = v4_frame(frag_bits=sf.IPV4_FLAG_MORE_FRAGMENTS)
    middle = v4_frame(bytes(64), frag_bits=sf.IPV4_FLAG_MORE_FRAGMENTS | 10)
    last = v4_frame(bytes(64), frag_bits=20)

    first_packet = sf.parse_ip_packet(first)
    assert first_packet.fragmented and first_packet.fragment_offset == 0

    assert sf.run(first, state) == len(first)
    assert state.frag_flow_approved(first_packet.frag_key)
    assert sf.run(middle, state) == len(middle)
    assert sf.run(last, state) == len(last)
    assert not state.frag_flow_approved(first_packet.frag_key)
    assert sf.run(last, state) == 0


def test_unapproved_trailing_fragment_dropped():
    frame = v4_frame(bytes(64), frag_bits=sf.IPV4_FLAG_MORE_FRAGMENTS | 5)
    assert sf.run(frame, sf.FilterState()) == 0


def test_dropped_first_fragment_not_marked():
    state = sf.FilterState()
    first = v4_frame(frag_bits=sf.IPV4_FLAG_MORE_FRAGMENTS)
    assert sf.run(first, state) == 0
    assert not state.frag_flow_approved(sf.parse_ip_packet(first).frag_key)


def test_ipv6_udp_kept():
    frame = eth(sf.ETH_P_IPV6, ipv6(udp(rtps_data(writer=RTPS_WRITER_ENTITY_ID_SPDP_PARTICIPANT))))
    packet = sf.parse_ip_packet(frame)
    assert packet.l4_offset == sf.ETH_HDR_LEN + sf.IPV6_HDR_LEN
    assert packet.frag_key.src_ip == SRC6
    assert packet.frag_key.dst_ip == DST6
    assert sf.run(frame, sf.FilterState()) == len(frame)


def test_ipv6_hop_by_hop_walked():
    hop = bytes([17, 0]) + bytes(6)
    payload = hop + udp(rtps_data(writer=RTPS_WRITER_ENTITY_ID_SPDP_PARTICIPANT))
    frame = eth(sf.ETH_P_IPV6, ipv6(payload, next_header=sf.IPV6_NEXT_HEADER_HOP_BY_HOP))
    packet = sf.parse_ip_packet(frame)
    assert packet.l4_offset == sf.ETH_HDR_LEN + sf.IPV6_HDR_LEN + len(hop)
    assert sf.run(frame, sf.FilterState()) == len(frame)


def test_ipv6_esp_not_parsed():
    frame = eth(sf.ETH_P_IPV6, ipv6(bytes(32), next_header=sf.IPV6_NEXT_HEADER_ESP))
    assert sf.parse_ip_packet(frame) is None


def _v6_frag(offset_blocks, more, payload, ident=0xABCDEF01):
    bits = (offset_blocks << 3) | (1 if more else 0)
    frag_hdr = bytes([17, 0]) + bits.to_bytes(2, "big") + ident.to_bytes(4, "big")
    return eth(sf.ETH_P_IPV6, ipv6(frag_hdr + payload, next_header=sf.IPV6_NEXT_HEADER_FRAGMENT))


def test_ipv6_fragment_flow():
    state = sf.FilterState()
    state.set_gid_state(writer_gid(), TOPIC_GID_STATE_AVAILABLE)
    first = _v6_frag(0, True, udp(rtps_data()))
    last = _v6_frag(8, False, bytes(40))

    packet = sf.parse_ip_packet(first)
    assert packet.fragmented
    assert packet.frag_key.identification == 0xABCDEF01
    assert packet.frag_key.protocol == sf.IPPROTO_UDP

    assert sf.run(first, state) == len(first)
    assert sf.run(last, state) == len(last)
    assert sf.run(last, state) == 0


def test_ipv6_atomic_fragment_header_continues_to_udp():
    frame = _v6_frag(0, False, udp(rtps_data(writer=RTPS_WRITER_ENTITY_ID_SPDP_PARTICIPANT)))
    packet = sf.parse_ip_packet(frame)
    assert not packet.fragmented
    assert packet.l4_offset == sf.ETH_HDR_LEN + sf.IPV6_HDR_LEN + 8


def test_frag_flow_eviction_keeps_newest():
    state = sf.FilterState(frag_capacity=2)
    keys = [sf.FragmentFlowKey(identification=i) for i in range(3)]
    for key in keys:
        state.frag_flow_mark(key)
    assert [state.frag_flow_approved(k) for k in keys] == [False, True, True]


def test_gid_table_capacity():
    state = sf.FilterState(gid_capacity=1)
    state.set_gid_state(writer_gid(), TOPIC_GID_STATE_AVAILABLE)
    state.set_gid_state(writer_gid(), TOPIC_GID_STATE_UNAVAILABLE)
    assert state.gid_state(writer_gid()) == TOPIC_GID_STATE_UNAVAILABLE
    with pytest.raises(OverflowError):
        state.set_gid_state(reader_gid(), TOPIC_GID_STATE_AVAILABLE)
    assert state.gid_state(reader_gid()) is None