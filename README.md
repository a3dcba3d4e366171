# rtpsprobe

Building blocks for passively observing RTPS traffic (the DDS wire protocol
used by ROS 2). Everything works on byte strings: raw Ethernet frames,
IP payloads and UDP payloads that you have captured or recorded yourself.

## Modules

- **`rtpsprobe.types`** – value types and wire constants shared by the other
  modules: `IpAddr` (`from_v4`, `from_v6`, `is_v4`, `is_v6`), `TopicGid`
  (`from_rtps_parts`, `guid_prefix`, `writer_entity_id`), `FlowTuple`,
  `Ipv4FragmentKey` and `PacketDirection` (`from_pkttype`; values outside the
  known ones become an `UNKNOWN` member).
- **`rtpsprobe.rtps_classify`** – looks at a UDP payload and decides whether
  it is RTPS, whether its first DATA/DATA_FRAG submessage comes from a
  discovery writer, and which writer and reader GIDs it names (`classify`,
  `has_signature`, `is_discovery_writer`, `RtpsRoute`). Reads past the end of
  the data raise `PacketTooShort`.
- **`rtpsprobe.socket_filter`** – a frame filter over Ethernet/VLAN, IPv4
  and IPv6. `FilterState` holds the topic GIDs worth keeping
  (`set_gid_state`, `gid_state`) and the fragmented datagrams already let
  through (`frag_flow_mark`, `frag_flow_approved`, `frag_flow_forget`).
  `run(frame, state)` returns the number of bytes to keep (the whole frame or
  0) and raises `PacketTooShort` on truncated frames; `filter_packet` does the
  same but drops truncated frames. `parse_ip_packet` exposes the layer-3
  parse.
- **`rtpsprobe.ip_frag`** – full IPv4/IPv6 parsing (`parse_ipv4_packet`,
  `parse_ipv6_packet`, `parse_l3_offset`) and fragment reassembly with a
  bounded number of in-flight datagrams (`IpFragmentReassembler`).
  `ReassembledIpDatagram.into_udp_payload` strips the UDP header. Errors are
  raised as `PacketParseError`.
- **`rtpsprobe.cli_format`** – text formatting for reports: `format_bytes`,
  `format_rate`, `full_node_name`, `format_types`, `pluralize`,
  `is_internal_topic` and `format_info_log`.
- **`rtpsprobe.topic_tools`** – `DelayWindow`, a sliding window of delay
  samples whose `stats()` gives mean, min, max and population standard
  deviation as `DelayStats`; `format_delay_stats` renders them, and
  `hex_bytes` dumps raw payloads as hex.

The package has no third-party dependencies.

## Examples

Classifying an RTPS payload:

```python
from rtpsprobe.rtps_classify import classify

route = classify(udp_payload, 0)
if route is None:
    print("not RTPS")
elif route.is_discovery:
    print("discovery traffic")
elif route.has_writer_gid:
    print("data from writer", route.writer_gid)
```

Filtering frames for a known topic writer:

```python
from rtpsprobe.socket_filter import FilterState, filter_packet
from rtpsprobe.types import TOPIC_GID_STATE_AVAILABLE

state = FilterState()
state.set_gid_state(writer_gid, TOPIC_GID_STATE_AVAILABLE)
kept = [frame for frame in frames if filter_packet(frame, state)]
```

Reassembling fragmented datagrams:

```python
from rtpsprobe.ip_frag import IpFragmentReassembler, PacketParseError, parse_ipv4_packet

reassembler = IpFragmentReassembler(4096)
for frame, length, direction, timestamp in frames:
    try:
        packet = parse_ipv4_packet(frame, length, direction, timestamp)
    except PacketParseError:
        continue
    for datagram in reassembler.accept(packet):
        udp = datagram.into_udp_payload()
        handle(udp.udp_payload)
```

Formatting figures and delay statistics:

```python
from rtpsprobe.cli_format import format_bytes, format_rate
from rtpsprobe.topic_tools import DelayWindow, format_delay_stats, hex_bytes

format_bytes(512.0)        # '512 B'
format_bytes(1500.0)       # '1.50 KB'
format_rate(2_500_000.0)   # '2.50 MB/s'
hex_bytes(b"RTPS")         # '52545053'

window = DelayWindow(100)
for delay in (0.010, 0.012, 0.011):
    window.push(delay)
print(format_delay_stats(window.stats()))
```

## What this package does not do

- It does not open network interfaces or capture live traffic; frames must
  come from elsewhere (a recording, or a capture tool of your choice).
- It does not decode RTPS message contents or ROS message types beyond the
  GUIDs and discovery check described above.
- It has no command-line program, background service or bag recording; the
  formatting helpers produce text but nothing here queries a running system.