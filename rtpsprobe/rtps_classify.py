"""Classification of RTPS payloads for the kernel-side packet filter."""

from __future__ import annotations

from dataclasses import dataclass

from rtpsprobe.types import (
    RTPS_GUID_PREFIX_LEN,
    RTPS_GUID_PREFIX_OFFSET,
    RTPS_HEADER_LEN,
    RTPS_SIGNATURE,
    RTPS_SIGNATURE_OFFSET,
    RTPS_SUBMESSAGE_DATA,
    RTPS_SUBMESSAGE_DATA_FRAG,
    RTPS_WRITER_ENTITY_ID_LEN,
    RTPS_WRITER_ENTITY_ID_SEDP_PUBLICATIONS,
    RTPS_WRITER_ENTITY_ID_SEDP_SUBSCRIPTIONS,
    RTPS_WRITER_ENTITY_ID_SPDP_PARTICIPANT,
    TopicGid,
)

RTPS_SCAN_SUBMESSAGES = 4
RTPS_SUBMESSAGE_HEADER_LEN = 4
RTPS_SUBMESSAGE_ENDIAN_FLAG = 0x01
RTPS_SUBMESSAGE_READER_ID_OFFSET = 8
RTPS_SUBMESSAGE_WRITER_ID_OFFSET = 12

_DISCOVERY_WRITERS = frozenset(
    {
        RTPS_WRITER_ENTITY_ID_SPDP_PARTICIPANT,
        RTPS_WRITER_ENTITY_ID_SEDP_PUBLICATIONS,
        RTPS_WRITER_ENTITY_ID_SEDP_SUBSCRIPTIONS,
    }
)

_ZERO_GID = TopicGid(bytes(16))


class PacketTooShort(ValueError):
    """A read ran past the end of the packet."""

    def __init__(self, offset: int, length: int, available: int) -> None:
        super().__init__(
            f"read of {length} bytes at offset {offset} exceeds packet of {available} bytes"
        )
        self.offset = offset
        self.length = length
        self.available = available


def _load(data: bytes, offset: int, length: int) -> bytes:
    if offset < 0 or offset + length > len(data):
        raise PacketTooShort(offset, length, len(data))
    return bytes(data[offset : offset + length])


@dataclass(frozen=True)
class RtpsRoute:
    """Writer/reader GUIDs found in the first DATA submessage of a packet."""

    writer_gid: TopicGid = _ZERO_GID
    reader_gid: TopicGid = _ZERO_GID
    has_writer_gid: bool = False
    has_reader_gid: bool = False
    is_discovery: bool = False


def has_signature(data: bytes, payload_offset: int) -> bool:
    """Whether the payload starts with the RTPS magic."""
    return _load(data, payload_offset + RTPS_SIGNATURE_OFFSET, len(RTPS_SIGNATURE)) == RTPS_SIGNATURE


def is_discovery_writer(entity_id: bytes) -> bool:
    """Whether the entity id is one of the built-in SPDP/SEDP writers."""
    return bytes(entity_id) in _DISCOVERY_WRITERS


def classify(data: bytes, payload_offset: int) -> RtpsRoute | None:
    """Classify the RTPS message starting at ``payload_offset``.

    Returns None when the payload is not RTPS. Raises PacketTooShort when a
    required field lies beyond the end of ``data``.
    """
    if not has_signature(data, payload_offset):
        return None

    guid_prefix = _load(data, payload_offset + RTPS_GUID_PREFIX_OFFSET, RTPS_GUID_PREFIX_LEN)

    submessage_offset = payload_offset + RTPS_HEADER_LEN
    for _ in range(RTPS_SCAN_SUBMESSAGES):
        submessage_id, flags, octet0, octet1 = _load(
            data, submessage_offset, RTPS_SUBMESSAGE_HEADER_LEN
        )

        if submessage_id in (RTPS_SUBMESSAGE_DATA, RTPS_SUBMESSAGE_DATA_FRAG):
            reader_entity_id = _load(
                data,
                submessage_offset + RTPS_SUBMESSAGE_READER_ID_OFFSET,
                RTPS_WRITER_ENTITY_ID_LEN,
            )
            writer_entity_id = _load(
                data,
                submessage_offset + RTPS_SUBMESSAGE_WRITER_ID_OFFSET,
                RTPS_WRITER_ENTITY_ID_LEN,
            )
            return RtpsRoute(
                writer_gid=TopicGid.from_rtps_parts(guid_prefix, writer_entity_id),
                reader_gid=TopicGid.from_rtps_parts(guid_prefix, reader_entity_id),
                has_writer_gid=True,
                has_reader_gid=True,
                is_discovery=is_discovery_writer(writer_entity_id),
            )

        byteorder = "little" if flags & RTPS_SUBMESSAGE_ENDIAN_FLAG else "big"
        octets_to_next_header = int.from_bytes(bytes([octet0, octet1]), byteorder)
        if octets_to_next_header == 0:
            break
        submessage_offset += RTPS_SUBMESSAGE_HEADER_LEN + octets_to_next_header

    return RtpsRoute()