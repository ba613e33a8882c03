# ccsdsrouter/ccsds.py
"""
CCSDS Space Packet primary header.

Layout (three 16-bit words):
  word0: version(3) | type(1) | sec_hdr_flag(1) | apid(11)
  word1: seq_flags(2) | seq_count(14)
  word2: packet_data_length (= data field bytes - 1)

Big-endian is the CCSDS default. Little-endian streams store each of the three
words byte-swapped, so the same logical header reads back identically once the
word order is known.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass

CCSDS_PRI_HEADER_SIZE = 6
CCSDS_VERSION = 0
MAX_APID = 0x7FF
MAX_SEQUENCE_COUNT = 0x3FFF
MAX_PACKET_DATA_LENGTH = 0xFFFF

# largest packet the length field can describe: 0xFFFF + 1 data bytes + header
MAX_PACKET_SIZE = MAX_PACKET_DATA_LENGTH + CCSDS_PRI_HEADER_SIZE + 1
MIN_PACKET_SIZE = CCSDS_PRI_HEADER_SIZE + 1

SEQ_CONTINUATION = 0
SEQ_FIRST = 1
SEQ_LAST = 2
SEQ_UNSEGMENTED = 3

_WORDS_BE = struct.Struct(">HHH")
_WORDS_LE = struct.Struct("<HHH")


def _words(little_endian: bool) -> struct.Struct:
    return _WORDS_LE if little_endian else _WORDS_BE


@dataclass(frozen=True)
class CcsdsPrimaryHeader:
    version: int
    packet_type: int
    sec_header_flag: int
    apid: int
    sequence_flags: int
    sequence_count: int
    packet_data_length: int

    @property
    def packet_length(self) -> int:
        """Total packet size in bytes, primary header included."""
        return self.packet_data_length + CCSDS_PRI_HEADER_SIZE + 1

    @classmethod
    def parse(cls, buf: bytes, little_endian: bool = False) -> "CcsdsPrimaryHeader":
        if len(buf) < CCSDS_PRI_HEADER_SIZE:
            raise ValueError(f"need {CCSDS_PRI_HEADER_SIZE} bytes for a primary header, got {len(buf)}")
        w0, w1, w2 = _words(little_endian).unpack_from(buf, 0)
        return cls(
            version=(w0 >> 13) & 0x7,
            packet_type=(w0 >> 12) & 0x1,
            sec_header_flag=(w0 >> 11) & 0x1,
            apid=w0 & MAX_APID,
            sequence_flags=(w1 >> 14) & 0x3,
            sequence_count=w1 & MAX_SEQUENCE_COUNT,
            packet_data_length=w2,
        )

    def pack(self, little_endian: bool = False) -> bytes:
        w0 = (
            ((self.version & 0x7) << 13)
            | ((self.packet_type & 0x1) << 12)
            | ((self.sec_header_flag & 0x1) << 11)
            | (self.apid & MAX_APID)
        )
        w1 = ((self.sequence_flags & 0x3) << 14) | (self.sequence_count & MAX_SEQUENCE_COUNT)
        return _words(little_endian).pack(w0, w1, self.packet_data_length & MAX_PACKET_DATA_LENGTH)


def build_packet(
    apid: int,
    data: bytes,
    sequence_count: int = 0,
    packet_type: int = 0,
    sec_header_flag: int = 0,
    sequence_flags: int = SEQ_UNSEGMENTED,
    little_endian: bool = False,
) -> bytes:
    """Assemble a complete space packet around a (non-empty) data field."""
    if not data:
        raise ValueError("CCSDS data field must hold at least one byte")
    if len(data) - 1 > MAX_PACKET_DATA_LENGTH:
        raise ValueError(f"data field too long for one packet: {len(data)} bytes")
    hdr = CcsdsPrimaryHeader(
        version=CCSDS_VERSION,
        packet_type=packet_type,
        sec_header_flag=sec_header_flag,
        apid=apid,
        sequence_flags=sequence_flags,
        sequence_count=sequence_count,
        packet_data_length=len(data) - 1,
    )
    return hdr.pack(little_endian) + bytes(data)
