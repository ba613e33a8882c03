import pytest

from ccsdsrouter.ccsds import CcsdsPrimaryHeader, build_packet


def test_parse_big_endian_fields():
    hdr = CcsdsPrimaryHeader.parse(bytes.fromhex("1807c0050003"))
    assert hdr.version == 0
    assert hdr.packet_type == 1
    assert hdr.sec_header_flag == 1
    assert hdr.apid == 7
    assert hdr.sequence_flags == 3
    assert hdr.sequence_count == 5
    assert hdr.packet_data_length == 3
    assert hdr.packet_length == 10


def test_little_endian_words_parse_to_same_header():
    be = build_packet(0x155, b"\x01\x02\x03", sequence_count=42)
    le = build_packet(0x155, b"\x01\x02\x03", sequence_count=42, little_endian=True)
    assert be[:6] != le[:6]
    assert be[6:] == le[6:]
    assert CcsdsPrimaryHeader.parse(le, little_endian=True) == CcsdsPrimaryHeader.parse(be)
    # each 16-bit word is byte swapped
    assert le[:6] == bytes([be[1], be[0], be[3], be[2], be[5], be[4]])


def test_pack_then_parse_keeps_fields():
    hdr = CcsdsPrimaryHeader(version=0, packet_type=0, sec_header_flag=1, apid=2047,
                             sequence_flags=1, sequence_count=0x3FFF, packet_data_length=0xFFFF)
    assert CcsdsPrimaryHeader.parse(hdr.pack()) == hdr
    assert hdr.packet_length == 65542


def test_short_header_rejected():
    with pytest.raises(ValueError):
        CcsdsPrimaryHeader.parse(b"\x00\x01\x02")


def test_build_packet_length_field():
    pkt = build_packet(7, bytes(10))
    assert len(pkt) == 16
    assert CcsdsPrimaryHeader.parse(pkt).packet_data_length == 9


def test_build_packet_needs_data():
    with pytest.raises(ValueError):
        build_packet(7, b"")
