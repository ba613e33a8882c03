from ccsdsrouter.core import DropReason, Frame
from ccsdsrouter.decoder import FrameDecoder
from ccsdsrouter.stages import Framer, PacketFilter


def _frames(route_config, make_packet, apids, **cfg):
    config = route_config(**cfg)
    stream = b"".join(b"HD" * (config.header_len // 2) + make_packet(a, 6) + b"F" * config.footer_len
                      for a in apids)
    return FrameDecoder(config).feed(stream)


def test_apid_filter_keeps_order(route_config, make_packet):
    frames = _frames(route_config, make_packet, [7, 8, 7])
    gate = PacketFilter(max_packet_size=65542, allowed_apids=frozenset({7}))

    out = [f for fr in frames for f in gate.feed(fr)]

    assert [f.idx for f in out] == [0, 2]
    assert gate.accepted == 2
    assert gate.rejected_apid == 1


def test_empty_apid_set_accepts_everything(route_config, make_packet):
    frames = _frames(route_config, make_packet, [1, 2, 3])
    gate = PacketFilter(max_packet_size=65542)
    assert all(gate.check(f).accepted for f in frames)


def test_size_is_checked_before_apid(route_config, make_packet):
    frame = _frames(route_config, make_packet, [8])[0]
    gate = PacketFilter(max_packet_size=len(frame.payload) - 1, allowed_apids=frozenset({7}))

    v = gate.check(frame)

    assert not v.accepted
    assert v.reason is DropReason.OVERSIZED


def test_apid_rejection_reason(route_config, make_packet):
    frame = _frames(route_config, make_packet, [8])[0]
    v = PacketFilter(max_packet_size=100, allowed_apids=frozenset({7})).check(frame)
    assert v.reason is DropReason.APID_FILTERED
    assert "8" in v.detail


def test_fixed_mode_ignores_apid_set(route_config):
    config = route_config(fixed_length_mode=True, fixed_length_size=8, allowed_apids=frozenset({7}))
    gate = PacketFilter.from_config(config)
    frames = FrameDecoder(config).feed(b"\x00" * 16)

    assert gate.allowed_apids == frozenset()
    assert [gate.check(f).accepted for f in frames] == [True, True]


def test_framer_forwards_only_requested_parts(route_config, make_packet):
    frame = _frames(route_config, make_packet, [7], header_len=4, footer_len=2)[0]

    keep = Framer(header_len=4, footer_len=2, forward_header=True, forward_footer=True)
    strip = Framer(header_len=4, footer_len=2)
    head_only = Framer(header_len=4, footer_len=2, forward_header=True)

    assert keep.render(frame) == b"HDHD" + frame.payload + b"FF"
    assert strip.render(frame) == frame.payload
    assert head_only.render(frame) == b"HDHD" + frame.payload


def test_framer_with_no_framing_configured():
    frame = Frame(header=b"", payload=b"abc", footer=b"", received_at=0.0, idx=0)
    framer = Framer(forward_header=True, forward_footer=True)
    assert framer.render(frame) == b"abc"


def test_framer_from_fixed_config(route_config):
    framer = Framer.from_config(route_config(fixed_length_mode=True, header_len=4,
                                             forward_header=True))
    assert framer.header_len == 0
