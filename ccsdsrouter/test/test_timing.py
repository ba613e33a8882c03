import struct
import threading
import time

import pytest

from ccsdsrouter.ccsds import build_packet
from ccsdsrouter.core import Frame
from ccsdsrouter.timing import (
    Delay,
    ForwardThrough,
    MonotonicClock,
    Replay,
    Throttle,
    TimingScheduler,
    decode_timestamp,
)

MS = Replay(subseconds_resolution=0.001)


def _frame(payload=b"\x00" * 12, received_at=0.0, idx=0):
    return Frame(header=b"", payload=payload, footer=b"", received_at=received_at, idx=idx)


def _timed(secs, millis=0):
    return _frame(build_packet(7, struct.pack(">IH", secs, millis) + b"\x00\x00"))


def _emit(sched, clock, frame):
    """What the writer does: wait for the target, then record the emission."""
    target = sched.target(frame)
    clock.wait_until(target, threading.Event())
    sched.mark_emitted(clock.now())
    return target


def test_forward_through_is_now(fake_clock):
    sched = TimingScheduler(ForwardThrough(), fake_clock)
    assert sched.target(_frame(received_at=3.0)) == fake_clock.now()


def test_delay_counts_from_receive_instant(fake_clock):
    sched = TimingScheduler(Delay(0.5), fake_clock)
    t0 = fake_clock.now()

    first = sched.target(_frame(received_at=t0))
    fake_clock.advance(0.5)
    second = sched.target(_frame(received_at=t0 + 0.01))

    # per-packet offset, not cumulative
    assert first == pytest.approx(t0 + 0.5)
    assert second == pytest.approx(t0 + 0.51)


def test_throttle_spaces_back_to_back_frames(fake_clock):
    sched = TimingScheduler(Throttle(0.1), fake_clock)

    emitted = []
    for i in range(5):
        _emit(sched, fake_clock, _frame(idx=i))
        emitted.append(fake_clock.now())

    gaps = [b - a for a, b in zip(emitted, emitted[1:])]
    assert all(g >= 0.1 - 1e-9 for g in gaps)


def test_throttle_does_not_save_up_idle_time(fake_clock):
    sched = TimingScheduler(Throttle(0.1), fake_clock)
    _emit(sched, fake_clock, _frame())
    fake_clock.advance(5.0)
    assert sched.target(_frame()) == fake_clock.now()


def test_replay_follows_packet_time(fake_clock):
    sched = TimingScheduler(MS, fake_clock)
    start = fake_clock.now()

    assert _emit(sched, fake_clock, _timed(10)) == start
    # processing delay between packets does not accumulate
    fake_clock.advance(0.3)
    assert _emit(sched, fake_clock, _timed(11)) == pytest.approx(start + 1.0)
    assert _emit(sched, fake_clock, _timed(12, 500)) == pytest.approx(start + 2.5)


def test_replay_reanchors_when_time_goes_backwards(fake_clock):
    sched = TimingScheduler(MS, fake_clock)
    _emit(sched, fake_clock, _timed(20))
    _emit(sched, fake_clock, _timed(22))

    now = fake_clock.now()
    assert sched.target(_timed(21)) == now
    assert sched.reanchors == 1
    assert sched.target(_timed(21, 500)) == pytest.approx(now + 0.5)


def test_replay_short_packet_goes_now_and_keeps_anchor(fake_clock):
    sched = TimingScheduler(MS, fake_clock)
    _emit(sched, fake_clock, _timed(5))
    anchor = (sched.anchor_wall, sched.anchor_domain)

    assert sched.target(_frame(payload=b"\x00" * 8)) == fake_clock.now()
    assert sched.untimed == 1
    assert (sched.anchor_wall, sched.anchor_domain) == anchor


def test_shift_moves_replay_anchor(fake_clock):
    sched = TimingScheduler(MS, fake_clock)
    start = fake_clock.now()
    _emit(sched, fake_clock, _timed(1))
    sched.shift(2.0)
    assert sched.target(_timed(2)) == pytest.approx(start + 3.0)


def test_reset_forgets_run_state(fake_clock):
    sched = TimingScheduler(Throttle(1.0), fake_clock)
    _emit(sched, fake_clock, _frame())
    sched.reset()
    assert sched.last_emission is None
    assert sched.target(_frame()) == fake_clock.now()


def test_unknown_policy_rejected():
    with pytest.raises(TypeError):
        TimingScheduler("asap")


def test_decode_timestamp_defaults():
    pkt = build_packet(1, struct.pack(">IH", 100, 0x8000))
    assert decode_timestamp(pkt, Replay()) == pytest.approx(100.5)


def test_decode_timestamp_little_endian_seconds_only():
    policy = Replay(seconds_offset=6, seconds_width=2, subseconds_width=0, little_endian=True)
    pkt = build_packet(1, b"\x34\x12\x00")
    assert decode_timestamp(pkt, policy) == 0x1234


def test_decode_timestamp_too_short():
    assert decode_timestamp(b"\x00" * 11, Replay()) is None


def test_monotonic_wait_until_returns_early_on_cancel():
    clock = MonotonicClock()
    cancel = threading.Event()
    threading.Timer(0.05, cancel.set).start()

    t0 = time.monotonic()
    assert clock.wait_until(clock.now() + 10.0, cancel) is False
    assert time.monotonic() - t0 < 2.0


def test_monotonic_wait_until_past_target():
    clock = MonotonicClock()
    assert clock.wait_until(clock.now() - 1.0, threading.Event()) is True
