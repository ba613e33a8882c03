# ccsdsrouter/timing.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Optional, Union

from .core import Frame
from .utils import get_logger

log = get_logger("timing")


@dataclass(frozen=True)
class ForwardThrough:
    """Emit as fast as possible."""


@dataclass(frozen=True)
class Replay:
    """
    Emit at the cadence of a timestamp embedded in each packet.

    Offsets count from the first byte of the CCSDS packet, so the default
    seconds_offset of 6 is the byte right after the primary header (CUC style).
    A width of 0 means the field is absent and reads as 0.
    """
    seconds_offset: int = 6
    seconds_width: int = 4
    subseconds_offset: int = 10
    subseconds_width: int = 2
    subseconds_resolution: float = 2.0 ** -16
    little_endian: bool = False


@dataclass(frozen=True)
class Delay:
    duration: float  # seconds added to the receive instant of every packet


@dataclass(frozen=True)
class Throttle:
    interval: float  # minimum seconds between two emissions


TimingPolicy = Union[ForwardThrough, Replay, Delay, Throttle]


class MonotonicClock:
    def now(self) -> float:
        return time.monotonic()

    def wait_until(self, target: float, cancel: threading.Event) -> bool:
        """Block until target. Returns False as soon as cancel is set."""
        while True:
            remaining = target - self.now()
            if remaining <= 0:
                return not cancel.is_set()
            if cancel.wait(remaining):
                return False


def decode_timestamp(payload: bytes, policy: Replay) -> Optional[float]:
    """seconds + subseconds * resolution, or None if the packet is too short."""
    end = 0
    if policy.seconds_width:
        end = policy.seconds_offset + policy.seconds_width
    if policy.subseconds_width:
        end = max(end, policy.subseconds_offset + policy.subseconds_width)
    if len(payload) < end:
        return None

    order = "little" if policy.little_endian else "big"
    secs = 0
    subsecs = 0
    if policy.seconds_width:
        so = policy.seconds_offset
        secs = int.from_bytes(payload[so:so + policy.seconds_width], order)
    if policy.subseconds_width:
        ss = policy.subseconds_offset
        subsecs = int.from_bytes(payload[ss:ss + policy.subseconds_width], order)
    return secs + subsecs * policy.subseconds_resolution


class TimingScheduler:
    """
    Computes the emission instant of each accepted frame.

    Run-state: last emission (Throttle), and the replay anchor pair
    (wall instant, packet time) plus the previous packet time (Replay).
    """

    def __init__(self, policy: TimingPolicy, clock: Optional[MonotonicClock] = None):
        if not isinstance(policy, (ForwardThrough, Replay, Delay, Throttle)):
            raise TypeError(f"Unsupported timing policy: {policy!r}")
        self.policy = policy
        self.clock = clock or MonotonicClock()
        self.reset()

    def reset(self) -> None:
        self.last_emission: Optional[float] = None
        self.anchor_wall: Optional[float] = None
        self.anchor_domain: Optional[float] = None
        self.last_timestamp: Optional[float] = None
        self.reanchors = 0
        self.untimed = 0

    def target(self, frame: Frame) -> float:
        p = self.policy
        now = self.clock.now()

        if isinstance(p, ForwardThrough):
            return now

        if isinstance(p, Delay):
            return frame.received_at + p.duration

        if isinstance(p, Throttle):
            if self.last_emission is None:
                return now
            return max(now, self.last_emission + p.interval)

        if isinstance(p, Replay):
            return self._replay_target(frame, p, now)

        raise TypeError(f"Unsupported timing policy: {p!r}")

    def _replay_target(self, frame: Frame, p: Replay, now: float) -> float:
        ts = decode_timestamp(frame.payload, p)
        if ts is None:
            self.untimed += 1
            log.debug(f"[REPLAY] frame {frame.idx} too short for timestamp ({len(frame.payload)} bytes)")
            return now

        if self.anchor_wall is None:
            self._anchor(now, ts)
            return now

        if self.last_timestamp is not None and ts < self.last_timestamp:
            self.reanchors += 1
            log.info(f"[REPLAY] timestamp went backwards ({self.last_timestamp:.6f} -> {ts:.6f}), re-anchoring")
            self._anchor(now, ts)
            return now

        self.last_timestamp = ts
        return self.anchor_wall + (ts - self.anchor_domain)

    def _anchor(self, wall: float, ts: float) -> None:
        self.anchor_wall = wall
        self.anchor_domain = ts
        self.last_timestamp = ts

    def mark_emitted(self, instant: float) -> None:
        self.last_emission = instant

    def shift(self, seconds: float) -> None:
        """Move the replay anchor later, e.g. by the time a run spent paused."""
        if self.anchor_wall is not None:
            self.anchor_wall += seconds
