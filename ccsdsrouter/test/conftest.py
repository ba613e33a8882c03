import struct
import threading
import time

import pytest

from ccsdsrouter.ccsds import build_packet
from ccsdsrouter.config import EndpointConfig, RouteConfig
from ccsdsrouter.errors import TransportWriteError


class FakeClock:
    """Manual clock: waiting jumps straight to the target."""

    def __init__(self, start=100.0):
        self.t = start

    def now(self):
        return self.t

    def advance(self, dt):
        self.t += dt

    def wait_until(self, target, cancel):
        if cancel.is_set():
            return False
        self.t = max(self.t, target)
        return True


class MemorySource:
    """
    Serves chunks from a list. Exception instances in the list are raised
    instead of returned. With hold_open the source behaves like an idle socket
    after the last chunk: read() blocks until close().
    """

    def __init__(self, chunks, hold_open=False):
        self._chunks = list(chunks)
        self._closed = threading.Event()
        self.hold_open = hold_open
        self.close_calls = 0

    def read(self):
        if self._chunks and not self._closed.is_set():
            item = self._chunks.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        if self.hold_open:
            self._closed.wait()
        return b""

    def close(self):
        self.close_calls += 1
        self._closed.set()


class MemorySink:
    def __init__(self, fail_on=None):
        self.writes = []
        self.times = []
        self.closed = False
        self.fail_on = fail_on

    def write(self, data):
        if self.fail_on is not None and len(self.writes) >= self.fail_on:
            raise TransportWriteError("sink broken")
        self.times.append(time.monotonic())
        self.writes.append(bytes(data))

    def close(self):
        self.closed = True

    @property
    def data(self):
        return b"".join(self.writes)


def _make_packet(apid, n=10, seq=0, little_endian=False, fill=None):
    body = bytes([fill] * n) if fill is not None else bytes((i * 7 + apid) & 0xFF for i in range(n))
    return build_packet(apid, body, sequence_count=seq, little_endian=little_endian)


def _timed_packet(apid, secs, subsecs=0, extra=4, seq=0):
    """Packet with a 4-byte seconds / 2-byte subseconds field after the primary header."""
    return build_packet(apid, struct.pack(">IH", secs, subsecs) + bytes(extra), sequence_count=seq)


def _route_config(**changes):
    base = RouteConfig(
        source=EndpointConfig(kind="file", path="in.bin"),
        sink=EndpointConfig(kind="null"),
    )
    return base.with_changes(**changes)


@pytest.fixture
def make_packet():
    return _make_packet


@pytest.fixture
def timed_packet():
    return _timed_packet


@pytest.fixture
def route_config():
    return _route_config


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def memory_source():
    return MemorySource


@pytest.fixture
def memory_sink():
    return MemorySink


@pytest.fixture
def wait_for():
    def _wait(pred, timeout=5.0, interval=0.01):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if pred():
                return True
            time.sleep(interval)
        return pred()
    return _wait
