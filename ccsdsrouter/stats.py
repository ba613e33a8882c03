# ccsdsrouter/stats.py
from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .core import DropReason, Frame


@dataclass
class PacketStats:
    """Running totals for one APID."""
    apid: int
    packet_count: int = 0
    byte_count: int = 0
    last_seq: int = 0

    def update(self, frame: Frame) -> None:
        self.packet_count += 1
        self.byte_count += len(frame.payload)
        if frame.primary_header is not None:
            self.last_seq = frame.primary_header.sequence_count


@dataclass
class RouteStats:
    """
    Counters for one run. Written by both pipeline threads, read by whoever
    displays them, so every access goes through the lock.
    """
    decoded: int = 0
    accepted: int = 0
    emitted: int = 0
    bytes_in: int = 0
    bytes_out: int = 0
    transport_errors: int = 0
    resync_failures: int = 0
    reconnects: int = 0
    discarded: int = 0  # accepted but abandoned by stop()
    dropped: Counter = field(default_factory=Counter)
    per_apid: Dict[int, PacketStats] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_chunk(self, nbytes: int) -> None:
        with self._lock:
            self.bytes_in += nbytes

    def record_decoded(self) -> None:
        with self._lock:
            self.decoded += 1

    def record_accepted(self) -> None:
        with self._lock:
            self.accepted += 1

    def record_drop(self, reason: DropReason) -> None:
        with self._lock:
            self.dropped[reason.value] += 1

    def record_resync_failure(self) -> None:
        with self._lock:
            self.resync_failures += 1

    def record_reconnect(self) -> None:
        with self._lock:
            self.reconnects += 1

    def record_discarded(self, n: int = 1) -> None:
        with self._lock:
            self.discarded += n

    def record_transport_error(self) -> None:
        with self._lock:
            self.transport_errors += 1

    def record_emitted(self, frame: Frame, nbytes: int) -> None:
        with self._lock:
            self.emitted += 1
            self.bytes_out += nbytes
            apid = frame.apid
            if apid is not None:
                ps = self.per_apid.get(apid)
                if ps is None:
                    ps = self.per_apid[apid] = PacketStats(apid=apid)
                ps.update(frame)

    def dropped_count(self, reason: Optional[DropReason] = None) -> int:
        with self._lock:
            if reason is None:
                return sum(self.dropped.values())
            return self.dropped[reason.value]

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "decoded": self.decoded,
                "accepted": self.accepted,
                "emitted": self.emitted,
                "bytes_in": self.bytes_in,
                "bytes_out": self.bytes_out,
                "dropped": dict({r.value: self.dropped[r.value] for r in DropReason},
                                discarded_on_stop=self.discarded),
                "transport_errors": self.transport_errors,
                "resync_failures": self.resync_failures,
                "reconnects": self.reconnects,
                "apids": {
                    apid: {"packets": ps.packet_count, "bytes": ps.byte_count, "last_seq": ps.last_seq}
                    for apid, ps in sorted(self.per_apid.items())
                },
            }

    def summary(self) -> str:
        s = self.snapshot()
        d = s["dropped"]
        return (f"decoded={s['decoded']} accepted={s['accepted']} emitted={s['emitted']} "
                f"dropped(oversized={d['oversized']} apid={d['apid_filtered']} malformed={d['malformed']} "
                f"on_stop={d['discarded_on_stop']}) "
                f"bytes_in={s['bytes_in']} bytes_out={s['bytes_out']} "
                f"transport_errors={s['transport_errors']}")
