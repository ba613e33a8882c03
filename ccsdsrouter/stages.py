# ccsdsrouter/stages.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional

from .config import RouteConfig
from .core import DropReason, Frame, Stage


@dataclass(frozen=True)
class Verdict:
    accepted: bool
    reason: Optional[DropReason] = None
    detail: str = ""


ACCEPT = Verdict(accepted=True)


@dataclass
class PacketFilter(Stage):
    """
    Size and APID gate. check() is pure; feed() adapts it to the stage
    protocol and keeps per-reason counters.

    APIDs exist only for frames with a parsed primary header, so fixed-size
    blocks pass the APID test untouched.
    """
    max_packet_size: int
    allowed_apids: FrozenSet[int] = field(default_factory=frozenset)

    accepted: int = 0
    rejected_oversized: int = 0
    rejected_apid: int = 0

    @classmethod
    def from_config(cls, config: RouteConfig) -> "PacketFilter":
        apids = frozenset() if config.fixed_length_mode else config.allowed_apids
        return cls(max_packet_size=config.max_packet_size, allowed_apids=apids)

    def check(self, frame: Frame) -> Verdict:
        if len(frame.payload) > self.max_packet_size:
            return Verdict(False, DropReason.OVERSIZED,
                           f"{len(frame.payload)} bytes > max {self.max_packet_size}")
        if self.allowed_apids and frame.primary_header is not None:
            if frame.apid not in self.allowed_apids:
                return Verdict(False, DropReason.APID_FILTERED, f"apid {frame.apid} not allowed")
        return ACCEPT

    def feed(self, frame: Frame) -> Iterable[Frame]:
        v = self.check(frame)
        if v.accepted:
            self.accepted += 1
            return [frame]
        if v.reason is DropReason.OVERSIZED:
            self.rejected_oversized += 1
        else:
            self.rejected_apid += 1
        return []


@dataclass(frozen=True)
class Framer:
    """Decides which framing bytes travel with the packet to the sink."""
    header_len: int = 0
    footer_len: int = 0
    forward_header: bool = False
    forward_footer: bool = False

    @classmethod
    def from_config(cls, config: RouteConfig) -> "Framer":
        return cls(
            header_len=config.frame_header_len,
            footer_len=config.frame_footer_len,
            forward_header=config.forward_header,
            forward_footer=config.forward_footer,
        )

    def render(self, frame: Frame) -> bytes:
        parts: List[bytes] = []
        if self.forward_header and self.header_len > 0:
            parts.append(frame.header)
        parts.append(frame.payload)
        if self.forward_footer and self.footer_len > 0:
            parts.append(frame.footer)
        return b"".join(parts)
