# ccsdsrouter/core.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from .ccsds import CcsdsPrimaryHeader


class DropReason(str, Enum):
    OVERSIZED = "oversized"
    APID_FILTERED = "apid_filtered"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class Frame:
    header: bytes
    payload: bytes  # CCSDS packet, or one fixed-size block
    footer: bytes
    received_at: float  # clock instant the decoder completed the frame
    idx: int  # decode order index within the run
    primary_header: Optional[CcsdsPrimaryHeader] = None

    @property
    def apid(self) -> Optional[int]:
        return self.primary_header.apid if self.primary_header is not None else None

    def __len__(self) -> int:
        return len(self.header) + len(self.payload) + len(self.footer)


class Stage:
    """
    Streaming stage. feed() yields 0..N output items per input.
    flush() yields buffered tail items when input ends.
    """
    def feed(self, item) -> Iterable:
        yield item

    def flush(self) -> Iterable:
        return []
