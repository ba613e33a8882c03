# ccsdsrouter/decoder.py
from __future__ import annotations

from typing import Callable, Iterable, Iterator, List, Optional

from .ccsds import CCSDS_PRI_HEADER_SIZE, CCSDS_VERSION, CcsdsPrimaryHeader
from .config import RouteConfig
from .core import DropReason, Frame, Stage
from .timing import MonotonicClock
from .utils import get_logger

log = get_logger("decoder")

# on_drop(reason, detail, nbytes)
DropCallback = Callable[[DropReason, str, int], None]
# on_stream_error(detail, skipped_bytes)
StreamErrorCallback = Callable[[str, int], None]


class FrameDecoder(Stage):
    """
    Turns raw chunks into frames.

    Fixed-length mode slices the stream into fixed_length_size blocks with no
    header parsing. A stream that does not start on a block boundary stays
    misaligned for the whole run; nothing here tries to find the boundary.

    Variable mode reads header_len framing bytes, a primary header, and the
    packet plus footer_len bytes it announces. A header that is implausible
    (version != 0, or packet longer than max_packet_size) drops that frame and
    switches to hunting: one byte is skipped at a time until a plausible
    header lines up. Every resync_limit skipped bytes without success is
    reported as a stream error, and hunting carries on.
    """

    def __init__(self, config: RouteConfig, clock: Optional[MonotonicClock] = None,
                 on_drop: Optional[DropCallback] = None,
                 on_stream_error: Optional[StreamErrorCallback] = None):
        self.fixed = config.fixed_length_mode
        self.fixed_size = config.fixed_length_size
        self.header_len = config.frame_header_len
        self.footer_len = config.frame_footer_len
        self.max_packet_size = config.max_packet_size
        self.little_endian = config.little_endian
        self.resync_limit = config.resync_limit
        self.clock = clock or MonotonicClock()
        self.on_drop = on_drop
        self.on_stream_error = on_stream_error
        self.reset()

    def reset(self) -> None:
        self._buf = bytearray()
        self._idx = 0
        self._hunting = False
        self._scanned = 0

        # counters
        self.frames = 0
        self.oversized = 0
        self.malformed = 0
        self.resync_failures = 0
        self.skipped_bytes = 0
        self.bytes_in = 0

    @property
    def buffered(self) -> int:
        return len(self._buf)

    @property
    def hunting(self) -> bool:
        return self._hunting

    def _drop(self, reason: DropReason, detail: str, nbytes: int) -> None:
        if reason is DropReason.OVERSIZED:
            self.oversized += 1
        else:
            self.malformed += 1
        if self.on_drop is not None:
            self.on_drop(reason, detail, nbytes)

    def _resync_failed(self) -> None:
        self.resync_failures += 1
        self.malformed += 1
        detail = f"no plausible header within {self._scanned} bytes"
        log.warning(f"[RESYNC] {detail}, still hunting")
        if self.on_stream_error is not None:
            self.on_stream_error(detail, self._scanned)

    def _make_frame(self, header: bytes, payload: bytes, footer: bytes,
                    ph: Optional[CcsdsPrimaryHeader]) -> Frame:
        fr = Frame(header=header, payload=payload, footer=footer,
                   received_at=self.clock.now(), idx=self._idx, primary_header=ph)
        self._idx += 1
        self.frames += 1
        return fr

    def feed(self, chunk: bytes) -> List[Frame]:
        if not chunk:
            return []
        self.bytes_in += len(chunk)
        self._buf += chunk
        if self.fixed:
            return self._feed_fixed()
        return self._feed_variable()

    def _feed_fixed(self) -> List[Frame]:
        out: List[Frame] = []
        size = self.fixed_size
        n = len(self._buf) // size
        for i in range(n):
            block = bytes(self._buf[i * size:(i + 1) * size])
            out.append(self._make_frame(b"", block, b"", None))
        if n:
            del self._buf[:n * size]
        return out

    def _feed_variable(self) -> List[Frame]:
        out: List[Frame] = []
        buf = self._buf
        hl, fl = self.header_len, self.footer_len
        need = hl + CCSDS_PRI_HEADER_SIZE
        pos = 0

        while len(buf) - pos >= need:
            ph = CcsdsPrimaryHeader.parse(buf[pos + hl:pos + need], self.little_endian)
            plen = ph.packet_length

            if ph.version != CCSDS_VERSION or plen > self.max_packet_size:
                if not self._hunting:
                    if ph.version == CCSDS_VERSION:
                        self._drop(DropReason.OVERSIZED,
                                   f"apid {ph.apid} declares {plen} bytes > max {self.max_packet_size}",
                                   hl + plen + fl)
                    else:
                        self._drop(DropReason.MALFORMED, f"bad version {ph.version}", need)
                    self._hunting = True
                    self._scanned = 0
                pos += 1
                self._scanned += 1
                self.skipped_bytes += 1
                if self._scanned >= self.resync_limit:
                    self._resync_failed()
                    self._scanned = 0
                continue

            total = hl + plen + fl
            if len(buf) - pos < total:
                break

            if self._hunting:
                log.info(f"[RESYNC] found apid {ph.apid} after skipping {self._scanned} bytes")
                self._hunting = False
                self._scanned = 0

            header = bytes(buf[pos:pos + hl])
            payload = bytes(buf[pos + hl:pos + hl + plen])
            footer = bytes(buf[pos + hl + plen:pos + total])
            out.append(self._make_frame(header, payload, footer, ph))
            pos += total

        if pos:
            del buf[:pos]
        return out

    def flush(self) -> List[Frame]:
        """
        End of input: an incomplete tail can never become a frame. While hunting
        the tail is the rest of a frame already dropped, so it only counts as
        skipped.
        """
        if self._buf:
            n = len(self._buf)
            if self._hunting:
                self.skipped_bytes += n
            else:
                self._drop(DropReason.MALFORMED, f"truncated frame, {n} trailing bytes", n)
            self._buf.clear()
        self._hunting = False
        self._scanned = 0
        return []


def decode_stream(chunks: Iterable[bytes], config: RouteConfig,
                  clock: Optional[MonotonicClock] = None,
                  on_drop: Optional[DropCallback] = None,
                  on_stream_error: Optional[StreamErrorCallback] = None) -> Iterator[Frame]:
    """Lazily decode an iterable of chunks; the tail is flushed when it ends."""
    dec = FrameDecoder(config, clock=clock, on_drop=on_drop, on_stream_error=on_stream_error)
    for chunk in chunks:
        yield from dec.feed(chunk)
    yield from dec.flush()
